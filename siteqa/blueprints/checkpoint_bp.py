"""
Checkpoint Blueprint: hold point lifecycle and release links.

Endpoints:
    POST   /api/v1/work-units/<wid>/checkpoints/request-release
           Body: { "checklist_item_id": <int>, "notified_to": "...",
                   "scheduled_date": "<iso>" }
    GET    /api/v1/work-units/<wid>/checkpoints/<item_id>
    GET    /api/v1/projects/<pid>/checkpoints?status=<status>
    POST   /api/v1/projects/<pid>/notification-time
           Body: { "requested_at": "<iso>" }

    GET    /api/v1/checkpoints/<cid>
    GET    /api/v1/checkpoints/<cid>/evidence-package
    POST   /api/v1/checkpoints/<cid>/notify
    POST   /api/v1/checkpoints/<cid>/chase
    POST   /api/v1/checkpoints/<cid>/escalate            { "reason", "recipients"? }
    POST   /api/v1/checkpoints/<cid>/resolve-escalation
    POST   /api/v1/checkpoints/<cid>/release             { "released_by_name", ... }
    POST   /api/v1/checkpoints/<cid>/reject              { "reason" }

    POST   /api/v1/checkpoints/<cid>/release-tokens
           Body: { "recipient_email", "recipient_name"?, "ttl_hours"? }
           Returns: 201 with the token metadata, the raw secret and the
           release link. The secret is returned only here.
    DELETE /api/v1/checkpoints/<cid>/release-tokens
           Returns: 200 { "revoked": <int> }
"""

import logging

from flask import Blueprint, request

from siteqa.blueprints import (
    check_access,
    current_actor,
    current_actor_name,
    json_body,
    ok,
    parse_datetime_field,
    parse_int_field,
    register_error_handlers,
    require_fields,
)
from siteqa.models.checkpoint import CHECKPOINT_STATUSES
from siteqa.services import checkpoint_service, release_token_service
from siteqa.utils.errors import E, api_error

logger = logging.getLogger(__name__)

checkpoint_bp = Blueprint("checkpoint", __name__, url_prefix="/api/v1")
register_error_handlers(checkpoint_bp)


# ── Work-unit / project scoped ──────────────────────────────────────────────

@checkpoint_bp.route("/work-units/<int:work_unit_id>/checkpoints/request-release", methods=["POST"])
def request_release(work_unit_id: int):
    check_access("WorkUnit", work_unit_id)
    data = json_body()
    err = require_fields(data, "checklist_item_id")
    if err:
        return err
    item_id, err = parse_int_field(data, "checklist_item_id")
    if err:
        return err
    scheduled, err = parse_datetime_field(data, "scheduled_date")
    if err:
        return err
    result = checkpoint_service.request_release(
        work_unit_id, item_id,
        notified_to=data.get("notified_to"),
        scheduled_date=scheduled,
        actor=current_actor(),
    )
    return ok(result)


@checkpoint_bp.route("/work-units/<int:work_unit_id>/checkpoints/<int:item_id>", methods=["GET"])
def checkpoint_detail(work_unit_id: int, item_id: int):
    check_access("WorkUnit", work_unit_id)
    return ok(checkpoint_service.get_checkpoint_detail(work_unit_id, item_id))


@checkpoint_bp.route("/projects/<int:project_id>/checkpoints", methods=["GET"])
def list_checkpoints(project_id: int):
    check_access("Project", project_id)
    status = request.args.get("status") or None
    if status and status not in CHECKPOINT_STATUSES:
        return api_error(E.VALIDATION_INVALID, f"status must be one of {sorted(CHECKPOINT_STATUSES)}")
    items = checkpoint_service.list_project_checkpoints(project_id, status=status)
    return ok({"items": items, "total": len(items)})


@checkpoint_bp.route("/projects/<int:project_id>/notification-time", methods=["POST"])
def notification_time(project_id: int):
    check_access("Project", project_id)
    data = json_body()
    err = require_fields(data, "requested_at")
    if err:
        return err
    requested, err = parse_datetime_field(data, "requested_at")
    if err:
        return err
    return ok(checkpoint_service.calculate_notification_time(project_id, requested))


# ── Checkpoint scoped ───────────────────────────────────────────────────────

@checkpoint_bp.route("/checkpoints/<int:checkpoint_id>", methods=["GET"])
def get_checkpoint(checkpoint_id: int):
    check_access("Checkpoint", checkpoint_id)
    return ok(checkpoint_service.get_checkpoint(checkpoint_id).to_dict())


@checkpoint_bp.route("/checkpoints/<int:checkpoint_id>/evidence-package", methods=["GET"])
def evidence_package(checkpoint_id: int):
    check_access("Checkpoint", checkpoint_id)
    cp = checkpoint_service.get_checkpoint(checkpoint_id)
    return ok(checkpoint_service.build_evidence_package(cp))


@checkpoint_bp.route("/checkpoints/<int:checkpoint_id>/notify", methods=["POST"])
def notify(checkpoint_id: int):
    check_access("Checkpoint", checkpoint_id)
    data = json_body()
    scheduled, err = parse_datetime_field(data, "scheduled_date")
    if err:
        return err
    return ok(checkpoint_service.notify(
        checkpoint_id, notified_to=data.get("notified_to"), scheduled_date=scheduled,
        actor=current_actor(),
    ))


@checkpoint_bp.route("/checkpoints/<int:checkpoint_id>/chase", methods=["POST"])
def chase(checkpoint_id: int):
    check_access("Checkpoint", checkpoint_id)
    return ok(checkpoint_service.chase(checkpoint_id, actor=current_actor()))


@checkpoint_bp.route("/checkpoints/<int:checkpoint_id>/escalate", methods=["POST"])
def escalate(checkpoint_id: int):
    check_access("Checkpoint", checkpoint_id)
    data = json_body()
    err = require_fields(data, "reason")
    if err:
        return err
    recipients = data.get("recipients") or []
    if not isinstance(recipients, list):
        return api_error(E.VALIDATION_INVALID, "recipients must be a list")
    return ok(checkpoint_service.escalate(
        checkpoint_id, escalated_by=current_actor(), recipients=recipients, reason=data["reason"],
    ))


@checkpoint_bp.route("/checkpoints/<int:checkpoint_id>/resolve-escalation", methods=["POST"])
def resolve_escalation(checkpoint_id: int):
    check_access("Checkpoint", checkpoint_id)
    return ok(checkpoint_service.resolve_escalation(checkpoint_id, resolved_by=current_actor()))


@checkpoint_bp.route("/checkpoints/<int:checkpoint_id>/release", methods=["POST"])
def release(checkpoint_id: int):
    check_access("Checkpoint", checkpoint_id)
    data = json_body()
    return ok(checkpoint_service.release(
        checkpoint_id,
        released_by_name=data.get("released_by_name") or current_actor_name(),
        released_by_org=data.get("released_by_org"),
        notes=data.get("notes"),
        method=data.get("method") or "digital",
        actor=current_actor(),
    ))


@checkpoint_bp.route("/checkpoints/<int:checkpoint_id>/reject", methods=["POST"])
def reject(checkpoint_id: int):
    check_access("Checkpoint", checkpoint_id)
    data = json_body()
    err = require_fields(data, "reason")
    if err:
        return err
    return ok(checkpoint_service.reject(checkpoint_id, reason=data["reason"], rejected_by=current_actor()))


# ── Release links ───────────────────────────────────────────────────────────

@checkpoint_bp.route("/checkpoints/<int:checkpoint_id>/release-tokens", methods=["POST"])
def issue_release_token(checkpoint_id: int):
    check_access("Checkpoint", checkpoint_id)
    data = json_body()
    err = require_fields(data, "recipient_email")
    if err:
        return err
    ttl = data.get("ttl_hours")
    if ttl is not None:
        try:
            ttl = float(ttl)
        except (TypeError, ValueError):
            return api_error(E.VALIDATION_INVALID, "ttl_hours must be a number")
    result = release_token_service.issue_token(
        checkpoint_id,
        recipient_email=data["recipient_email"],
        recipient_name=data.get("recipient_name"),
        ttl_hours=ttl,
        issued_by=current_actor(),
    )
    return ok(result, 201)


@checkpoint_bp.route("/checkpoints/<int:checkpoint_id>/release-tokens", methods=["DELETE"])
def revoke_release_tokens(checkpoint_id: int):
    check_access("Checkpoint", checkpoint_id)
    revoked = release_token_service.revoke_tokens(checkpoint_id, actor=current_actor())
    return ok({"revoked": revoked})
