"""
Issue Blueprint: non-conformance (NCR) lifecycle.

Endpoints:
    POST   /api/v1/work-units/<wid>/issues
           Body: { "description", "category", "severity"?, "due_date"?,
                   "affected_work_units"?: [<int>], "responsible_party"?,
                   "specification_reference"? }
           Returns: 201 with the issue and work_unit_status entries.

    GET    /api/v1/issues/<iid>
    GET    /api/v1/projects/<pid>/issues?status=<status>&open=true

    POST   /api/v1/issues/<iid>/respond               { "root_cause", "proposed_action", "root_cause_category"? }
    POST   /api/v1/issues/<iid>/qm-review             { "action", "comments"?, "escalated_to"? }
    POST   /api/v1/issues/<iid>/rectify               { "rectification_notes"?, "evidence_refs"? }
    POST   /api/v1/issues/<iid>/evidence              { "document_ref", "evidence_type"?, "filename"? }
    POST   /api/v1/issues/<iid>/reject-rectification  { "feedback" }
    POST   /api/v1/issues/<iid>/qm-approve
    POST   /api/v1/issues/<iid>/close                 { "verification_notes"?, "lessons_learned"?,
                                                        "with_concession"?, "concession_justification"?,
                                                        "risk_assessment"? }
    POST   /api/v1/issues/<iid>/reopen                { "reason" }
    POST   /api/v1/issues/<iid>/notify-client         { "recipient_email", "message"? }
"""

import logging

from flask import Blueprint, request

from siteqa.blueprints import (
    check_access,
    current_actor,
    json_body,
    ok,
    register_error_handlers,
    require_fields,
)
from siteqa.models.issue import ISSUE_STATUSES
from siteqa.services import issue_service
from siteqa.utils.errors import E, api_error
from siteqa.utils.helpers import parse_date

logger = logging.getLogger(__name__)

issue_bp = Blueprint("issue", __name__, url_prefix="/api/v1")
register_error_handlers(issue_bp)


@issue_bp.route("/work-units/<int:work_unit_id>/issues", methods=["POST"])
def raise_issue(work_unit_id: int):
    check_access("WorkUnit", work_unit_id)
    data = json_body()
    err = require_fields(data, "description", "category")
    if err:
        return err

    due_date = None
    if data.get("due_date"):
        due_date = parse_date(data["due_date"])
        if due_date is None:
            return api_error(E.VALIDATION_INVALID, "due_date must be a date (YYYY-MM-DD)")

    affected = data.get("affected_work_units") or []
    if not isinstance(affected, list):
        return api_error(E.VALIDATION_INVALID, "affected_work_units must be a list")
    try:
        affected = [int(w) for w in affected]
    except (TypeError, ValueError):
        return api_error(E.VALIDATION_INVALID, "affected_work_units must contain integer ids")

    result = issue_service.raise_issue(
        work_unit_id,
        description=data["description"],
        category=data["category"],
        severity=data.get("severity") or "minor",
        due_date=due_date,
        affected_work_units=affected,
        raised_by=current_actor(),
        responsible_party=data.get("responsible_party"),
        specification_reference=data.get("specification_reference"),
    )
    return ok(result, 201)


@issue_bp.route("/issues/<int:issue_id>", methods=["GET"])
def get_issue(issue_id: int):
    check_access("Issue", issue_id)
    return ok(issue_service.get_issue(issue_id).to_dict())


@issue_bp.route("/projects/<int:project_id>/issues", methods=["GET"])
def list_issues(project_id: int):
    check_access("Project", project_id)
    status = request.args.get("status") or None
    if status and status not in ISSUE_STATUSES:
        return api_error(E.VALIDATION_INVALID, f"status must be one of {sorted(ISSUE_STATUSES)}")
    open_only = request.args.get("open", "").lower() in ("1", "true", "yes")
    items = issue_service.list_project_issues(project_id, status=status, open_only=open_only)
    return ok({"items": items, "total": len(items)})


@issue_bp.route("/issues/<int:issue_id>/respond", methods=["POST"])
def respond(issue_id: int):
    check_access("Issue", issue_id)
    data = json_body()
    err = require_fields(data, "root_cause", "proposed_action")
    if err:
        return err
    return ok(issue_service.respond(
        issue_id,
        root_cause_category=data.get("root_cause_category"),
        root_cause=data["root_cause"],
        proposed_action=data["proposed_action"],
        responded_by=current_actor(),
    ))


@issue_bp.route("/issues/<int:issue_id>/qm-review", methods=["POST"])
def qm_review(issue_id: int):
    check_access("Issue", issue_id)
    data = json_body()
    err = require_fields(data, "action")
    if err:
        return err
    return ok(issue_service.qm_review(
        issue_id,
        action=data["action"],
        comments=data.get("comments"),
        reviewed_by=current_actor(),
        escalated_to=data.get("escalated_to"),
    ))


@issue_bp.route("/issues/<int:issue_id>/rectify", methods=["POST"])
def rectify(issue_id: int):
    check_access("Issue", issue_id)
    data = json_body()
    evidence_refs = data.get("evidence_refs") or []
    if not isinstance(evidence_refs, list):
        return api_error(E.VALIDATION_INVALID, "evidence_refs must be a list")
    return ok(issue_service.rectify(
        issue_id,
        rectification_notes=data.get("rectification_notes"),
        evidence_refs=evidence_refs,
        rectified_by=current_actor(),
    ))


@issue_bp.route("/issues/<int:issue_id>/evidence", methods=["POST"])
def add_evidence(issue_id: int):
    check_access("Issue", issue_id)
    data = json_body()
    err = require_fields(data, "document_ref")
    if err:
        return err
    evidence = issue_service.add_evidence(
        issue_id,
        document_ref=data["document_ref"],
        evidence_type=data.get("evidence_type") or "photo",
        filename=data.get("filename"),
        added_by=current_actor(),
    )
    return ok(evidence, 201)


@issue_bp.route("/issues/<int:issue_id>/reject-rectification", methods=["POST"])
def reject_rectification(issue_id: int):
    check_access("Issue", issue_id)
    data = json_body()
    err = require_fields(data, "feedback")
    if err:
        return err
    return ok(issue_service.reject_rectification(issue_id, feedback=data["feedback"],
                                                 rejected_by=current_actor()))


@issue_bp.route("/issues/<int:issue_id>/qm-approve", methods=["POST"])
def qm_approve(issue_id: int):
    check_access("Issue", issue_id)
    return ok(issue_service.qm_approve(issue_id, approved_by=current_actor()))


@issue_bp.route("/issues/<int:issue_id>/close", methods=["POST"])
def close(issue_id: int):
    check_access("Issue", issue_id)
    data = json_body()
    return ok(issue_service.close(
        issue_id,
        verification_notes=data.get("verification_notes"),
        lessons_learned=data.get("lessons_learned"),
        closed_by=current_actor(),
        with_concession=bool(data.get("with_concession")),
        concession_justification=data.get("concession_justification"),
        risk_assessment=data.get("risk_assessment"),
    ))


@issue_bp.route("/issues/<int:issue_id>/reopen", methods=["POST"])
def reopen(issue_id: int):
    check_access("Issue", issue_id)
    data = json_body()
    err = require_fields(data, "reason")
    if err:
        return err
    return ok(issue_service.reopen(issue_id, reason=data["reason"], reopened_by=current_actor()))


@issue_bp.route("/issues/<int:issue_id>/notify-client", methods=["POST"])
def notify_client(issue_id: int):
    check_access("Issue", issue_id)
    data = json_body()
    err = require_fields(data, "recipient_email")
    if err:
        return err
    return ok(issue_service.notify_client(
        issue_id,
        recipient_email=data["recipient_email"],
        message=data.get("message"),
        notified_by=current_actor(),
    ))
