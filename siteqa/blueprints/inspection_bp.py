"""
Inspection Blueprint: checklist instances and completion records.

Endpoints:
    POST   /api/v1/work-units/<wid>/inspection
           Body: { "template_id": <int> }
           Returns: 201 with the instance view (frozen snapshot + completions).

    GET    /api/v1/work-units/<wid>/inspection?responsible_party=<party>
           Returns: 200 with the instance view, items narrowed to one party.

    POST   /api/v1/inspections/<iid>/completions
           Body: { "checklist_item_id": <int>, "status": "completed|...",
                   "evidence_refs": [...], "notes": "..." }
           Returns: 200 with completion, checkpoint and work_unit_status.

    POST   /api/v1/completions/<cid>/verify
           Returns: 200 with the verified completion record.
"""

import logging

from flask import Blueprint, request

from siteqa.blueprints import (
    check_access,
    current_actor,
    json_body,
    ok,
    parse_int_field,
    register_error_handlers,
    require_fields,
)
from siteqa.services import inspection_service
from siteqa.utils.errors import E, api_error

logger = logging.getLogger(__name__)

inspection_bp = Blueprint("inspection", __name__, url_prefix="/api/v1")
register_error_handlers(inspection_bp)


@inspection_bp.route("/work-units/<int:work_unit_id>/inspection", methods=["POST"])
def assign_template(work_unit_id: int):
    check_access("WorkUnit", work_unit_id)
    data = json_body()
    err = require_fields(data, "template_id")
    if err:
        return err
    template_id, err = parse_int_field(data, "template_id")
    if err:
        return err
    view = inspection_service.assign_template(work_unit_id, template_id, assigned_by=current_actor())
    return ok(view, 201)


@inspection_bp.route("/work-units/<int:work_unit_id>/inspection", methods=["GET"])
def get_instance(work_unit_id: int):
    check_access("WorkUnit", work_unit_id)
    party = request.args.get("responsible_party") or None
    return ok(inspection_service.get_instance(work_unit_id, responsible_party=party))


@inspection_bp.route("/inspections/<int:instance_id>/completions", methods=["POST"])
def record_completion(instance_id: int):
    check_access("InspectionInstance", instance_id)
    data = json_body()
    err = require_fields(data, "checklist_item_id", "status")
    if err:
        return err
    item_id, err = parse_int_field(data, "checklist_item_id")
    if err:
        return err
    evidence_refs = data.get("evidence_refs") or []
    if not isinstance(evidence_refs, list):
        return api_error(E.VALIDATION_INVALID, "evidence_refs must be a list")

    result = inspection_service.record_completion(
        instance_id, item_id, data["status"],
        evidence_refs=evidence_refs,
        notes=data.get("notes"),
        completed_by=current_actor(),
    )
    return ok(result)


@inspection_bp.route("/completions/<int:completion_id>/verify", methods=["POST"])
def verify_completion(completion_id: int):
    check_access("CompletionRecord", completion_id)
    return ok(inspection_service.verify_completion(completion_id, verified_by=current_actor()))
