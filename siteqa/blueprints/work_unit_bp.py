"""
Work Unit Blueprint: derived status and progress.

Endpoints:
    GET    /api/v1/work-units/<wid>/status
           Returns: stored status, progress status, open issue and
           blocking checkpoint counts.

    POST   /api/v1/work-units/<wid>/progress
           Body: { "progress_status": "in_progress|awaiting_test|completed|..." }
           Returns: 200 with the recomputed status summary.
"""

from flask import Blueprint

from siteqa.blueprints import (
    check_access,
    current_actor,
    json_body,
    ok,
    register_error_handlers,
    require_fields,
)
from siteqa.services import status_sync

work_unit_bp = Blueprint("work_unit", __name__, url_prefix="/api/v1")
register_error_handlers(work_unit_bp)


@work_unit_bp.route("/work-units/<int:work_unit_id>/status", methods=["GET"])
def get_status(work_unit_id: int):
    check_access("WorkUnit", work_unit_id)
    return ok(status_sync.get_work_unit_status(work_unit_id))


@work_unit_bp.route("/work-units/<int:work_unit_id>/progress", methods=["POST"])
def advance_progress(work_unit_id: int):
    check_access("WorkUnit", work_unit_id)
    data = json_body()
    err = require_fields(data, "progress_status")
    if err:
        return err
    return ok(status_sync.advance_progress(work_unit_id, data["progress_status"], actor=current_actor()))
