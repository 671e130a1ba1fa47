"""
Inspection Instance Tracker.

Owns the per-work-unit inspection instance:

  assign_template    freeze a template onto a work unit (once)
  get_instance       snapshot items + completion records, optionally
                     narrowed to one responsible party
  record_completion  upsert a completion record; a completed hold item
                     opens its checkpoint, a finished item may announce
                     an upcoming witness point
  verify_completion  mark a completed item verified

Usage:
    from siteqa.services import inspection_service

    view = inspection_service.assign_template(work_unit_id=7, template_id=3, assigned_by="pm-1")
    inspection_service.record_completion(view["id"], item_id, "completed", evidence_refs=["lots/7/a.jpg"])
"""

import logging
from datetime import datetime

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from siteqa.core.exceptions import ConflictError, NotFoundError, TransitionError, ValidationError
from siteqa.models import db
from siteqa.models.audit import write_audit
from siteqa.models.inspection import (
    COMPLETION_STATUSES,
    FINISHED_COMPLETION_STATUSES,
    CompletionRecord,
    InspectionInstance,
    InspectionTemplate,
)
from siteqa.models.project import WITNESS_NOTICE_ROLES
from siteqa.models.work_unit import WorkUnit
from siteqa.services import checkpoint_service, status_sync
from siteqa.services.helpers.unit_of_work import atomic, best_effort
from siteqa.services.notification import NotificationService, dedup_key, recipients_for_roles
from siteqa.services.snapshot_service import build_snapshot, read_snapshot, with_point_flags
from siteqa.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def _instance_view(instance: InspectionInstance, responsible_party: str | None = None) -> dict:
    view = read_snapshot(instance).filtered(responsible_party)
    visible_ids = {it["id"] for it in view.items}
    completions = [c.to_dict() for c in instance.completions if c.checklist_item_id in visible_ids]
    finished = sum(1 for c in completions if c["is_completed"])
    return {
        "id": instance.id,
        "work_unit_id": instance.work_unit_id,
        "template_id": instance.template_id,
        "assigned_by": instance.assigned_by,
        "created_at": instance.created_at.isoformat() if instance.created_at else None,
        "snapshot": view.to_dict(),
        "completions": completions,
        "responsible_party_filter": responsible_party,
        "progress": {"total_items": len(view.items), "finished_items": finished},
    }


def _get_instance_by_id(instance_id: int) -> InspectionInstance:
    instance = db.session.get(InspectionInstance, instance_id)
    if instance is None:
        raise NotFoundError(resource="InspectionInstance", resource_id=instance_id)
    return instance


# ═════════════════════════════════════════════════════════════════════════════
# Assign / read
# ═════════════════════════════════════════════════════════════════════════════

def assign_template(work_unit_id: int, template_id: int, *, assigned_by: str | None = None) -> dict:
    """Create the work unit's inspection instance from a frozen template copy.

    Raises:
        NotFoundError: unknown work unit or template.
        ConflictError: the work unit already has an instance.
    """
    with atomic():
        unit = db.session.get(WorkUnit, work_unit_id)
        if unit is None:
            raise NotFoundError(resource="WorkUnit", resource_id=work_unit_id)
        if unit.inspection is not None:
            raise ConflictError("InspectionInstance",
                                f"Work unit {unit.lot_number} already has an inspection assigned")
        template = db.session.get(InspectionTemplate, template_id)
        if template is None:
            raise NotFoundError(resource="InspectionTemplate", resource_id=template_id)

        instance = InspectionInstance(
            work_unit_id=unit.id,
            template_id=template.id,
            snapshot=build_snapshot(template),
            assigned_by=assigned_by,
        )
        try:
            with db.session.begin_nested():
                db.session.add(instance)
                db.session.flush()
        except IntegrityError as exc:
            raise ConflictError("InspectionInstance",
                                f"Work unit {unit.lot_number} already has an inspection assigned") from exc

        with best_effort("inspection audit", work_unit_id=unit.id):
            write_audit(
                entity_type="inspection_instance", entity_id=instance.id, action="inspection.assign",
                actor=assigned_by, project_id=unit.project_id,
                diff={"template_id": template.id, "items": len(instance.snapshot["items"])},
            )
        logger.info(
            "Template %s assigned to work unit %s", template.id, unit.id,
            extra={"work_unit_id": unit.id, "project_id": unit.project_id,
                   "event_type": "inspection.assign"},
        )
        view = _instance_view(instance)
    return view


def get_instance(work_unit_id: int, responsible_party: str | None = None) -> dict:
    unit = db.session.get(WorkUnit, work_unit_id)
    if unit is None:
        raise NotFoundError(resource="WorkUnit", resource_id=work_unit_id)
    if unit.inspection is None:
        raise NotFoundError(resource="InspectionInstance")
    return _instance_view(unit.inspection, responsible_party)


# ═════════════════════════════════════════════════════════════════════════════
# Completions
# ═════════════════════════════════════════════════════════════════════════════

def _witness_notice(instance: InspectionInstance, view, item: dict, completions: dict) -> None:
    """Announce a witness point coming up N items after *item*."""
    unit = instance.work_unit
    ahead = unit.project.setting(
        "witness_notice_items_ahead", current_app.config.get("WITNESS_NOTICE_ITEMS_AHEAD", 1),
    )
    ordered = view.items
    idx = next((i for i, it in enumerate(ordered) if it["id"] == item["id"]), None)
    if idx is None or idx + ahead >= len(ordered):
        return
    upcoming = ordered[idx + ahead]
    if upcoming["point_type"] != "witness":
        return
    done = completions.get(upcoming["id"])
    if done is not None and done.status in FINISHED_COMPLETION_STATUSES:
        return

    with best_effort("witness point notice", work_unit_id=unit.id):
        NotificationService.enqueue(
            recipients_for_roles(unit.project_id, WITNESS_NOTICE_ROLES),
            "witness_point_approaching",
            {"lot_number": unit.lot_number, "item": upcoming["description"],
             "sequence": upcoming["sequence_number"]},
            project_id=unit.project_id, entity_type="work_unit", entity_id=unit.id,
            dedup=dedup_key("witness", f"{instance.id}-{upcoming['id']}"),
        )


def record_completion(instance_id: int, checklist_item_id: int, status: str, *,
                      evidence_refs=None, notes: str | None = None,
                      completed_by: str | None = None, now: datetime | None = None) -> dict:
    """Upsert the completion record of one checklist item.

    Completing a hold item opens its checkpoint (never releases it).
    The first finished item moves the work unit's progress to in_progress.

    Returns:
        {"completion", "checkpoint" (or None), "work_unit_status"}
    """
    if status not in COMPLETION_STATUSES:
        raise ValidationError(f"Invalid completion status '{status}'",
                              details={"status": sorted(COMPLETION_STATUSES)})
    now = now or utcnow()

    with atomic():
        instance = _get_instance_by_id(instance_id)
        view = read_snapshot(instance)
        item = view.item(checklist_item_id)
        if item is None:
            raise NotFoundError(resource="ChecklistItem", resource_id=checklist_item_id)

        completions = {c.checklist_item_id: c for c in instance.completions}
        record = completions.get(checklist_item_id)
        if record is None:
            record = CompletionRecord(instance_id=instance.id, checklist_item_id=checklist_item_id)
            db.session.add(record)
            instance.completions.append(record)
            completions[checklist_item_id] = record

        previous = record.status
        record.status = status
        if notes is not None:
            record.notes = notes
        if evidence_refs:
            record.attachments = list(record.attachments or []) + list(evidence_refs)

        if status in FINISHED_COMPLETION_STATUSES:
            record.completed_at = now
            record.completed_by = completed_by
            if status == "completed" and item["point_type"] in ("hold", "witness"):
                record.verification_status = "pending_verification"
            else:
                record.verification_status = "none"
        else:
            record.completed_at = None
            record.completed_by = None
            record.verification_status = "none"
            record.verified_at = None
            record.verified_by = None
        db.session.flush()

        checkpoint = None
        if status == "completed" and item["point_type"] == "hold":
            checkpoint, _created = checkpoint_service.open_for_item(instance, item, now=now)

        if status in FINISHED_COMPLETION_STATUSES:
            status_sync.mark_progress_started(instance.work_unit_id)
            _witness_notice(instance, view, item, completions)

        sync = status_sync.recompute(instance.work_unit_id)
        with best_effort("completion audit", work_unit_id=instance.work_unit_id):
            write_audit(
                entity_type="completion_record", entity_id=record.id, action="inspection.record_completion",
                actor=completed_by, project_id=instance.work_unit.project_id,
                diff={"checklist_item_id": checklist_item_id, "status": {"old": previous, "new": status}},
            )
        result = {
            "completion": record.to_dict(),
            "item": with_point_flags(item),
            "checkpoint": checkpoint.to_dict() if checkpoint is not None else None,
            "work_unit_status": sync,
        }
    return result


def verify_completion(completion_id: int, *, verified_by: str, now: datetime | None = None) -> dict:
    """Mark a completed item verified.

    Raises:
        TransitionError: the item is not completed.
    """
    now = now or utcnow()
    with atomic():
        record = db.session.execute(
            select(CompletionRecord).where(CompletionRecord.id == completion_id).with_for_update()
        ).scalar_one_or_none()
        if record is None:
            raise NotFoundError(resource="CompletionRecord", resource_id=completion_id)
        if record.status != "completed":
            raise TransitionError("CompletionRecord", record.id, "verify", record.status)
        record.verification_status = "verified"
        record.verified_at = now
        record.verified_by = verified_by
        db.session.flush()
        with best_effort("completion audit", completion_id=record.id):
            write_audit(
                entity_type="completion_record", entity_id=record.id, action="inspection.verify",
                actor=verified_by, project_id=record.instance.work_unit.project_id,
                diff={"verification_status": "verified"},
            )
        result = record.to_dict()
    return result
