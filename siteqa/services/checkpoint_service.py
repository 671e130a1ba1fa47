"""
Checkpoint (hold point) Lifecycle Controller.

═══ Primary lifecycle ═════════════════════════════════════════════════

    pending ──notify──▶ notified ──release──▶ released
                            │
                            └────reject───▶ rejected

    notify   pending → notified; no-op when already notified
    chase    notified only; chase_count += 1, last_chased_at = now
    release  notified only; records attribution, verifies the hold item
    reject   notified only; reason required

═══ Escalation (orthogonal) ═══════════════════════════════════════════

    escalate            allowed while pending / notified and no escalation
                        is open; escalations do not stack
    resolve_escalation  closes the open escalation
    release             also resolves any open escalation

Every transition is a conditional UPDATE keyed on the current status
(``guarded_update``); zero rows affected → Conflict. Every transition
re-derives the work unit status in the same transaction.
Notifications are best effort and never roll a transition back.
"""

import logging
from datetime import datetime, time, timedelta

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from siteqa.core.exceptions import (
    ConflictError,
    NotFoundError,
    TransitionError,
    ValidationError,
)
from siteqa.models import db
from siteqa.models.audit import write_audit
from siteqa.models.checkpoint import (
    CHECKPOINT_STATUSES,
    CHECKPOINT_TRANSITIONS,
    RELEASE_METHODS,
    TERMINAL_CHECKPOINT_STATUSES,
    Checkpoint,
)
from siteqa.models.inspection import FINISHED_COMPLETION_STATUSES, CompletionRecord
from siteqa.models.project import MANAGER_ROLES, Project
from siteqa.models.work_unit import WorkUnit
from siteqa.services import status_sync
from siteqa.services.evidence_store import get_evidence_store
from siteqa.services.helpers.unit_of_work import atomic, best_effort, guarded_update
from siteqa.services.notification import NotificationService, recipients_for_roles
from siteqa.services.snapshot_service import read_snapshot, with_point_flags
from siteqa.utils.helpers import utcnow

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Lookups
# ═════════════════════════════════════════════════════════════════════════════

def get_checkpoint(checkpoint_id: int) -> Checkpoint:
    cp = db.session.get(Checkpoint, checkpoint_id)
    if cp is None:
        raise NotFoundError(resource="Checkpoint", resource_id=checkpoint_id)
    return cp


def get_live_checkpoint(work_unit_id: int, checklist_item_id: int) -> Checkpoint | None:
    return db.session.execute(
        select(Checkpoint).where(
            Checkpoint.work_unit_id == work_unit_id,
            Checkpoint.checklist_item_id == checklist_item_id,
            Checkpoint.superseded_at.is_(None),
        )
    ).scalar_one_or_none()


def _result(cp: Checkpoint, sync: dict, **extra) -> dict:
    return {"checkpoint": cp.to_dict(), "work_unit_status": sync, **extra}


def _context(cp: Checkpoint, **extra) -> dict:
    return {
        "lot_number": cp.work_unit.lot_number,
        "item": cp.description,
        **extra,
    }


def _audit(cp: Checkpoint, action: str, actor, diff: dict):
    with best_effort("checkpoint audit", checkpoint_id=cp.id):
        write_audit(
            entity_type="checkpoint", entity_id=cp.id, action=f"checkpoint.{action}",
            actor=actor, project_id=cp.work_unit.project_id, diff=diff,
        )


def _log(cp: Checkpoint, message: str, *args, event: str):
    logger.info(
        message, *args,
        extra={"checkpoint_id": cp.id, "work_unit_id": cp.work_unit_id,
               "project_id": cp.work_unit.project_id, "event_type": f"checkpoint.{event}"},
    )


# ═════════════════════════════════════════════════════════════════════════════
# Creation (triggered by hold-item completion or a release request)
# ═════════════════════════════════════════════════════════════════════════════

def open_for_item(instance, item: dict, *, now: datetime | None = None) -> tuple[Checkpoint, bool]:
    """Return the live checkpoint for (work unit, hold item), creating it if needed.

    A live checkpoint that was rejected is superseded by a fresh pending
    one (re-inspection). Runs inside the caller's transaction.

    Returns:
        (checkpoint, created)
    """
    now = now or utcnow()
    live = get_live_checkpoint(instance.work_unit_id, item["id"])
    if live is not None and live.status != "rejected":
        return live, False
    if live is not None:
        live.superseded_at = now
        db.session.flush()

    cp = Checkpoint(
        work_unit_id=instance.work_unit_id,
        instance_id=instance.id,
        checklist_item_id=item["id"],
        sequence_number=item.get("sequence_number"),
        description=item.get("description", ""),
        status="pending",
    )
    try:
        with db.session.begin_nested():
            db.session.add(cp)
            db.session.flush()
    except IntegrityError:
        # Lost a race with a concurrent completion of the same item
        existing = get_live_checkpoint(instance.work_unit_id, item["id"])
        if existing is None:
            raise
        return existing, False

    _log(cp, "Checkpoint %s opened for item %s", cp.id, item["id"], event="opened")
    _audit(cp, "open", None, {"status": {"old": None, "new": "pending"},
                              "superseded": live.id if live is not None else None})
    return cp, True


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════

def notify(checkpoint_id: int, *, notified_to: str | None = None,
           scheduled_date: datetime | None = None, actor: str | None = None,
           now: datetime | None = None) -> dict:
    """pending → notified. Already notified: returns unchanged."""
    now = now or utcnow()
    with atomic():
        cp = get_checkpoint(checkpoint_id)
        if cp.status == "notified":
            return _result(cp, status_sync.recompute(cp.work_unit_id), already_notified=True)

        rule = CHECKPOINT_TRANSITIONS["notify"]
        values = {"status": rule["to"], "notification_sent_at": now}
        if notified_to:
            values["notified_to"] = notified_to
        if scheduled_date:
            values["scheduled_date"] = scheduled_date
        if not guarded_update(Checkpoint, cp.id, rule["from"], values):
            if cp.status == "notified":
                return _result(cp, status_sync.recompute(cp.work_unit_id), already_notified=True)
            raise TransitionError("Checkpoint", cp.id, "notify", cp.status)

        sync = status_sync.recompute(cp.work_unit_id)
        _audit(cp, "notify", actor, {"status": {"old": "pending", "new": cp.status},
                                     "notified_to": cp.notified_to})
        if cp.notified_to:
            with best_effort("release request notification", checkpoint_id=cp.id):
                scheduled = (f"Scheduled for {cp.scheduled_date.isoformat()}."
                             if cp.scheduled_date else "")
                NotificationService.enqueue(
                    [cp.notified_to], "checkpoint_release_requested",
                    _context(cp, scheduled=scheduled),
                    project_id=cp.work_unit.project_id, entity_type="checkpoint", entity_id=cp.id,
                )
        _log(cp, "Checkpoint %s notified", cp.id, event="notify")
    return _result(cp, sync, already_notified=False)


def chase(checkpoint_id: int, *, actor: str | None = None, now: datetime | None = None) -> dict:
    """Send a reminder. Valid only while notified."""
    now = now or utcnow()
    with atomic():
        cp = get_checkpoint(checkpoint_id)
        ok = guarded_update(
            Checkpoint, cp.id, ["notified"],
            {"chase_count": Checkpoint.chase_count + 1, "last_chased_at": now},
        )
        if not ok:
            raise TransitionError("Checkpoint", cp.id, "chase", cp.status,
                                  "reminders are only sent while awaiting release")

        sync = status_sync.recompute(cp.work_unit_id)
        _audit(cp, "chase", actor, {"chase_count": cp.chase_count})
        if cp.notified_to:
            with best_effort("chase notification", checkpoint_id=cp.id):
                NotificationService.enqueue(
                    [cp.notified_to], "checkpoint_chased",
                    _context(cp, chase_count=cp.chase_count),
                    project_id=cp.work_unit.project_id, entity_type="checkpoint", entity_id=cp.id,
                )
        _log(cp, "Checkpoint %s chased (%d)", cp.id, cp.chase_count, event="chase")
    return _result(cp, sync)


def escalate(checkpoint_id: int, *, escalated_by: str, recipients=None, reason: str,
             now: datetime | None = None) -> dict:
    """Flag the checkpoint as escalated and notify *recipients*.

    Raises:
        TransitionError: checkpoint already released / rejected.
        ConflictError: an escalation is already open.
        ValidationError: no reason given.
    """
    if not reason or not str(reason).strip():
        raise ValidationError("An escalation reason is required", details={"reason": "required"})
    now = now or utcnow()

    with atomic():
        cp = get_checkpoint(checkpoint_id)
        targets = [r for r in (recipients or []) if r]
        if not targets:
            targets = recipients_for_roles(cp.work_unit.project_id, MANAGER_ROLES)

        ok = guarded_update(
            Checkpoint, cp.id, ["pending", "notified"],
            {
                "is_escalated": True,
                "escalated_at": now,
                "escalated_by": escalated_by,
                "escalated_to": targets,
                "escalation_reason": reason,
                "escalation_resolved": False,
                "escalation_resolved_at": None,
                "escalation_resolved_by": None,
            },
            (Checkpoint.is_escalated.is_(False)) | (Checkpoint.escalation_resolved.is_(True)),
        )
        if not ok:
            if cp.status in TERMINAL_CHECKPOINT_STATUSES:
                raise TransitionError("Checkpoint", cp.id, "escalate", cp.status)
            raise ConflictError(
                "Checkpoint",
                f"Checkpoint {cp.id} is already escalated; resolve or release it first",
            )

        sync = status_sync.recompute(cp.work_unit_id)
        _audit(cp, "escalate", escalated_by, {"escalated_to": targets, "reason": reason})
        with best_effort("escalation notification", checkpoint_id=cp.id):
            NotificationService.enqueue(
                targets, "checkpoint_escalated",
                _context(cp, escalated_by=escalated_by, reason=reason),
                project_id=cp.work_unit.project_id, entity_type="checkpoint", entity_id=cp.id,
            )
        _log(cp, "Checkpoint %s escalated by %s", cp.id, escalated_by, event="escalate")
    return _result(cp, sync)


def resolve_escalation(checkpoint_id: int, *, resolved_by: str, now: datetime | None = None) -> dict:
    now = now or utcnow()
    with atomic():
        cp = get_checkpoint(checkpoint_id)
        ok = guarded_update(
            Checkpoint, cp.id, sorted(CHECKPOINT_STATUSES),
            {"escalation_resolved": True, "escalation_resolved_at": now,
             "escalation_resolved_by": resolved_by},
            Checkpoint.is_escalated.is_(True),
            Checkpoint.escalation_resolved.is_(False),
        )
        if not ok:
            raise ConflictError("Checkpoint", f"Checkpoint {cp.id} has no open escalation")
        sync = status_sync.recompute(cp.work_unit_id)
        _audit(cp, "resolve_escalation", resolved_by, {"escalation_resolved": True})
    return _result(cp, sync)


def release(checkpoint_id: int, *, released_by_name: str, released_by_org: str | None = None,
            notes: str | None = None, method: str = "digital", actor: str | None = None,
            now: datetime | None = None) -> dict:
    """notified → released.

    Records attribution, resolves an open escalation, marks the hold
    item's completion verified and re-derives the work unit status.
    """
    if not released_by_name or not str(released_by_name).strip():
        raise ValidationError("released_by_name is required", details={"released_by_name": "required"})
    if method not in RELEASE_METHODS:
        raise ValidationError(f"Unknown release method '{method}'",
                              details={"method": sorted(RELEASE_METHODS)})
    now = now or utcnow()

    with atomic():
        cp = get_checkpoint(checkpoint_id)
        rule = CHECKPOINT_TRANSITIONS["release"]
        ok = guarded_update(
            Checkpoint, cp.id, rule["from"],
            {
                "status": rule["to"],
                "released_at": now,
                "released_by_name": released_by_name,
                "released_by_org": released_by_org,
                "release_method": method,
                "release_notes": notes,
            },
        )
        if not ok:
            raise TransitionError("Checkpoint", cp.id, "release", cp.status)

        if cp.has_open_escalation:
            cp.escalation_resolved = True
            cp.escalation_resolved_at = now
            cp.escalation_resolved_by = released_by_name

        completion = db.session.execute(
            select(CompletionRecord).where(
                CompletionRecord.instance_id == cp.instance_id,
                CompletionRecord.checklist_item_id == cp.checklist_item_id,
            )
        ).scalar_one_or_none()
        if completion is not None:
            completion.verification_status = "verified"
            completion.verified_at = now
            completion.verified_by = released_by_name
        db.session.flush()

        sync = status_sync.recompute(cp.work_unit_id)
        _audit(cp, "release", actor or released_by_name, {
            "status": {"old": "notified", "new": "released"},
            "released_by_org": released_by_org, "method": method,
        })
        with best_effort("release notification", checkpoint_id=cp.id):
            recipients = recipients_for_roles(cp.work_unit.project_id, MANAGER_ROLES)
            NotificationService.enqueue(
                recipients, "checkpoint_released",
                _context(cp, released_by=released_by_name, method=method),
                project_id=cp.work_unit.project_id, entity_type="checkpoint", entity_id=cp.id,
            )
        _log(cp, "Checkpoint %s released via %s", cp.id, method, event="release")
    return _result(cp, sync)


def reject(checkpoint_id: int, *, reason: str, rejected_by: str | None = None,
           now: datetime | None = None) -> dict:
    """notified → rejected. The unit stays on hold until re-inspection."""
    if not reason or not str(reason).strip():
        raise ValidationError("A rejection reason is required", details={"reason": "required"})
    now = now or utcnow()

    with atomic():
        cp = get_checkpoint(checkpoint_id)
        rule = CHECKPOINT_TRANSITIONS["reject"]
        ok = guarded_update(
            Checkpoint, cp.id, rule["from"],
            {"status": rule["to"], "rejected_at": now, "rejected_by": rejected_by,
             "rejection_reason": reason},
        )
        if not ok:
            raise TransitionError("Checkpoint", cp.id, "reject", cp.status)

        sync = status_sync.recompute(cp.work_unit_id)
        _audit(cp, "reject", rejected_by, {"status": {"old": "notified", "new": "rejected"},
                                           "reason": reason})
        _log(cp, "Checkpoint %s rejected", cp.id, event="reject")
    return _result(cp, sync)


# ═════════════════════════════════════════════════════════════════════════════
# Release requests & reads
# ═════════════════════════════════════════════════════════════════════════════

def _hold_item_context(work_unit_id: int, checklist_item_id: int):
    unit = db.session.get(WorkUnit, work_unit_id)
    if unit is None:
        raise NotFoundError(resource="WorkUnit", resource_id=work_unit_id)
    instance = unit.inspection
    if instance is None:
        raise NotFoundError(resource="InspectionInstance")
    view = read_snapshot(instance)
    item = view.item(checklist_item_id)
    if item is None:
        raise NotFoundError(resource="ChecklistItem", resource_id=checklist_item_id)
    return unit, instance, view, item


def _prerequisites(instance, view, item) -> list[dict]:
    completions = {c.checklist_item_id: c for c in instance.completions}
    out = []
    for prior in view.items_before(item["sequence_number"]):
        c = completions.get(prior["id"])
        out.append({
            "id": prior["id"],
            "sequence_number": prior["sequence_number"],
            "description": prior["description"],
            "point_type": prior["point_type"],
            "status": c.status if c else "pending",
            "is_completed": bool(c and c.status in FINISHED_COMPLETION_STATUSES),
        })
    return out


def request_release(work_unit_id: int, checklist_item_id: int, *, notified_to: str | None = None,
                    scheduled_date: datetime | None = None, actor: str | None = None,
                    now: datetime | None = None) -> dict:
    """Ask for a hold point to be released once every preceding item is done.

    Raises:
        ValidationError: the item is not a hold point, or earlier items are
            incomplete (listed in ``details["incomplete_items"]``).
    """
    with atomic():
        unit, instance, view, item = _hold_item_context(work_unit_id, checklist_item_id)
        if item["point_type"] != "hold":
            raise ValidationError("Only hold points can be released",
                                  details={"point_type": item["point_type"]})

        incomplete = [p for p in _prerequisites(instance, view, item) if not p["is_completed"]]
        if incomplete:
            raise ValidationError(
                f"{len(incomplete)} preceding checklist item(s) must be completed first",
                details={"incomplete_items": incomplete},
            )

        cp, _created = open_for_item(instance, item, now=now)
        if cp.status == "released":
            raise TransitionError("Checkpoint", cp.id, "request release", cp.status)
        return notify(cp.id, notified_to=notified_to, scheduled_date=scheduled_date,
                      actor=actor, now=now)


def get_checkpoint_detail(work_unit_id: int, checklist_item_id: int) -> dict:
    unit, instance, view, item = _hold_item_context(work_unit_id, checklist_item_id)
    cp = get_live_checkpoint(unit.id, checklist_item_id)
    prerequisites = _prerequisites(instance, view, item)
    incomplete = [p for p in prerequisites if not p["is_completed"]]
    return {
        "checkpoint": cp.to_dict() if cp else None,
        "item": with_point_flags(item),
        "prerequisites": prerequisites,
        "incomplete_count": len(incomplete),
        "can_request_release": (
            item["point_type"] == "hold"
            and not incomplete
            and (cp is None or cp.status in ("pending", "rejected"))
        ),
    }


def list_project_checkpoints(project_id: int, status: str | None = None) -> list[dict]:
    stmt = (
        select(Checkpoint, WorkUnit.lot_number)
        .join(WorkUnit, WorkUnit.id == Checkpoint.work_unit_id)
        .where(WorkUnit.project_id == project_id, Checkpoint.superseded_at.is_(None))
        .order_by(WorkUnit.lot_number, Checkpoint.sequence_number)
    )
    if status:
        stmt = stmt.where(Checkpoint.status == status)
    return [
        {**cp.to_dict(), "lot_number": lot_number}
        for cp, lot_number in db.session.execute(stmt).all()
    ]


def build_evidence_package(checkpoint: Checkpoint, *, external: bool = False) -> dict:
    """Everything needed to decide on a release.

    ``external=True`` drops addresses, escalation detail and completer
    identities; that variant is served to unauthenticated link holders.
    """
    instance = checkpoint.instance
    unit = checkpoint.work_unit
    project = unit.project
    view = read_snapshot(instance)
    completions = {c.checklist_item_id: c for c in instance.completions}
    store = get_evidence_store()

    checklist = []
    completed = verified = attachment_count = 0
    for it in view.items:
        if checkpoint.sequence_number is not None and it["sequence_number"] > checkpoint.sequence_number:
            continue
        c = completions.get(it["id"])
        attachments = store.resolve_many(c.attachments if c else [])
        attachment_count += len(attachments)
        entry = {
            **with_point_flags(it),
            "completion": None,
            "attachments": attachments,
        }
        if c is not None:
            completed += int(c.is_completed)
            verified += int(c.is_verified)
            entry["completion"] = {
                "status": c.status,
                "verification_status": c.verification_status,
                "completed_at": c.completed_at.isoformat() if c.completed_at else None,
                "verified_at": c.verified_at.isoformat() if c.verified_at else None,
                "notes": c.notes,
            }
            if not external:
                entry["completion"]["completed_by"] = c.completed_by
                entry["completion"]["verified_by"] = c.verified_by
        checklist.append(entry)

    return {
        "checkpoint": checkpoint.to_dict(include_internal=not external),
        "work_unit": {
            "id": unit.id,
            "lot_number": unit.lot_number,
            "description": unit.description,
            "activity_type": unit.activity_type,
            "chainage_start": unit.chainage_start,
            "chainage_end": unit.chainage_end,
        },
        "project": {"name": project.name, "code": project.code},
        "template": {
            "name": view.template.get("name"),
            "activity_type": view.template.get("activity_type"),
        },
        "snapshot_source": view.source,
        "checklist": checklist,
        "summary": {
            "total_items": len(checklist),
            "completed_items": completed,
            "verified_items": verified,
            "attachment_count": attachment_count,
        },
        "generated_at": utcnow().isoformat(),
    }


# ═════════════════════════════════════════════════════════════════════════════
# Working-hours scheduling
# ═════════════════════════════════════════════════════════════════════════════

def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def _parse_working_days(value: str) -> set[int]:
    """ISO weekdays 1-7; 0 is accepted as Sunday."""
    days = set()
    for part in value.split(","):
        if not part.strip():
            continue
        try:
            day = int(part)
        except ValueError:
            day = -1
        if not 0 <= day <= 7:
            raise ValidationError(f"Invalid working day '{part.strip()}'",
                                  details={"working_days": value})
        days.add(day or 7)
    return days


def working_window(project: Project) -> tuple[time, time, set[int]]:
    cfg = current_app.config
    start = _parse_hhmm(project.working_hours_start or cfg["DEFAULT_WORKING_HOURS_START"])
    end = _parse_hhmm(project.working_hours_end or cfg["DEFAULT_WORKING_HOURS_END"])
    days = _parse_working_days(project.working_days or cfg["DEFAULT_WORKING_DAYS"])
    return start, end, days


def calculate_notification_time(project_id: int, requested_at: datetime) -> dict:
    """Shift *requested_at* into the project's working window.

    The window is applied in the offset carried by *requested_at* (site
    local time when the caller sends one).
    """
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    start, end, days = working_window(project)
    if not days:
        raise ValidationError("Project has no working days configured")

    tz = requested_at.tzinfo
    local_time = requested_at.timetz().replace(tzinfo=None)
    is_working_day = requested_at.isoweekday() in days

    if is_working_day and start <= local_time <= end:
        return {"requested": requested_at.isoformat(), "scheduled": requested_at.isoformat(),
                "adjusted": False, "reason": None}

    if is_working_day and local_time < start:
        scheduled = datetime.combine(requested_at.date(), start, tzinfo=tz)
        reason = "Before working hours; moved to start of day"
    else:
        day = next(d for d in (requested_at.date() + timedelta(days=n) for n in range(1, 8))
                   if d.isoweekday() in days)
        scheduled = datetime.combine(day, start, tzinfo=tz)
        reason = ("After working hours; moved to next working day" if is_working_day
                  else "Non-working day; moved to next working day")

    return {"requested": requested_at.isoformat(), "scheduled": scheduled.isoformat(),
            "adjusted": True, "reason": reason}
