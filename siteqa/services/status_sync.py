"""
Work-Unit Status Synchronizer.

A work unit's visible ``status`` is a function of three inputs:

    open issues           any issue linked to the unit whose status is not
                          closed / closed_concession
    blocking checkpoints  any live checkpoint on the unit that has not
                          been released
    progress_status       the unit's normal progress

    derive_status(open_issues, blocking_checkpoints, progress_status):
        open_issues > 0           → "issue_raised"
        blocking_checkpoints > 0  → "on_hold"
        otherwise                 → progress_status

``recompute`` writes the derived value back. It runs inside the caller's
transaction and locks the work unit row, so the stored column is always
consistent with the issue / checkpoint rows committed alongside it.
Nothing here ever moves progress to "completed"; that is AdvanceProgress.

Usage:
    from siteqa.services import status_sync

    with atomic():
        ...transition...
        summary = status_sync.recompute(work_unit_id)
"""

import logging

from sqlalchemy import func, select

from siteqa.core.exceptions import ConflictError, NotFoundError, TransitionError
from siteqa.models import db
from siteqa.models.audit import write_audit
from siteqa.models.checkpoint import BLOCKING_CHECKPOINT_STATUSES, Checkpoint
from siteqa.models.issue import CLOSED_ISSUE_STATUSES, Issue, IssueWorkUnit
from siteqa.models.work_unit import (
    PROGRESS_TRANSITIONS,
    SIGN_OFF_STATUSES,
    STATUS_ISSUE_RAISED,
    STATUS_ON_HOLD,
    WorkUnit,
)
from siteqa.services.helpers.unit_of_work import atomic, best_effort
from siteqa.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def derive_status(open_issues: int, blocking_checkpoints: int, progress_status: str) -> str:
    if open_issues > 0:
        return STATUS_ISSUE_RAISED
    if blocking_checkpoints > 0:
        return STATUS_ON_HOLD
    return progress_status


def _lock_work_unit(work_unit_id: int) -> WorkUnit:
    unit = db.session.execute(
        select(WorkUnit).where(WorkUnit.id == work_unit_id).with_for_update()
    ).scalar_one_or_none()
    if unit is None:
        raise NotFoundError(resource="WorkUnit", resource_id=work_unit_id)
    return unit


def count_open_issues(work_unit_id: int) -> int:
    return db.session.execute(
        select(func.count(func.distinct(Issue.id)))
        .join(IssueWorkUnit, IssueWorkUnit.issue_id == Issue.id)
        .where(
            IssueWorkUnit.work_unit_id == work_unit_id,
            Issue.status.not_in(list(CLOSED_ISSUE_STATUSES)),
        )
    ).scalar_one()


def count_blocking_checkpoints(work_unit_id: int) -> int:
    return db.session.execute(
        select(func.count(Checkpoint.id)).where(
            Checkpoint.work_unit_id == work_unit_id,
            Checkpoint.superseded_at.is_(None),
            Checkpoint.status.in_(list(BLOCKING_CHECKPOINT_STATUSES)),
        )
    ).scalar_one()


def _summary(unit: WorkUnit, open_issues: int, blocking: int, previous: str | None = None) -> dict:
    return {
        "work_unit_id": unit.id,
        "status": unit.status,
        "previous_status": previous if previous is not None else unit.status,
        "progress_status": unit.progress_status,
        "open_issues": open_issues,
        "blocking_checkpoints": blocking,
    }


def recompute(work_unit_id: int) -> dict:
    """Re-derive and store the status of one work unit.

    Must be called inside the transaction of the triggering transition.
    Any failure propagates so that transition rolls back with it.
    """
    unit = _lock_work_unit(work_unit_id)
    open_issues = count_open_issues(work_unit_id)
    blocking = count_blocking_checkpoints(work_unit_id)

    previous = unit.status
    derived = derive_status(open_issues, blocking, unit.progress_status)
    if derived != previous:
        unit.status = derived
        unit.status_updated_at = utcnow()
        db.session.flush()
        logger.info(
            "Work unit %s status %s → %s", unit.id, previous, derived,
            extra={"work_unit_id": unit.id, "project_id": unit.project_id,
                   "event_type": "work_unit.status_derived"},
        )
    return _summary(unit, open_issues, blocking, previous)


def recompute_many(work_unit_ids) -> list[dict]:
    # Lock in id order so two transactions touching the same units cannot deadlock
    return [recompute(wid) for wid in sorted(set(work_unit_ids))]


def mark_progress_started(work_unit_id: int) -> bool:
    """Move progress from not_started to in_progress on the first finished checklist item."""
    unit = _lock_work_unit(work_unit_id)
    if unit.progress_status != "not_started":
        return False
    unit.progress_status = "in_progress"
    db.session.flush()
    return True


def get_work_unit_status(work_unit_id: int) -> dict:
    unit = db.session.get(WorkUnit, work_unit_id)
    if unit is None:
        raise NotFoundError(resource="WorkUnit", resource_id=work_unit_id)
    return _summary(unit, count_open_issues(unit.id), count_blocking_checkpoints(unit.id))


def advance_progress(work_unit_id: int, progress_status: str, *, actor: str | None = None) -> dict:
    """Explicit progress trigger (e.g. in_progress → completed).

    Raises:
        TransitionError: the move is not in PROGRESS_TRANSITIONS.
        ConflictError: a sign-off state was requested while the unit is blocked.
    """
    with atomic():
        unit = _lock_work_unit(work_unit_id)
        current = unit.progress_status
        if progress_status not in PROGRESS_TRANSITIONS.get(current, []):
            raise TransitionError("WorkUnit", unit.id, f"advance to {progress_status}", current)

        if progress_status in SIGN_OFF_STATUSES:
            open_issues = count_open_issues(unit.id)
            blocking = count_blocking_checkpoints(unit.id)
            if open_issues or blocking:
                raise ConflictError(
                    "WorkUnit",
                    f"Work unit {unit.lot_number} cannot move to '{progress_status}' while "
                    f"{open_issues} issue(s) and {blocking} checkpoint(s) are unresolved",
                )

        unit.progress_status = progress_status
        db.session.flush()
        summary = recompute(unit.id)
        with best_effort("work unit audit", work_unit_id=unit.id):
            write_audit(
                entity_type="work_unit", entity_id=unit.id, action="work_unit.advance_progress",
                actor=actor, project_id=unit.project_id,
                diff={"progress_status": {"old": current, "new": progress_status}},
            )
        logger.info(
            "Work unit %s progress %s → %s by %s", unit.id, current, progress_status, actor or "system",
            extra={"work_unit_id": unit.id, "event_type": "work_unit.progress"},
        )
    return summary
