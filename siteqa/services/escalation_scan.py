"""
Escalation scan: the scheduler-facing sweep over stale work.

Stale checkpoints:
    a live ``notified`` checkpoint whose last activity (last chase, else
    the release request) is older than

        CHECKPOINT_FIRST_ESCALATION_HOURS   → level 1: escalate once,
                                              escalated_by = "system"
        CHECKPOINT_SECOND_ESCALATION_HOURS  → level 2: daily reminder to
                                              the project managers

Overdue issues:
    any issue that is not closed and whose due date has passed gets a
    daily reminder to its responsible party and the managers.

Timing is owned by an external scheduler (cron, k8s CronJob) calling
``flask escalation-scan``. Reminders are deduplicated per day, so running
the scan more often than that is harmless.
"""

import logging
from datetime import date, datetime

from flask import current_app
from sqlalchemy import select

from siteqa.core.exceptions import ConflictError
from siteqa.models import db
from siteqa.models.checkpoint import Checkpoint
from siteqa.models.issue import CLOSED_ISSUE_STATUSES, Issue
from siteqa.models.project import MANAGER_ROLES
from siteqa.models.work_unit import WorkUnit
from siteqa.services import checkpoint_service
from siteqa.services.helpers.unit_of_work import atomic, best_effort
from siteqa.services.notification import NotificationService, dedup_key, recipients_for_roles
from siteqa.utils.helpers import ensure_utc, utcnow

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


def _idle_hours(cp: Checkpoint, now: datetime) -> float | None:
    last = ensure_utc(cp.last_chased_at or cp.notification_sent_at)
    if last is None:
        return None
    return (now - last).total_seconds() / 3600


def find_stale_checkpoints(now: datetime | None = None) -> list[dict]:
    """Notified checkpoints idle past a threshold, with the level reached."""
    now = now or utcnow()
    first = current_app.config.get("CHECKPOINT_FIRST_ESCALATION_HOURS", 24)
    second = current_app.config.get("CHECKPOINT_SECOND_ESCALATION_HOURS", 48)

    candidates = db.session.execute(
        select(Checkpoint)
        .where(Checkpoint.status == "notified", Checkpoint.superseded_at.is_(None))
        .order_by(Checkpoint.id)
    ).scalars()

    stale = []
    for cp in candidates:
        idle = _idle_hours(cp, now)
        if idle is None or idle < first:
            continue
        stale.append({
            "checkpoint": cp,
            "idle_hours": round(idle, 1),
            "level": 2 if idle >= second else 1,
        })
    return stale


def find_overdue_issues(today: date | None = None) -> list[Issue]:
    today = today or utcnow().date()
    return list(db.session.execute(
        select(Issue)
        .where(
            Issue.due_date.is_not(None),
            Issue.due_date < today,
            Issue.status.not_in(list(CLOSED_ISSUE_STATUSES)),
        )
        .order_by(Issue.id)
    ).scalars())


def run_escalation_scan(now: datetime | None = None) -> dict:
    """Escalate and remind.

    Returns:
        {"escalated": [checkpoint ids], "stale_reminders": int,
         "overdue_reminders": int}
    """
    now = now or utcnow()
    today = now.date()
    summary = {"escalated": [], "stale_reminders": 0, "overdue_reminders": 0}

    for entry in find_stale_checkpoints(now):
        cp = entry["checkpoint"]
        if not cp.is_escalated:
            try:
                checkpoint_service.escalate(
                    cp.id,
                    escalated_by=SYSTEM_ACTOR,
                    reason=f"No response for {entry['idle_hours']} hours after release request",
                    now=now,
                )
                summary["escalated"].append(cp.id)
            except ConflictError as exc:
                # Released or escalated by someone else since the query
                logger.info("Skipping escalation of checkpoint %s: %s", cp.id, exc,
                            extra={"checkpoint_id": cp.id, "event_type": "escalation_scan.skip"})

        if entry["level"] == 2:
            with atomic():
                unit = db.session.get(WorkUnit, cp.work_unit_id)
                with best_effort("stale checkpoint reminder", checkpoint_id=cp.id):
                    sent = NotificationService.enqueue(
                        recipients_for_roles(unit.project_id, MANAGER_ROLES),
                        "checkpoint_stale",
                        {"lot_number": unit.lot_number, "item": cp.description,
                         "idle_hours": int(entry["idle_hours"])},
                        project_id=unit.project_id, entity_type="checkpoint", entity_id=cp.id,
                        dedup=dedup_key("checkpoint_stale", cp.id, today),
                    )
                    summary["stale_reminders"] += len(sent)

    for issue in find_overdue_issues(today):
        with atomic():
            recipients = [issue.responsible_party] + recipients_for_roles(issue.project_id, MANAGER_ROLES)
            with best_effort("overdue issue reminder", issue_id=issue.id):
                sent = NotificationService.enqueue(
                    recipients,
                    "issue_overdue",
                    {"issue_number": issue.issue_number, "due_date": issue.due_date.isoformat(),
                     "status": issue.status},
                    project_id=issue.project_id, entity_type="issue", entity_id=issue.id,
                    dedup=dedup_key("issue_overdue", issue.id, today),
                )
                summary["overdue_reminders"] += len(sent)

    logger.info(
        "Escalation scan: %d escalated, %d stale reminders, %d overdue reminders",
        len(summary["escalated"]), summary["stale_reminders"], summary["overdue_reminders"],
        extra={"event_type": "escalation_scan.run"},
    )
    return summary
