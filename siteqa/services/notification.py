"""
Site Quality Workflow Engine
Notification Service.

The workflow decides *that* a notification is due and *what* it says;
delivery is someone else's job. ``enqueue`` renders a template into one
outbox row per recipient and never commits; callers own the transaction
(and normally wrap the call in ``best_effort``).
"""

import hashlib
import logging
from datetime import date

from sqlalchemy import select

from siteqa.models import db
from siteqa.models.notification import Notification
from siteqa.models.project import ProjectMember

logger = logging.getLogger(__name__)


# template name → (category, severity, title, message)
NOTIFICATION_TEMPLATES = {
    "checkpoint_release_requested": (
        "checkpoint", "info",
        "Hold point release requested: {lot_number}",
        "Hold point '{item}' on {lot_number} is ready for inspection. {scheduled}",
    ),
    "checkpoint_chased": (
        "checkpoint", "warning",
        "Reminder: hold point awaiting release on {lot_number}",
        "Hold point '{item}' on {lot_number} is still awaiting release (reminder {chase_count}).",
    ),
    "checkpoint_escalated": (
        "escalation", "error",
        "ESCALATION: hold point on {lot_number}",
        "Hold point '{item}' on {lot_number} was escalated by {escalated_by}: {reason}",
    ),
    "checkpoint_stale": (
        "escalation", "error",
        "Hold point still unreleased after {idle_hours}h: {lot_number}",
        "[{dedup}] Hold point '{item}' on {lot_number} has had no response for {idle_hours} hours.",
    ),
    "checkpoint_released": (
        "checkpoint", "success",
        "Hold point released: {lot_number}",
        "Hold point '{item}' on {lot_number} was released by {released_by} ({method}).",
    ),
    "release_link_issued": (
        "checkpoint", "info",
        "External release link issued: {lot_number}",
        "A release link for hold point '{item}' on {lot_number} was sent to {recipient_name}.",
    ),
    "witness_point_approaching": (
        "inspection", "info",
        "Witness point approaching: {lot_number}",
        "Witness point '{item}' (#{sequence}) on {lot_number} is coming up next.",
    ),
    "issue_raised": (
        "issue", "warning",
        "{issue_number} raised on {lot_number}",
        "{severity} non-conformance {issue_number}: {description}",
    ),
    "issue_revision_requested": (
        "issue", "warning",
        "{issue_number}: response revision requested",
        "QM requested a revision of the response to {issue_number}: {comments}",
    ),
    "issue_accepted": (
        "issue", "info",
        "{issue_number}: response accepted, proceed to rectification",
        "The response to {issue_number} was accepted. {comments}",
    ),
    "issue_escalated": (
        "escalation", "error",
        "ESCALATION: {issue_number}",
        "{issue_number} was escalated: {reason}",
    ),
    "issue_rectification_rejected": (
        "issue", "warning",
        "{issue_number}: rectification rejected",
        "Rectification of {issue_number} was rejected: {feedback}",
    ),
    "issue_overdue": (
        "issue", "warning",
        "{issue_number} is overdue",
        "[{dedup}] {issue_number} was due on {due_date} and is still {status}.",
    ),
    "issue_client_notice": (
        "issue", "warning",
        "Major non-conformance notice: {issue_number}",
        "{issue_number} ({category}) on {lot_numbers}: {description}. {message}",
    ),
}


class _SafeContext(dict):
    def __missing__(self, key):
        return ""


def dedup_key(kind: str, entity_id, day: date | None = None) -> str:
    """Deterministic key for an alert.

    Format: {kind}-{entity_id}[-{date}]
    With *day* the alert repeats at most daily; without it, at most once.
    """
    raw = f"{kind}-{entity_id}"
    if day is not None:
        raw += f"-{day.isoformat()}"
    return hashlib.md5(raw.encode()).hexdigest()[:16]


def already_sent(key: str) -> bool:
    return db.session.execute(
        select(Notification.id).where(Notification.dedup_key == key).limit(1)
    ).first() is not None


def recipients_for_roles(project_id: int, roles) -> list[str]:
    """Addresses of project members holding any of *roles*."""
    members = db.session.execute(
        select(ProjectMember)
        .where(ProjectMember.project_id == project_id, ProjectMember.role.in_(list(roles)))
        .order_by(ProjectMember.id)
    ).scalars()
    return [m.address for m in members]


class NotificationService:
    """Stateless service class for the notification outbox."""

    @staticmethod
    def enqueue(recipients, template, context, *, project_id=None,
                entity_type="", entity_id=None, dedup=None):
        """
        Queue *template* rendered with *context* for each recipient.

        Args:
            recipients: iterable of addresses; blanks and duplicates are skipped.
            dedup: optional dedup key; nothing is queued if it was used before.

        Returns:
            List of created Notification instances (flushed, not committed).
        """
        if template not in NOTIFICATION_TEMPLATES:
            raise KeyError(f"Unknown notification template: {template}")
        if dedup and already_sent(dedup):
            logger.debug("Notification %s suppressed by dedup key", template)
            return []

        category, severity, title_tpl, message_tpl = NOTIFICATION_TEMPLATES[template]
        ctx = _SafeContext(context or {})
        ctx.setdefault("dedup", dedup or "")
        title = title_tpl.format_map(ctx)[:300]
        message = message_tpl.format_map(ctx)

        notifications = []
        seen = set()
        for r in recipients or []:
            if not r or r in seen:
                continue
            seen.add(r)
            notif = Notification(
                project_id=project_id,
                recipient=r,
                template=template,
                title=title,
                message=message,
                category=category,
                severity=severity,
                entity_type=entity_type,
                entity_id=entity_id,
                dedup_key=dedup,
            )
            db.session.add(notif)
            notifications.append(notif)
        db.session.flush()
        if notifications:
            logger.info(
                "Queued %d '%s' notification(s)", len(notifications), template,
                extra={"project_id": project_id, "event_type": f"notification.{template}"},
            )
        return notifications
