"""
Site Quality Workflow Engine
Checkpoint (hold point) domain model.

Models:
    - Checkpoint: mandatory approval gate spawned from a hold-type
      checklist item. Primary lifecycle ``pending → notified →
      released | rejected``; escalation is an orthogonal record exposed
      through ``Checkpoint.escalation``.
    - ReleaseToken: single-use, time-bounded capability that lets an
      unauthenticated party release one checkpoint. Only the SHA-256
      hash of the secret is stored.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import text

from siteqa.models import db


# ── Constants ────────────────────────────────────────────────────────────────

CHECKPOINT_STATUSES = {"pending", "notified", "released", "rejected"}

TERMINAL_CHECKPOINT_STATUSES = frozenset({"released", "rejected"})

# Live checkpoints in these statuses keep their work unit on hold.
# A rejected checkpoint is terminal but has not been released.
BLOCKING_CHECKPOINT_STATUSES = frozenset({"pending", "notified", "rejected"})

CHECKPOINT_TRANSITIONS = {
    "notify": {"from": ["pending"], "to": "notified"},
    "release": {"from": ["notified"], "to": "released"},
    "reject": {"from": ["notified"], "to": "rejected"},
}

RELEASE_METHODS = {"digital", "email", "paper", "secure_link"}


@dataclass(frozen=True)
class EscalationRecord:
    """Escalation state layered on a checkpoint's primary status."""

    escalated_at: datetime | None
    escalated_by: str | None
    escalated_to: list
    reason: str | None
    resolved: bool
    resolved_at: datetime | None
    resolved_by: str | None

    def to_dict(self):
        return {
            "escalated_at": self.escalated_at.isoformat() if self.escalated_at else None,
            "escalated_by": self.escalated_by,
            "escalated_to": list(self.escalated_to),
            "reason": self.reason,
            "resolved": self.resolved,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": self.resolved_by,
        }


class Checkpoint(db.Model):
    """
    Mandatory inspection checkpoint for one (work unit, checklist item).

    At most one *live* row (``superseded_at IS NULL``) exists per pair;
    the partial unique index enforces it at the database level.
    """

    __tablename__ = "checkpoints"
    __table_args__ = (
        db.Index(
            "uq_checkpoint_live_item", "work_unit_id", "checklist_item_id",
            unique=True,
            sqlite_where=text("superseded_at IS NULL"),
            postgresql_where=text("superseded_at IS NULL"),
        ),
        db.Index("idx_checkpoint_status", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    work_unit_id = db.Column(
        db.Integer, db.ForeignKey("work_units.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    instance_id = db.Column(
        db.Integer, db.ForeignKey("inspection_instances.id", ondelete="CASCADE"), nullable=False,
    )
    checklist_item_id = db.Column(db.Integer, nullable=False, comment="Snapshot item id")
    sequence_number = db.Column(db.Integer, nullable=True)
    description = db.Column(db.Text, default="", comment="Copied from the snapshot item")

    status = db.Column(db.String(20), nullable=False, default="pending",
                       comment="pending | notified | released | rejected")

    # Notification / chase
    scheduled_date = db.Column(db.DateTime(timezone=True), nullable=True)
    notified_to = db.Column(db.String(255), nullable=True)
    notification_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    chase_count = db.Column(db.Integer, nullable=False, default=0)
    last_chased_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Escalation (orthogonal to status)
    is_escalated = db.Column(db.Boolean, nullable=False, default=False)
    escalated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    escalated_by = db.Column(db.String(150), nullable=True)
    escalated_to = db.Column(db.JSON, nullable=True, comment="List of recipient addresses")
    escalation_reason = db.Column(db.Text, nullable=True)
    escalation_resolved = db.Column(db.Boolean, nullable=False, default=False)
    escalation_resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    escalation_resolved_by = db.Column(db.String(150), nullable=True)

    # Release / rejection
    released_at = db.Column(db.DateTime(timezone=True), nullable=True)
    released_by_name = db.Column(db.String(150), nullable=True)
    released_by_org = db.Column(db.String(150), nullable=True)
    release_method = db.Column(db.String(20), nullable=True)
    release_notes = db.Column(db.Text, nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_by = db.Column(db.String(150), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    superseded_at = db.Column(db.DateTime(timezone=True), nullable=True,
                              comment="Set when a re-inspection opens a fresh checkpoint")

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    work_unit = db.relationship("WorkUnit")
    instance = db.relationship("InspectionInstance")

    @property
    def escalation(self) -> EscalationRecord | None:
        if not self.is_escalated:
            return None
        return EscalationRecord(
            escalated_at=self.escalated_at,
            escalated_by=self.escalated_by,
            escalated_to=self.escalated_to or [],
            reason=self.escalation_reason,
            resolved=bool(self.escalation_resolved),
            resolved_at=self.escalation_resolved_at,
            resolved_by=self.escalation_resolved_by,
        )

    @property
    def has_open_escalation(self) -> bool:
        return bool(self.is_escalated) and not self.escalation_resolved

    def to_dict(self, include_internal: bool = True):
        """Serialise. ``include_internal=False`` strips addresses and escalation detail."""
        d = {
            "id": self.id,
            "work_unit_id": self.work_unit_id,
            "checklist_item_id": self.checklist_item_id,
            "sequence_number": self.sequence_number,
            "description": self.description,
            "status": self.status,
            "scheduled_date": self.scheduled_date.isoformat() if self.scheduled_date else None,
            "notification_sent_at": self.notification_sent_at.isoformat() if self.notification_sent_at else None,
            "released_at": self.released_at.isoformat() if self.released_at else None,
            "released_by_name": self.released_by_name,
            "released_by_org": self.released_by_org,
            "release_method": self.release_method,
            "release_notes": self.release_notes,
        }
        if not include_internal:
            return d
        escalation = self.escalation
        d.update({
            "notified_to": self.notified_to,
            "chase_count": self.chase_count,
            "last_chased_at": self.last_chased_at.isoformat() if self.last_chased_at else None,
            "is_escalated": bool(self.is_escalated),
            "escalation": escalation.to_dict() if escalation else None,
            "rejected_at": self.rejected_at.isoformat() if self.rejected_at else None,
            "rejected_by": self.rejected_by,
            "rejection_reason": self.rejection_reason,
            "superseded_at": self.superseded_at.isoformat() if self.superseded_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        })
        return d

    def __repr__(self):
        return f"<Checkpoint {self.id}: unit={self.work_unit_id} item={self.checklist_item_id} [{self.status}]>"


class ReleaseToken(db.Model):
    """
    Capability to release one checkpoint without an account.

    The raw secret is handed out once at issuance and never stored.
    ``used_at`` moves from NULL to a timestamp exactly once, and only
    while ``expires_at`` lies in the future.
    """

    __tablename__ = "release_tokens"

    id = db.Column(db.Integer, primary_key=True)
    checkpoint_id = db.Column(
        db.Integer, db.ForeignKey("checkpoints.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    token_hash = db.Column(db.String(64), nullable=False, unique=True, comment="SHA-256 hex of the secret")
    recipient_email = db.Column(db.String(255), nullable=False)
    recipient_name = db.Column(db.String(150), nullable=True)
    issued_by = db.Column(db.String(150), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    used_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    checkpoint = db.relationship("Checkpoint")

    def to_dict(self):
        return {
            "id": self.id,
            "checkpoint_id": self.checkpoint_id,
            "recipient_email": self.recipient_email,
            "recipient_name": self.recipient_name,
            "issued_by": self.issued_by,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "used_at": self.used_at.isoformat() if self.used_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ReleaseToken {self.id}: checkpoint={self.checkpoint_id}>"
