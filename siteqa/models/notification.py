"""
Site Quality Workflow Engine
Notification outbox model.

Models:
    - Notification: one queued message per recipient per event. Delivery
      (email/push) is performed outside this service.
"""

from datetime import datetime, timezone

from siteqa.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_CATEGORIES = {"checkpoint", "issue", "inspection", "escalation", "system"}
NOTIFICATION_SEVERITIES = {"info", "warning", "error", "success"}


class Notification(db.Model):
    """
    Outbox entry.

    ``dedup_key`` lets the escalation scan and witness notices suppress
    repeats of the same alert.
    """

    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("idx_notification_dedup", "dedup_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    recipient = db.Column(db.String(255), nullable=False, index=True)
    template = db.Column(db.String(60), nullable=False)
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    category = db.Column(db.String(30), default="system")
    severity = db.Column(db.String(20), default="info")

    # Link to source entity
    entity_type = db.Column(db.String(30), default="", comment="checkpoint/issue/work_unit/...")
    entity_id = db.Column(db.Integer, nullable=True)

    dedup_key = db.Column(db.String(32), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "recipient": self.recipient,
            "template": self.template,
            "title": self.title,
            "message": self.message,
            "category": self.category,
            "severity": self.severity,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.template} → {self.recipient}>"
