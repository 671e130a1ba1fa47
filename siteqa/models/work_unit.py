"""
Site Quality Workflow Engine
Work unit ("lot") domain model.

A work unit carries two status columns:

    progress_status  normal progress, moved only by explicit triggers
                     (first checklist completion, AdvanceProgress)
    status           externally visible status, always derived by
                     ``siteqa.services.status_sync`` from progress_status
                     and the open issues / blocking checkpoints

Callers never write ``status`` directly.
"""

from datetime import datetime, timezone

from siteqa.models import db


# ── Constants ────────────────────────────────────────────────────────────────

PROGRESS_STATUSES = {
    "not_started", "in_progress", "awaiting_test",
    "completed", "conformed", "claimed",
}

# Normal-progress state machine: current → allowed next states
PROGRESS_TRANSITIONS = {
    "not_started": ["in_progress"],
    "in_progress": ["awaiting_test", "completed"],
    "awaiting_test": ["in_progress", "completed"],
    "completed": ["in_progress", "conformed"],
    "conformed": ["claimed"],
    "claimed": [],
}

# Progress states that may only be entered while nothing blocks the unit
SIGN_OFF_STATUSES = frozenset({"completed", "conformed", "claimed"})

STATUS_ISSUE_RAISED = "issue_raised"
STATUS_ON_HOLD = "on_hold"

WORK_UNIT_STATUSES = PROGRESS_STATUSES | {STATUS_ISSUE_RAISED, STATUS_ON_HOLD}


class WorkUnit(db.Model):
    """Discrete, trackable portion of physical work (a lot)."""

    __tablename__ = "work_units"
    __table_args__ = (
        db.UniqueConstraint("project_id", "lot_number", name="uq_work_unit_lot_number"),
        db.Index("idx_work_unit_status", "project_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    lot_number = db.Column(db.String(50), nullable=False)
    description = db.Column(db.Text, default="")
    activity_type = db.Column(db.String(100), nullable=True)
    chainage_start = db.Column(db.Float, nullable=True)
    chainage_end = db.Column(db.Float, nullable=True)

    status = db.Column(
        db.String(30), nullable=False, default="not_started",
        comment="Derived: issue_raised | on_hold | <progress_status>",
    )
    progress_status = db.Column(
        db.String(30), nullable=False, default="not_started",
        comment="not_started | in_progress | awaiting_test | completed | conformed | claimed",
    )
    status_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    project = db.relationship("Project")
    inspection = db.relationship("InspectionInstance", back_populates="work_unit", uselist=False)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "lot_number": self.lot_number,
            "description": self.description,
            "activity_type": self.activity_type,
            "chainage_start": self.chainage_start,
            "chainage_end": self.chainage_end,
            "status": self.status,
            "progress_status": self.progress_status,
            "status_updated_at": self.status_updated_at.isoformat() if self.status_updated_at else None,
        }

    def __repr__(self):
        return f"<WorkUnit {self.id}: {self.lot_number} [{self.status}]>"
