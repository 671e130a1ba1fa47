"""
Site Quality Workflow Engine
Inspection domain model.

Models:
    - InspectionTemplate: mutable, project-owned checklist template.
    - ChecklistItem: one inspectable requirement of a template.
    - InspectionInstance: a template frozen onto one work unit. The
      ``snapshot`` blob is write-once.
    - CompletionRecord: per (instance, checklist item) completion state.
"""

from datetime import datetime, timezone

from sqlalchemy.orm import validates

from siteqa.core.exceptions import ConflictError
from siteqa.models import db


# ── Constants ────────────────────────────────────────────────────────────────

POINT_TYPES = {"standard", "witness", "hold"}

COMPLETION_STATUSES = {"pending", "completed", "failed", "not_applicable"}

# Statuses that count as "done" for progression and prerequisite checks
FINISHED_COMPLETION_STATUSES = frozenset({"completed", "not_applicable"})

VERIFICATION_STATUSES = {"none", "pending_verification", "verified"}


class InspectionTemplate(db.Model):
    """Inspection & test plan template. Edited by project staff."""

    __tablename__ = "inspection_templates"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=True, index=True,
        comment="NULL for global library templates",
    )
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    activity_type = db.Column(db.String(100), nullable=True)
    is_active = db.Column(db.Boolean, default=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    items = db.relationship(
        "ChecklistItem", back_populates="template",
        order_by="ChecklistItem.sequence_number",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<InspectionTemplate {self.id}: {self.name}>"


class ChecklistItem(db.Model):
    __tablename__ = "checklist_items"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("inspection_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    sequence_number = db.Column(db.Integer, nullable=False)
    description = db.Column(db.Text, nullable=False)
    point_type = db.Column(db.String(20), nullable=False, default="standard",
                           comment="standard | witness | hold")
    responsible_party = db.Column(db.String(50), nullable=True,
                                  comment="contractor | subcontractor | superintendent | ...")
    evidence_required = db.Column(db.String(50), nullable=True,
                                  comment="none | photo | test | document")
    acceptance_criteria = db.Column(db.Text, nullable=True)
    test_type = db.Column(db.String(100), nullable=True)

    template = db.relationship("InspectionTemplate", back_populates="items")

    def __repr__(self):
        return f"<ChecklistItem {self.id}: #{self.sequence_number} {self.point_type}>"


class InspectionInstance(db.Model):
    """
    A template frozen onto a work unit.

    ``snapshot`` holds the versioned copy of the template and its items as
    captured at assignment time. It is NULL only for instances created
    before snapshotting existed; see ``siteqa.services.snapshot_service``.
    """

    __tablename__ = "inspection_instances"

    id = db.Column(db.Integer, primary_key=True)
    work_unit_id = db.Column(
        db.Integer, db.ForeignKey("work_units.id", ondelete="CASCADE"),
        nullable=False, unique=True,
        comment="A work unit has at most one inspection instance",
    )
    template_id = db.Column(
        db.Integer, db.ForeignKey("inspection_templates.id", ondelete="SET NULL"), nullable=True,
    )
    snapshot = db.Column(db.JSON, nullable=True, comment="Write-once versioned template snapshot")
    assigned_by = db.Column(db.String(150), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    work_unit = db.relationship("WorkUnit", back_populates="inspection")
    template = db.relationship("InspectionTemplate")
    completions = db.relationship(
        "CompletionRecord", back_populates="instance",
        cascade="all, delete-orphan", lazy="selectin",
    )

    @validates("snapshot")
    def _snapshot_is_write_once(self, key, value):
        if self.snapshot is not None:
            raise ConflictError("InspectionInstance", "Inspection snapshot is immutable once captured")
        return value

    def __repr__(self):
        return f"<InspectionInstance {self.id}: unit={self.work_unit_id}>"


class CompletionRecord(db.Model):
    """
    Completion state of one checklist item within one instance.

    The ``is_*`` flags are computed from ``status`` and
    ``verification_status``; they are never stored.
    """

    __tablename__ = "completion_records"
    __table_args__ = (
        db.UniqueConstraint("instance_id", "checklist_item_id", name="uq_completion_item"),
    )

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer, db.ForeignKey("inspection_instances.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    checklist_item_id = db.Column(
        db.Integer, nullable=False,
        comment="Item id as recorded in the instance snapshot (not a live FK)",
    )
    status = db.Column(db.String(20), nullable=False, default="pending")
    verification_status = db.Column(db.String(30), nullable=False, default="none")
    notes = db.Column(db.Text, nullable=True)
    attachments = db.Column(db.JSON, nullable=True, comment="List of evidence references")

    completed_by = db.Column(db.String(150), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    verified_by = db.Column(db.String(150), nullable=True)
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    instance = db.relationship("InspectionInstance", back_populates="completions")

    # ── Derived flags ────────────────────────────────────────────────────

    @property
    def is_completed(self) -> bool:
        return self.status in FINISHED_COMPLETION_STATUSES

    @property
    def is_not_applicable(self) -> bool:
        return self.status == "not_applicable"

    @property
    def is_failed(self) -> bool:
        return self.status == "failed"

    @property
    def is_verified(self) -> bool:
        return self.verification_status == "verified"

    @property
    def is_pending_verification(self) -> bool:
        return self.verification_status == "pending_verification"

    def to_dict(self):
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "checklist_item_id": self.checklist_item_id,
            "status": self.status,
            "verification_status": self.verification_status,
            "notes": self.notes,
            "attachments": list(self.attachments or []),
            "completed_by": self.completed_by,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "verified_by": self.verified_by,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
            "is_completed": self.is_completed,
            "is_not_applicable": self.is_not_applicable,
            "is_failed": self.is_failed,
            "is_verified": self.is_verified,
            "is_pending_verification": self.is_pending_verification,
        }

    def __repr__(self):
        return f"<CompletionRecord {self.id}: item={self.checklist_item_id} [{self.status}]>"
