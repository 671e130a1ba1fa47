"""
Site Quality Workflow Engine
Issue (non-conformance report) domain model.

Models:
    - Issue: one NCR with its review / rectification / closure narrative.
    - IssueWorkUnit: affected work units (the primary unit included).
    - IssueEvidence: evidence references attached during rectification.

Lifecycle (terminal states in brackets):

    open → investigating → rectification → verification → [closed]
                                                       → [closed_concession]
    investigating → investigating   (revision request)
    investigating → [escalated]
    verification → rectification    (rectification rejected)
    closed | closed_concession → rectification   (reopen)
"""

from datetime import datetime, timezone

from siteqa.models import db


# ── Constants ────────────────────────────────────────────────────────────────

ISSUE_SEVERITIES = {"minor", "major"}

ISSUE_CATEGORIES = {
    "workmanship", "materials", "design", "documentation",
    "testing", "safety", "environmental", "other",
}

ISSUE_STATUSES = {
    "open", "investigating", "rectification", "verification",
    "closed", "closed_concession", "escalated",
}

# Issues in these statuses no longer hold their work units
CLOSED_ISSUE_STATUSES = frozenset({"closed", "closed_concession"})

ROOT_CAUSE_CATEGORIES = {
    "workmanship", "materials", "equipment", "design",
    "process", "communication", "other",
}

QM_REVIEW_ACTIONS = {"accept", "request_revision", "escalate"}

EVIDENCE_TYPES = {"photo", "document", "test_result", "drawing", "other"}

ISSUE_TRANSITIONS = {
    "respond": {"from": ["open"], "to": "investigating"},
    "auto_accept": {"from": ["open"], "to": "rectification"},
    "accept": {"from": ["investigating"], "to": "rectification"},
    "request_revision": {"from": ["investigating"], "to": "investigating"},
    "escalate": {"from": ["investigating"], "to": "escalated"},
    "submit_for_verification": {"from": ["rectification"], "to": "verification"},
    "reject_rectification": {"from": ["verification"], "to": "rectification"},
    "close": {"from": ["verification"], "to": "closed"},
    "close_with_concession": {"from": ["verification"], "to": "closed_concession"},
    "reopen": {"from": ["closed", "closed_concession"], "to": "rectification"},
}


class Issue(db.Model):
    """
    Non-conformance report raised against one or more work units.

    ``qm_approval_required`` and ``client_notification_required`` follow
    from severity and are computed, not stored.
    """

    __tablename__ = "issues"
    __table_args__ = (
        db.UniqueConstraint("project_id", "issue_number", name="uq_issue_number"),
        db.Index("idx_issue_status", "project_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    work_unit_id = db.Column(
        db.Integer, db.ForeignKey("work_units.id", ondelete="CASCADE"), nullable=False, index=True,
        comment="Primary work unit; all affected units live in issue_work_units",
    )
    issue_number = db.Column(db.String(20), nullable=False, comment="NCR-0001, per project")

    description = db.Column(db.Text, nullable=False)
    specification_reference = db.Column(db.String(200), nullable=True)
    category = db.Column(db.String(30), nullable=False)
    severity = db.Column(db.String(10), nullable=False, default="minor")
    status = db.Column(db.String(20), nullable=False, default="open")

    raised_by = db.Column(db.String(150), nullable=True)
    responsible_party = db.Column(db.String(255), nullable=True, comment="Address of the responder")
    due_date = db.Column(db.Date, nullable=True)

    # Response
    root_cause_category = db.Column(db.String(30), nullable=True)
    root_cause_description = db.Column(db.Text, nullable=True)
    proposed_corrective_action = db.Column(db.Text, nullable=True)
    responded_by = db.Column(db.String(150), nullable=True)
    response_submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # QM review
    qm_review_comments = db.Column(db.Text, nullable=True)
    qm_reviewed_by = db.Column(db.String(150), nullable=True)
    qm_reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    revision_requested = db.Column(db.Boolean, nullable=False, default=False)
    revision_count = db.Column(db.Integer, nullable=False, default=0)

    # Escalation
    escalated_to = db.Column(db.String(255), nullable=True)
    escalation_reason = db.Column(db.Text, nullable=True)
    escalated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Rectification / verification
    rectification_notes = db.Column(db.Text, nullable=True)
    rectification_submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    verification_feedback = db.Column(db.Text, nullable=True)
    verification_notes = db.Column(db.Text, nullable=True)
    lessons_learned = db.Column(db.Text, nullable=True)

    # Closure
    closed_by = db.Column(db.String(150), nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    concession_justification = db.Column(db.Text, nullable=True)
    concession_risk_assessment = db.Column(db.Text, nullable=True)

    # Major-issue governance
    qm_approved_by = db.Column(db.String(150), nullable=True)
    qm_approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    client_notified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    client_notified_to = db.Column(db.String(255), nullable=True)

    reopened_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reopen_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    work_unit_links = db.relationship("IssueWorkUnit", back_populates="issue",
                                      cascade="all, delete-orphan", lazy="selectin")
    evidence = db.relationship("IssueEvidence", back_populates="issue",
                               cascade="all, delete-orphan", lazy="selectin",
                               order_by="IssueEvidence.id")

    @property
    def work_unit_ids(self) -> list[int]:
        ids = {link.work_unit_id for link in self.work_unit_links}
        ids.add(self.work_unit_id)
        return sorted(ids)

    @property
    def qm_approval_required(self) -> bool:
        return self.severity == "major"

    @property
    def client_notification_required(self) -> bool:
        return self.severity == "major"

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_ISSUE_STATUSES

    def to_dict(self):
        def _ts(value):
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "project_id": self.project_id,
            "work_unit_id": self.work_unit_id,
            "affected_work_unit_ids": self.work_unit_ids,
            "issue_number": self.issue_number,
            "description": self.description,
            "specification_reference": self.specification_reference,
            "category": self.category,
            "severity": self.severity,
            "status": self.status,
            "raised_by": self.raised_by,
            "responsible_party": self.responsible_party,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "root_cause_category": self.root_cause_category,
            "root_cause_description": self.root_cause_description,
            "proposed_corrective_action": self.proposed_corrective_action,
            "responded_by": self.responded_by,
            "response_submitted_at": _ts(self.response_submitted_at),
            "qm_review_comments": self.qm_review_comments,
            "qm_reviewed_by": self.qm_reviewed_by,
            "qm_reviewed_at": _ts(self.qm_reviewed_at),
            "revision_requested": bool(self.revision_requested),
            "revision_count": self.revision_count,
            "escalated_to": self.escalated_to,
            "escalation_reason": self.escalation_reason,
            "escalated_at": _ts(self.escalated_at),
            "rectification_notes": self.rectification_notes,
            "rectification_submitted_at": _ts(self.rectification_submitted_at),
            "verification_feedback": self.verification_feedback,
            "verification_notes": self.verification_notes,
            "lessons_learned": self.lessons_learned,
            "closed_by": self.closed_by,
            "closed_at": _ts(self.closed_at),
            "concession_justification": self.concession_justification,
            "concession_risk_assessment": self.concession_risk_assessment,
            "qm_approval_required": self.qm_approval_required,
            "qm_approved_by": self.qm_approved_by,
            "qm_approved_at": _ts(self.qm_approved_at),
            "client_notification_required": self.client_notification_required,
            "client_notified_at": _ts(self.client_notified_at),
            "reopened_at": _ts(self.reopened_at),
            "reopen_reason": self.reopen_reason,
            "evidence": [e.to_dict() for e in self.evidence],
            "created_at": _ts(self.created_at),
        }

    def __repr__(self):
        return f"<Issue {self.id}: {self.issue_number} [{self.status}]>"


class IssueWorkUnit(db.Model):
    __tablename__ = "issue_work_units"
    __table_args__ = (
        db.UniqueConstraint("issue_id", "work_unit_id", name="uq_issue_work_unit"),
    )

    id = db.Column(db.Integer, primary_key=True)
    issue_id = db.Column(
        db.Integer, db.ForeignKey("issues.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    work_unit_id = db.Column(
        db.Integer, db.ForeignKey("work_units.id", ondelete="CASCADE"), nullable=False, index=True,
    )

    issue = db.relationship("Issue", back_populates="work_unit_links")


class IssueEvidence(db.Model):
    __tablename__ = "issue_evidence"

    id = db.Column(db.Integer, primary_key=True)
    issue_id = db.Column(
        db.Integer, db.ForeignKey("issues.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    document_ref = db.Column(db.String(500), nullable=False, comment="Reference into the evidence store")
    evidence_type = db.Column(db.String(20), nullable=False, default="photo")
    filename = db.Column(db.String(255), nullable=True)
    added_by = db.Column(db.String(150), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    issue = db.relationship("Issue", back_populates="evidence")

    def to_dict(self):
        return {
            "id": self.id,
            "document_ref": self.document_ref,
            "evidence_type": self.evidence_type,
            "filename": self.filename,
            "added_by": self.added_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
