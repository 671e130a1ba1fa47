"""
Site Quality Workflow Engine
Project domain model.

Models:
    - Project: construction project with its working-hours window and
      per-project workflow settings.
    - ProjectMember: a principal's relationship to a project. Consulted by
      the default access checker and used to address notifications by role.
"""

from datetime import datetime, timezone

from siteqa.models import db


# ── Constants ────────────────────────────────────────────────────────────────

MEMBER_ROLES = {
    "admin",
    "project_manager",
    "quality_manager",
    "superintendent",
    "site_engineer",
    "foreman",
    "subcontractor",
    "viewer",
}

# Roles that receive escalations and overdue reminders
MANAGER_ROLES = ("project_manager", "quality_manager", "admin")

# Roles told about an approaching witness point
WITNESS_NOTICE_ROLES = ("project_manager", "superintendent", "admin")


class Project(db.Model):
    """Construction project. Owns work units, templates and members."""

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    code = db.Column(db.String(50), nullable=False, unique=True)

    working_hours_start = db.Column(db.String(5), nullable=True, comment="HH:MM, site local time")
    working_hours_end = db.Column(db.String(5), nullable=True, comment="HH:MM, site local time")
    working_days = db.Column(db.String(20), nullable=True, comment="ISO weekdays, e.g. '1,2,3,4,5'; 0 also reads as Sunday")

    settings = db.Column(
        db.JSON, nullable=True,
        comment="Workflow overrides, e.g. {'witness_notice_items_ahead': 2}",
    )

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    members = db.relationship("ProjectMember", backref="project", lazy="dynamic",
                              cascade="all, delete-orphan")

    def setting(self, key, default=None):
        return (self.settings or {}).get(key, default)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "working_hours_start": self.working_hours_start,
            "working_hours_end": self.working_hours_end,
            "working_days": self.working_days,
        }

    def __repr__(self):
        return f"<Project {self.id}: {self.code}>"


class ProjectMember(db.Model):
    """A principal's membership of a project, with one role."""

    __tablename__ = "project_members"
    __table_args__ = (
        db.UniqueConstraint("project_id", "principal_id", name="uq_project_member"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    principal_id = db.Column(db.String(100), nullable=False, index=True, comment="JWT 'sub' of the member")
    name = db.Column(db.String(150), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    role = db.Column(db.String(30), nullable=False, default="viewer")

    @property
    def address(self) -> str:
        """Notification address: e-mail when known, else the principal id."""
        return self.email or self.principal_id

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "principal_id": self.principal_id,
            "name": self.name,
            "role": self.role,
        }

    def __repr__(self):
        return f"<ProjectMember {self.principal_id}@{self.project_id} ({self.role})>"
