"""quality_workflow_schema

Create the quality workflow tables: projects and members, work units,
inspection templates and instances, checkpoints and release tokens,
issues, audit log and the notification outbox.

Revision ID: 5f1c2a9d0e11
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "5f1c2a9d0e11"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, nullable=True):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    if "projects" not in existing_tables:
        op.create_table(
            "projects",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("code", sa.String(length=50), nullable=False),
            sa.Column("working_hours_start", sa.String(length=5), nullable=True),
            sa.Column("working_hours_end", sa.String(length=5), nullable=True),
            sa.Column("working_days", sa.String(length=20), nullable=True),
            sa.Column("settings", sa.JSON(), nullable=True),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
        )

    if "project_members" not in existing_tables:
        op.create_table(
            "project_members",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("principal_id", sa.String(length=100), nullable=False),
            sa.Column("name", sa.String(length=150), nullable=True),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("role", sa.String(length=30), nullable=False),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "principal_id", name="uq_project_member"),
        )
        op.create_index("ix_project_members_project_id", "project_members", ["project_id"])
        op.create_index("ix_project_members_principal_id", "project_members", ["principal_id"])

    if "work_units" not in existing_tables:
        op.create_table(
            "work_units",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("lot_number", sa.String(length=50), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("activity_type", sa.String(length=100), nullable=True),
            sa.Column("chainage_start", sa.Float(), nullable=True),
            sa.Column("chainage_end", sa.Float(), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="not_started"),
            sa.Column("progress_status", sa.String(length=30), nullable=False, server_default="not_started"),
            _ts("status_updated_at"),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "lot_number", name="uq_work_unit_lot_number"),
        )
        op.create_index("ix_work_units_project_id", "work_units", ["project_id"])
        op.create_index("idx_work_unit_status", "work_units", ["project_id", "status"])

    if "inspection_templates" not in existing_tables:
        op.create_table(
            "inspection_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("activity_type", sa.String(length=100), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_inspection_templates_project_id", "inspection_templates", ["project_id"])

    if "checklist_items" not in existing_tables:
        op.create_table(
            "checklist_items",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column("sequence_number", sa.Integer(), nullable=False),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("point_type", sa.String(length=20), nullable=False, server_default="standard"),
            sa.Column("responsible_party", sa.String(length=50), nullable=True),
            sa.Column("evidence_required", sa.String(length=50), nullable=True),
            sa.Column("acceptance_criteria", sa.Text(), nullable=True),
            sa.Column("test_type", sa.String(length=100), nullable=True),
            sa.ForeignKeyConstraint(["template_id"], ["inspection_templates.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_checklist_items_template_id", "checklist_items", ["template_id"])

    if "inspection_instances" not in existing_tables:
        op.create_table(
            "inspection_instances",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("work_unit_id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=True),
            sa.Column("snapshot", sa.JSON(), nullable=True),
            sa.Column("assigned_by", sa.String(length=150), nullable=True),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["work_unit_id"], ["work_units.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["template_id"], ["inspection_templates.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("work_unit_id"),
        )

    if "completion_records" not in existing_tables:
        op.create_table(
            "completion_records",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.Integer(), nullable=False),
            sa.Column("checklist_item_id", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("verification_status", sa.String(length=30), nullable=False, server_default="none"),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("attachments", sa.JSON(), nullable=True),
            sa.Column("completed_by", sa.String(length=150), nullable=True),
            _ts("completed_at"),
            sa.Column("verified_by", sa.String(length=150), nullable=True),
            _ts("verified_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["instance_id"], ["inspection_instances.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("instance_id", "checklist_item_id", name="uq_completion_item"),
        )
        op.create_index("ix_completion_records_instance_id", "completion_records", ["instance_id"])

    if "checkpoints" not in existing_tables:
        op.create_table(
            "checkpoints",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("work_unit_id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.Integer(), nullable=False),
            sa.Column("checklist_item_id", sa.Integer(), nullable=False),
            sa.Column("sequence_number", sa.Integer(), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            _ts("scheduled_date"),
            sa.Column("notified_to", sa.String(length=255), nullable=True),
            _ts("notification_sent_at"),
            sa.Column("chase_count", sa.Integer(), nullable=False, server_default="0"),
            _ts("last_chased_at"),
            sa.Column("is_escalated", sa.Boolean(), nullable=False, server_default=sa.false()),
            _ts("escalated_at"),
            sa.Column("escalated_by", sa.String(length=150), nullable=True),
            sa.Column("escalated_to", sa.JSON(), nullable=True),
            sa.Column("escalation_reason", sa.Text(), nullable=True),
            sa.Column("escalation_resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
            _ts("escalation_resolved_at"),
            sa.Column("escalation_resolved_by", sa.String(length=150), nullable=True),
            _ts("released_at"),
            sa.Column("released_by_name", sa.String(length=150), nullable=True),
            sa.Column("released_by_org", sa.String(length=150), nullable=True),
            sa.Column("release_method", sa.String(length=20), nullable=True),
            sa.Column("release_notes", sa.Text(), nullable=True),
            _ts("rejected_at"),
            sa.Column("rejected_by", sa.String(length=150), nullable=True),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            _ts("superseded_at"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["work_unit_id"], ["work_units.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["instance_id"], ["inspection_instances.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_checkpoints_work_unit_id", "checkpoints", ["work_unit_id"])
        op.create_index("idx_checkpoint_status", "checkpoints", ["status"])
        op.create_index(
            "uq_checkpoint_live_item",
            "checkpoints",
            ["work_unit_id", "checklist_item_id"],
            unique=True,
            postgresql_where=sa.text("superseded_at IS NULL"),
            sqlite_where=sa.text("superseded_at IS NULL"),
        )

    if "release_tokens" not in existing_tables:
        op.create_table(
            "release_tokens",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("checkpoint_id", sa.Integer(), nullable=False),
            sa.Column("token_hash", sa.String(length=64), nullable=False),
            sa.Column("recipient_email", sa.String(length=255), nullable=False),
            sa.Column("recipient_name", sa.String(length=150), nullable=True),
            sa.Column("issued_by", sa.String(length=150), nullable=True),
            _ts("expires_at", nullable=False),
            _ts("used_at"),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["checkpoint_id"], ["checkpoints.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("token_hash"),
        )
        op.create_index("ix_release_tokens_checkpoint_id", "release_tokens", ["checkpoint_id"])

    if "issues" not in existing_tables:
        op.create_table(
            "issues",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("work_unit_id", sa.Integer(), nullable=False),
            sa.Column("issue_number", sa.String(length=20), nullable=False),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("specification_reference", sa.String(length=200), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=False),
            sa.Column("severity", sa.String(length=10), nullable=False, server_default="minor"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="open"),
            sa.Column("raised_by", sa.String(length=150), nullable=True),
            sa.Column("responsible_party", sa.String(length=255), nullable=True),
            sa.Column("due_date", sa.Date(), nullable=True),
            sa.Column("root_cause_category", sa.String(length=30), nullable=True),
            sa.Column("root_cause_description", sa.Text(), nullable=True),
            sa.Column("proposed_corrective_action", sa.Text(), nullable=True),
            sa.Column("responded_by", sa.String(length=150), nullable=True),
            _ts("response_submitted_at"),
            sa.Column("qm_review_comments", sa.Text(), nullable=True),
            sa.Column("qm_reviewed_by", sa.String(length=150), nullable=True),
            _ts("qm_reviewed_at"),
            sa.Column("revision_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("revision_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("escalated_to", sa.String(length=255), nullable=True),
            sa.Column("escalation_reason", sa.Text(), nullable=True),
            _ts("escalated_at"),
            sa.Column("rectification_notes", sa.Text(), nullable=True),
            _ts("rectification_submitted_at"),
            sa.Column("verification_feedback", sa.Text(), nullable=True),
            sa.Column("verification_notes", sa.Text(), nullable=True),
            sa.Column("lessons_learned", sa.Text(), nullable=True),
            sa.Column("closed_by", sa.String(length=150), nullable=True),
            _ts("closed_at"),
            sa.Column("concession_justification", sa.Text(), nullable=True),
            sa.Column("concession_risk_assessment", sa.Text(), nullable=True),
            sa.Column("qm_approved_by", sa.String(length=150), nullable=True),
            _ts("qm_approved_at"),
            _ts("client_notified_at"),
            sa.Column("client_notified_to", sa.String(length=255), nullable=True),
            _ts("reopened_at"),
            sa.Column("reopen_reason", sa.Text(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["work_unit_id"], ["work_units.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "issue_number", name="uq_issue_number"),
        )
        op.create_index("ix_issues_project_id", "issues", ["project_id"])
        op.create_index("ix_issues_work_unit_id", "issues", ["work_unit_id"])
        op.create_index("idx_issue_status", "issues", ["project_id", "status"])

    if "issue_work_units" not in existing_tables:
        op.create_table(
            "issue_work_units",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("issue_id", sa.Integer(), nullable=False),
            sa.Column("work_unit_id", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["issue_id"], ["issues.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["work_unit_id"], ["work_units.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("issue_id", "work_unit_id", name="uq_issue_work_unit"),
        )
        op.create_index("ix_issue_work_units_issue_id", "issue_work_units", ["issue_id"])
        op.create_index("ix_issue_work_units_work_unit_id", "issue_work_units", ["work_unit_id"])

    if "issue_evidence" not in existing_tables:
        op.create_table(
            "issue_evidence",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("issue_id", sa.Integer(), nullable=False),
            sa.Column("document_ref", sa.String(length=500), nullable=False),
            sa.Column("evidence_type", sa.String(length=20), nullable=False, server_default="photo"),
            sa.Column("filename", sa.String(length=255), nullable=True),
            sa.Column("added_by", sa.String(length=150), nullable=True),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["issue_id"], ["issues.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_issue_evidence_issue_id", "issue_evidence", ["issue_id"])

    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("diff_json", sa.Text(), nullable=True),
            _ts("timestamp", nullable=False),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_project", "audit_logs", ["project_id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])

    if "notifications" not in existing_tables:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("recipient", sa.String(length=255), nullable=False),
            sa.Column("template", sa.String(length=60), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=True),
            sa.Column("entity_id", sa.Integer(), nullable=True),
            sa.Column("dedup_key", sa.String(length=32), nullable=True),
            _ts("delivered_at"),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_project_id", "notifications", ["project_id"])
        op.create_index("ix_notifications_recipient", "notifications", ["recipient"])
        op.create_index("idx_notification_dedup", "notifications", ["dedup_key"])


def downgrade():
    for table in (
        "notifications",
        "audit_logs",
        "issue_evidence",
        "issue_work_units",
        "issues",
        "release_tokens",
        "checkpoints",
        "completion_records",
        "inspection_instances",
        "checklist_items",
        "inspection_templates",
        "work_units",
        "project_members",
        "projects",
    ):
        op.drop_table(table)
