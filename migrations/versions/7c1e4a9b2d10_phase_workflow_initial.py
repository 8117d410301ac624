"""phase_workflow_initial

Create tenants, users, projects and the phase workflow tables
(catalog, per-project tracking, client action status, transition history,
owner decisions) plus the activity, notification, email and message logs.

Revision ID: 7c1e4a9b2d10
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "7c1e4a9b2d10"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, nullable=True):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    if "tenants" not in existing_tables:
        op.create_table(
            "tenants",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("slug", sa.String(length=100), nullable=False),
            sa.Column("domain", sa.String(length=200), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            sa.Column("settings", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("slug"),
        )

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("full_name", sa.String(length=200), nullable=True),
            sa.Column("role", sa.String(length=20), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
        )
        op.create_index("ix_users_tenant_id", "users", ["tenant_id"])
        op.create_index("ix_users_email", "users", ["email"])

    if "projects" not in existing_tables:
        op.create_table(
            "projects",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("client_id", sa.Integer(), nullable=False, comment="Owning client user"),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="active"),
            sa.Column("due_date", sa.Date(), nullable=True),
            _ts("completed_at"),
            sa.Column("created_by", sa.Integer(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            _ts("deleted_at"),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["client_id"], ["users.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_projects_tenant_id", "projects", ["tenant_id"])
        op.create_index("ix_projects_client_id", "projects", ["client_id"])
        op.create_index("ix_projects_deleted_at", "projects", ["deleted_at"])
        op.create_index("ix_projects_tenant_client", "projects", ["tenant_id", "client_id"])

    # ── Phase catalog ────────────────────────────────────────────────────
    if "phases" not in existing_tables:
        op.create_table(
            "phases",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("key", sa.String(length=50), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("icon", sa.String(length=10), nullable=True),
            sa.Column("order_index", sa.Integer(), nullable=False),
            sa.Column("requires_client_action", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_system_phase", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("key"),
            sa.UniqueConstraint("order_index"),
        )

    if "phase_actions" not in existing_tables:
        op.create_table(
            "phase_actions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("phase_id", sa.Integer(), nullable=False),
            sa.Column("key", sa.String(length=100), nullable=False),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("order_index", sa.Integer(), nullable=False, server_default="0"),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["phase_id"], ["phases.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("phase_id", "key", name="uq_phase_action_key"),
        )
        op.create_index("ix_phase_actions_phase_id", "phase_actions", ["phase_id"])

    if "phase_automation_rules" not in existing_tables:
        op.create_table(
            "phase_automation_rules",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False, server_default=""),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("from_phase_id", sa.Integer(), nullable=False),
            sa.Column("to_phase_id", sa.Integer(), nullable=True),
            sa.Column("rule_type", sa.String(length=50), nullable=False,
                      server_default="all_actions_complete"),
            sa.Column("rule_config", sa.JSON(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["from_phase_id"], ["phases.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["to_phase_id"], ["phases.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "ix_rule_from_phase_active",
            "phase_automation_rules",
            ["from_phase_id", "rule_type", "is_active"],
        )

    # ── Per-project workflow state ───────────────────────────────────────
    if "project_phase_tracking" not in existing_tables:
        op.create_table(
            "project_phase_tracking",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("current_phase_id", sa.Integer(), nullable=False),
            sa.Column("current_phase_index", sa.Integer(), nullable=False, server_default="0"),
            _ts("phase_started_at", nullable=False),
            sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
            _ts("completed_at"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["current_phase_id"], ["phases.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id"),
        )

    if "phase_completions" not in existing_tables:
        op.create_table(
            "phase_completions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tracking_id", sa.Integer(), nullable=False),
            sa.Column("phase_id", sa.Integer(), nullable=False),
            _ts("completed_at", nullable=False),
            sa.ForeignKeyConstraint(["tracking_id"], ["project_phase_tracking.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["phase_id"], ["phases.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tracking_id", "phase_id", name="uq_phase_completion"),
        )
        op.create_index("ix_phase_completions_tracking_id", "phase_completions", ["tracking_id"])

    if "project_action_status" not in existing_tables:
        op.create_table(
            "project_action_status",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("action_id", sa.Integer(), nullable=False),
            sa.Column("phase_id", sa.Integer(), nullable=False),
            sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
            _ts("completed_at"),
            sa.Column("completed_by", sa.Integer(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["action_id"], ["phase_actions.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["phase_id"], ["phases.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["completed_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "action_id", name="uq_project_action"),
        )
        op.create_index(
            "ix_action_status_project_phase", "project_action_status", ["project_id", "phase_id"],
        )

    if "phase_transitions" not in existing_tables:
        op.create_table(
            "phase_transitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("from_phase_id", sa.Integer(), nullable=True),
            sa.Column("to_phase_id", sa.Integer(), nullable=False),
            sa.Column("transitioned_by", sa.Integer(), nullable=True),
            sa.Column("reason", sa.Text(), nullable=True),
            _ts("created_at", nullable=False),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["from_phase_id"], ["phases.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["to_phase_id"], ["phases.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["transitioned_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "ix_phase_transitions_project_created", "phase_transitions", ["project_id", "created_at"],
        )

    if "phase_decisions" not in existing_tables:
        op.create_table(
            "phase_decisions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("phase_id", sa.Integer(), nullable=False),
            sa.Column("decision", sa.String(length=30), nullable=False,
                      comment="approved | changes_requested"),
            sa.Column("decided_by", sa.Integer(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            _ts("created_at", nullable=False),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["phase_id"], ["phases.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["decided_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_phase_decisions_project", "phase_decisions", ["project_id", "phase_id"])

    # ── Side-effect logs ─────────────────────────────────────────────────
    if "activity_logs" not in existing_tables:
        op.create_table(
            "activity_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=True),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False, server_default="project"),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            _ts("created_at", nullable=False),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_activity_logs_tenant_id", "activity_logs", ["tenant_id"])
        op.create_index("idx_activity_entity", "activity_logs", ["entity_type", "entity_id"])
        op.create_index("idx_activity_project", "activity_logs", ["project_id"])
        op.create_index("idx_activity_ts", "activity_logs", ["created_at"])

    if "notifications" not in existing_tables:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=True),
            sa.Column("recipient_user_id", sa.Integer(), nullable=False),
            sa.Column("type", sa.String(length=40), nullable=False, server_default="system"),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=True),
            sa.Column("link", sa.String(length=500), nullable=True),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("metadata_json", sa.JSON(), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            _ts("read_at"),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["recipient_user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_tenant_id", "notifications", ["tenant_id"])
        op.create_index("ix_notifications_recipient_user_id", "notifications", ["recipient_user_id"])
        op.create_index("ix_notifications_project_id", "notifications", ["project_id"])

    if "email_logs" not in existing_tables:
        op.create_table(
            "email_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient_email", sa.String(length=255), nullable=False),
            sa.Column("recipient_name", sa.String(length=150), nullable=True),
            sa.Column("subject", sa.String(length=500), nullable=False),
            sa.Column("template_name", sa.String(length=100), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("project_id", sa.Integer(), nullable=True),
            _ts("sent_at"),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_email_logs_recipient_email", "email_logs", ["recipient_email"])
        op.create_index("ix_email_logs_project_id", "email_logs", ["project_id"])

    if "messages" not in existing_tables:
        op.create_table(
            "messages",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("sender_id", sa.Integer(), nullable=True),
            sa.Column("content", sa.Text(), nullable=False),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["sender_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_messages_project_created", "messages", ["project_id", "created_at"])


def downgrade():
    for table in (
        "messages",
        "email_logs",
        "notifications",
        "activity_logs",
        "phase_decisions",
        "phase_transitions",
        "project_action_status",
        "phase_completions",
        "project_phase_tracking",
        "phase_automation_rules",
        "phase_actions",
        "phases",
        "projects",
        "users",
        "tenants",
    ):
        op.drop_table(table)
