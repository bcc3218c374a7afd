"""Create the PSA schema: org structure, projects and the workflow engine tables."""

from __future__ import annotations

from typing import Sequence

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261018_01"
down_revision: str | Sequence[str] | None = None
branch_labels = None
depends_on = None


def _uuid(name: str, *args, **kwargs) -> sa.Column:
    return sa.Column(name, postgresql.UUID(as_uuid=True), *args, **kwargs)


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=False),
        nullable=False,
        server_default=sa.text("timezone('utc', now())"),
    )


def upgrade() -> None:
    op.create_table(
        "users",
        _uuid("id", primary_key=True),
        sa.Column("email", sa.String(), nullable=False, unique=True),
        sa.Column("hashed_password", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=True),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
    )

    op.create_table(
        "departments",
        _uuid("id", primary_key=True),
        sa.Column("name", sa.String(), nullable=False, unique=True),
        sa.Column("description", sa.String(), nullable=True),
        _created_at(),
    )

    op.create_table(
        "roles",
        _uuid("id", primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        _uuid("department_id", sa.ForeignKey("departments.id", ondelete="SET NULL"), nullable=True),
        sa.Column("permissions", sa.JSON(), nullable=False, server_default=sa.text("'[]'::json")),
        _created_at(),
    )

    op.create_table(
        "user_roles",
        _uuid("user_id", sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        _uuid("role_id", sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
        sa.Column(
            "assigned_at",
            sa.DateTime(timezone=False),
            nullable=True,
            server_default=sa.text("timezone('utc', now())"),
        ),
    )

    op.create_table(
        "projects",
        _uuid("id", primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("account_name", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("start_date", sa.DateTime(), nullable=True),
        sa.Column("end_date", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        _uuid("created_by", sa.ForeignKey("users.id"), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_projects_status", "projects", ["status"])

    op.create_table(
        "project_members",
        _uuid("project_id", sa.ForeignKey("projects.id", ondelete="CASCADE"), primary_key=True),
        _uuid("user_id", sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("role", sa.String(), nullable=False, server_default="member"),
    )

    op.create_table(
        "workflow_templates",
        _uuid("id", primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        _uuid("created_by", sa.ForeignKey("users.id"), nullable=True),
        _created_at(),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=False),
            nullable=False,
            server_default=sa.text("timezone('utc', now())"),
        ),
    )

    op.create_table(
        "workflow_nodes",
        _uuid("id", primary_key=True),
        _uuid("template_id", sa.ForeignKey("workflow_templates.id", ondelete="CASCADE"), nullable=False),
        sa.Column("node_key", sa.String(), nullable=False),
        sa.Column("node_type", sa.String(), nullable=False),
        sa.Column("label", sa.String(), nullable=False, server_default=""),
        _uuid("required_entity_id", nullable=True),
        sa.Column("settings", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column("position_x", sa.Float(), nullable=True),
        sa.Column("position_y", sa.Float(), nullable=True),
        _created_at(),
        sa.UniqueConstraint("template_id", "node_key", name="uq_workflow_node_key"),
    )
    op.create_index("ix_workflow_nodes_template_id", "workflow_nodes", ["template_id"])

    op.create_table(
        "workflow_connections",
        _uuid("id", primary_key=True),
        _uuid("template_id", sa.ForeignKey("workflow_templates.id", ondelete="CASCADE"), nullable=False),
        _uuid("from_node_id", sa.ForeignKey("workflow_nodes.id", ondelete="CASCADE"), nullable=False),
        _uuid("to_node_id", sa.ForeignKey("workflow_nodes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("condition", sa.JSON(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_workflow_connections_template_id", "workflow_connections", ["template_id"])

    op.create_table(
        "workflow_instances",
        _uuid("id", primary_key=True),
        _uuid("template_id", sa.ForeignKey("workflow_templates.id"), nullable=False),
        _uuid("project_id", sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        _uuid("current_node_id", sa.ForeignKey("workflow_nodes.id", ondelete="SET NULL"), nullable=True),
        sa.Column("has_parallel_paths", sa.Boolean(), nullable=False, server_default=sa.false()),
        _uuid("started_by", sa.ForeignKey("users.id"), nullable=True),
        sa.Column(
            "started_at",
            sa.DateTime(timezone=False),
            nullable=False,
            server_default=sa.text("timezone('utc', now())"),
        ),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint(
            "status IN ('active', 'completed', 'cancelled')",
            name="ck_workflow_instance_status",
        ),
    )
    op.create_index("ix_workflow_instances_template_id", "workflow_instances", ["template_id"])
    op.create_index("ix_workflow_instances_project_id", "workflow_instances", ["project_id"])
    # at most one running instance per project
    op.create_index(
        "uq_workflow_instances_active_project",
        "workflow_instances",
        ["project_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "workflow_active_steps",
        _uuid("id", primary_key=True),
        _uuid("instance_id", sa.ForeignKey("workflow_instances.id", ondelete="CASCADE"), nullable=False),
        _uuid("node_id", sa.ForeignKey("workflow_nodes.id", ondelete="SET NULL"), nullable=True),
        sa.Column("branch_id", sa.String(), nullable=False, server_default="main"),
        sa.Column("parent_branch_id", sa.String(), nullable=True),
        sa.Column("fork_group_id", sa.String(), nullable=True),
        _uuid("fork_node_id", nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        _uuid("assigned_user_id", sa.ForeignKey("users.id"), nullable=True),
        sa.Column("approvals", sa.JSON(), nullable=False, server_default=sa.text("'[]'::json")),
        sa.Column("decision", sa.String(), nullable=True),
        sa.Column(
            "activated_at",
            sa.DateTime(timezone=False),
            nullable=False,
            server_default=sa.text("timezone('utc', now())"),
        ),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint(
            "status IN ('active', 'waiting', 'completed')",
            name="ck_workflow_active_step_status",
        ),
    )
    op.create_index("ix_workflow_active_steps_instance_id", "workflow_active_steps", ["instance_id"])
    op.create_index("ix_workflow_active_steps_fork_group_id", "workflow_active_steps", ["fork_group_id"])
    op.create_index(
        "ix_workflow_active_steps_assignee_status",
        "workflow_active_steps",
        ["assigned_user_id", "status"],
    )

    op.create_table(
        "workflow_history",
        _uuid("id", primary_key=True),
        _uuid("instance_id", sa.ForeignKey("workflow_instances.id", ondelete="CASCADE"), nullable=False),
        _uuid("from_node_id", nullable=True),
        _uuid("to_node_id", nullable=True),
        _uuid("handed_off_by", sa.ForeignKey("users.id"), nullable=True),
        _uuid("handed_off_to", sa.ForeignKey("users.id"), nullable=True),
        sa.Column("decision", sa.String(), nullable=True),
        sa.Column("feedback", sa.Text(), nullable=True),
        _uuid("form_response_id", nullable=True),
        sa.Column("form_data", sa.JSON(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("out_of_order", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "handed_off_at",
            sa.DateTime(timezone=False),
            nullable=False,
            server_default=sa.text("timezone('utc', now())"),
        ),
    )
    op.create_index("ix_workflow_history_instance_id", "workflow_history", ["instance_id"])

    op.create_table(
        "workflow_node_assignments",
        _uuid("id", primary_key=True),
        _uuid("instance_id", sa.ForeignKey("workflow_instances.id", ondelete="CASCADE"), nullable=False),
        _uuid("node_id", sa.ForeignKey("workflow_nodes.id", ondelete="CASCADE"), nullable=False),
        _uuid("user_id", sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        _uuid("assigned_by", sa.ForeignKey("users.id"), nullable=True),
        sa.Column(
            "assigned_at",
            sa.DateTime(timezone=False),
            nullable=False,
            server_default=sa.text("timezone('utc', now())"),
        ),
        sa.UniqueConstraint("instance_id", "node_id", "user_id", name="uq_workflow_node_assignment"),
    )
    op.create_index("ix_workflow_node_assignments_instance_id", "workflow_node_assignments", ["instance_id"])

    op.create_table(
        "notifications",
        _uuid("id", primary_key=True),
        _uuid("user_id", sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("message", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=True, server_default="workflow"),
        sa.Column("is_read", sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column("metadata", sa.JSON(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])

    op.create_table(
        "audit_logs",
        _uuid("id", primary_key=True),
        _uuid("user_id", sa.ForeignKey("users.id"), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("target_type", sa.String(), nullable=True),
        _uuid("target_id", nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        _created_at(),
    )


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_index("ix_notifications_user_id", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_workflow_node_assignments_instance_id", table_name="workflow_node_assignments")
    op.drop_table("workflow_node_assignments")
    op.drop_index("ix_workflow_history_instance_id", table_name="workflow_history")
    op.drop_table("workflow_history")
    op.drop_index("ix_workflow_active_steps_assignee_status", table_name="workflow_active_steps")
    op.drop_index("ix_workflow_active_steps_fork_group_id", table_name="workflow_active_steps")
    op.drop_index("ix_workflow_active_steps_instance_id", table_name="workflow_active_steps")
    op.drop_table("workflow_active_steps")
    op.drop_index("uq_workflow_instances_active_project", table_name="workflow_instances")
    op.drop_index("ix_workflow_instances_project_id", table_name="workflow_instances")
    op.drop_index("ix_workflow_instances_template_id", table_name="workflow_instances")
    op.drop_table("workflow_instances")
    op.drop_index("ix_workflow_connections_template_id", table_name="workflow_connections")
    op.drop_table("workflow_connections")
    op.drop_index("ix_workflow_nodes_template_id", table_name="workflow_nodes")
    op.drop_table("workflow_nodes")
    op.drop_table("workflow_templates")
    op.drop_table("project_members")
    op.drop_index("ix_projects_status", table_name="projects")
    op.drop_table("projects")
    op.drop_table("user_roles")
    op.drop_table("roles")
    op.drop_table("departments")
    op.drop_table("users")
