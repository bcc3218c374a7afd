import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    JSON,
    Float,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    full_name = Column(String)
    # superadmins bypass capability and eligibility checks
    is_admin = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=_utcnow)

    roles = relationship("UserRole", back_populates="user", cascade="all, delete-orphan")
    notifications = relationship(
        "Notification", back_populates="user", cascade="all, delete-orphan"
    )


class Department(Base):
    __tablename__ = "departments"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False, unique=True)
    description = Column(String)
    created_at = Column(DateTime, default=_utcnow)

    roles = relationship("Role", back_populates="department")


class Role(Base):
    __tablename__ = "roles"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    department_id = Column(
        UUID(as_uuid=True), ForeignKey("departments.id", ondelete="SET NULL"), nullable=True
    )
    # capability names granted to holders, optionally "<scope>:<capability>"
    permissions = Column(JSON, default=list, nullable=False)
    created_at = Column(DateTime, default=_utcnow)

    department = relationship("Department", back_populates="roles")
    members = relationship("UserRole", back_populates="role", cascade="all, delete-orphan")


class UserRole(Base):
    __tablename__ = "user_roles"
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    role_id = Column(UUID(as_uuid=True), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)
    assigned_at = Column(DateTime, default=_utcnow)

    user = relationship("User", back_populates="roles")
    role = relationship("Role", back_populates="members")


class Project(Base):
    __tablename__ = "projects"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    description = Column(String)
    account_name = Column(String)
    status = Column(String, default="active", nullable=False)
    start_date = Column(DateTime)
    end_date = Column(DateTime)
    completed_at = Column(DateTime, nullable=True)
    created_by = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class ProjectMember(Base):
    __tablename__ = "project_members"
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    role = Column(String, default="member")


class WorkflowTemplate(Base):
    __tablename__ = "workflow_templates"

    # purpose: reusable approval graph authored by workflow managers
    # status: active

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=False, nullable=False)
    created_by = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    nodes = relationship(
        "WorkflowNode",
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="WorkflowNode.created_at",
    )
    connections = relationship(
        "WorkflowConnection",
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="WorkflowConnection.created_at",
    )
    instances = relationship("WorkflowInstance", back_populates="template")


class WorkflowNode(Base):
    __tablename__ = "workflow_nodes"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    template_id = Column(
        UUID(as_uuid=True),
        ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    node_key = Column(String, nullable=False)
    node_type = Column(String, nullable=False)
    label = Column(String, nullable=False, default="")
    required_entity_id = Column(UUID(as_uuid=True), nullable=True)
    settings = Column(JSON, default=dict, nullable=False)
    position_x = Column(Float, default=0.0)
    position_y = Column(Float, default=0.0)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    template = relationship("WorkflowTemplate", back_populates="nodes")

    __table_args__ = (
        sa.UniqueConstraint("template_id", "node_key", name="uq_workflow_node_key"),
    )


class WorkflowConnection(Base):
    __tablename__ = "workflow_connections"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    template_id = Column(
        UUID(as_uuid=True),
        ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    from_node_id = Column(
        UUID(as_uuid=True), ForeignKey("workflow_nodes.id", ondelete="CASCADE"), nullable=False
    )
    to_node_id = Column(
        UUID(as_uuid=True), ForeignKey("workflow_nodes.id", ondelete="CASCADE"), nullable=False
    )
    # label / condition_type / condition_value / decision / source_handle
    condition = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    template = relationship("WorkflowTemplate", back_populates="connections")


class WorkflowInstance(Base):
    __tablename__ = "workflow_instances"

    # purpose: one running execution of a template against a project
    # status: active

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    template_id = Column(
        UUID(as_uuid=True), ForeignKey("workflow_templates.id"), nullable=False, index=True
    )
    project_id = Column(
        UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status = Column(String, default="active", nullable=False)
    # legacy pointer, kept equal to the node of the single live step
    current_node_id = Column(
        UUID(as_uuid=True), ForeignKey("workflow_nodes.id", ondelete="SET NULL"), nullable=True
    )
    has_parallel_paths = Column(Boolean, default=False, nullable=False)
    started_by = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    started_at = Column(DateTime, default=_utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    template = relationship("WorkflowTemplate", back_populates="instances")
    project = relationship("Project")
    active_steps = relationship(
        "WorkflowActiveStep",
        back_populates="instance",
        cascade="all, delete-orphan",
        order_by="WorkflowActiveStep.activated_at",
    )
    history = relationship(
        "WorkflowHistory",
        back_populates="instance",
        cascade="all, delete-orphan",
        order_by="WorkflowHistory.handed_off_at",
    )
    node_assignments = relationship(
        "WorkflowNodeAssignment",
        back_populates="instance",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        sa.CheckConstraint(
            "status IN ('active', 'completed', 'cancelled')",
            name="ck_workflow_instance_status",
        ),
        # at most one running instance per project
        sa.Index(
            "uq_workflow_instances_active_project",
            "project_id",
            unique=True,
            postgresql_where=sa.text("status = 'active'"),
            sqlite_where=sa.text("status = 'active'"),
        ),
    )


class WorkflowActiveStep(Base):
    __tablename__ = "workflow_active_steps"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    instance_id = Column(
        UUID(as_uuid=True),
        ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    node_id = Column(
        UUID(as_uuid=True), ForeignKey("workflow_nodes.id", ondelete="SET NULL"), nullable=True
    )
    branch_id = Column(String, nullable=False, default="main")
    parent_branch_id = Column(String, nullable=True)
    # every branch created by one fork event shares a fork group
    fork_group_id = Column(String, nullable=True, index=True)
    fork_node_id = Column(UUID(as_uuid=True), nullable=True)
    status = Column(String, default="active", nullable=False)
    assigned_user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    approvals = Column(JSON, default=list, nullable=False)
    decision = Column(String, nullable=True)
    activated_at = Column(DateTime, default=_utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    instance = relationship("WorkflowInstance", back_populates="active_steps")
    node = relationship("WorkflowNode")
    assigned_user = relationship("User")

    __table_args__ = (
        sa.CheckConstraint(
            "status IN ('active', 'waiting', 'completed')",
            name="ck_workflow_active_step_status",
        ),
    )


class WorkflowHistory(Base):
    __tablename__ = "workflow_history"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    instance_id = Column(
        UUID(as_uuid=True),
        ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    from_node_id = Column(UUID(as_uuid=True), nullable=True)
    to_node_id = Column(UUID(as_uuid=True), nullable=True)
    handed_off_by = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    handed_off_to = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    decision = Column(String, nullable=True)
    feedback = Column(Text, nullable=True)
    form_response_id = Column(UUID(as_uuid=True), nullable=True)
    form_data = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)
    out_of_order = Column(Boolean, default=False, nullable=False)
    handed_off_at = Column(DateTime, default=_utcnow, nullable=False)

    instance = relationship("WorkflowInstance", back_populates="history")


class WorkflowNodeAssignment(Base):
    __tablename__ = "workflow_node_assignments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    instance_id = Column(
        UUID(as_uuid=True),
        ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    node_id = Column(
        UUID(as_uuid=True), ForeignKey("workflow_nodes.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    assigned_by = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    assigned_at = Column(DateTime, default=_utcnow, nullable=False)

    instance = relationship("WorkflowInstance", back_populates="node_assignments")
    node = relationship("WorkflowNode")
    user = relationship("User", foreign_keys=[user_id])

    __table_args__ = (
        sa.UniqueConstraint("instance_id", "node_id", "user_id", name="uq_workflow_node_assignment"),
    )


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    message = Column(String, nullable=False)
    category = Column(String, default="workflow")
    is_read = Column(Boolean, default=False)
    meta = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, default=_utcnow)

    user = relationship("User", back_populates="notifications")


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    action = Column(String, nullable=False)
    target_type = Column(String)
    target_id = Column(UUID(as_uuid=True))
    details = Column(JSON, default=dict)
    created_at = Column(DateTime, default=_utcnow)
