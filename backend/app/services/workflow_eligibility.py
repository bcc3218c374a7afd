"""Decide who may act on, or be assigned to, a workflow node."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.orm import Session

from .. import models
from ..rbac import Membership, get_user_roles
from .workflow_graph import DepartmentSettings, GraphNode

# purpose: resolve role/department eligibility from an explicit context value
# inputs: graph node plus an EligibilityContext built once per request
# outputs: boolean eligibility decisions and candidate user lists
# status: active


@dataclass(frozen=True)
class EligibilityContext:
    user_id: UUID
    memberships: tuple[Membership, ...] = ()
    # node ids (as strings) this user was pre-assigned to on the instance
    assigned_node_ids: frozenset[str] = frozenset()
    is_superadmin: bool = False

    @property
    def role_ids(self) -> set[str]:
        return {str(m.role_id) for m in self.memberships}

    @property
    def department_ids(self) -> set[str]:
        return {str(m.department_id) for m in self.memberships if m.department_id}


def build_eligibility_context(
    db: Session,
    user: models.User | UUID,
    instance_id: UUID | None = None,
) -> EligibilityContext:
    if isinstance(user, models.User):
        user_id = user.id
        is_superadmin = bool(user.is_admin)
    else:
        user_id = user
        record = db.get(models.User, user_id)
        is_superadmin = bool(record and record.is_admin)

    assigned: frozenset[str] = frozenset()
    if instance_id is not None:
        rows = (
            db.query(models.WorkflowNodeAssignment.node_id)
            .filter(
                models.WorkflowNodeAssignment.instance_id == instance_id,
                models.WorkflowNodeAssignment.user_id == user_id,
            )
            .all()
        )
        assigned = frozenset(str(row.node_id) for row in rows)

    return EligibilityContext(
        user_id=user_id,
        memberships=tuple(get_user_roles(db, user_id)),
        assigned_node_ids=assigned,
        is_superadmin=is_superadmin,
    )


def required_department(node: GraphNode) -> str | None:
    if isinstance(node.settings, DepartmentSettings) and node.settings.department_id:
        return node.settings.department_id
    return node.required_entity_id


def structurally_eligible(node: GraphNode, context: EligibilityContext) -> bool:
    """Role/department membership check, ignoring pre-assignments."""

    if node.type == "department":
        department_id = required_department(node)
        if not department_id:
            return True
        return department_id in context.department_ids
    if not node.required_entity_id:
        return True
    if node.type in ("role", "approval"):
        return node.required_entity_id in context.role_ids
    # form and other node types carry no membership requirement
    return True


def is_eligible(node: GraphNode, context: EligibilityContext) -> bool:
    """A pre-assignment to the node overrides role/department membership."""

    if node.id in context.assigned_node_ids:
        return True
    return structurally_eligible(node, context)


def eligible_user_ids(db: Session, node: GraphNode) -> list[UUID]:
    """Every active user structurally eligible for ``node``."""

    query = db.query(models.User.id).filter(models.User.is_active.is_(True))
    if node.type == "department":
        department_id = required_department(node)
        if department_id:
            query = (
                query.join(models.UserRole, models.UserRole.user_id == models.User.id)
                .join(models.Role, models.Role.id == models.UserRole.role_id)
                .filter(models.Role.department_id == UUID(department_id))
            )
    elif node.type in ("role", "approval") and node.required_entity_id:
        query = query.join(models.UserRole, models.UserRole.user_id == models.User.id).filter(
            models.UserRole.role_id == UUID(node.required_entity_id)
        )
    return [row.id for row in query.distinct().all()]
