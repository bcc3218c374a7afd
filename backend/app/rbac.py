from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from fastapi import HTTPException
from sqlalchemy.orm import Session, joinedload

from . import models

# purpose: centralize capability checks and role membership lookups
# status: active

MANAGE_WORKFLOWS = "manage_workflows"
EXECUTE_WORKFLOWS = "execute_workflows"
SKIP_WORKFLOW_NODES = "skip_workflow_nodes"
VIEW_WORKFLOWS = "view_workflows"
MANAGE_ORG_STRUCTURE = "manage_org_structure"
MANAGE_PROJECTS = "manage_projects"

CAPABILITIES: tuple[str, ...] = (
    MANAGE_WORKFLOWS,
    EXECUTE_WORKFLOWS,
    SKIP_WORKFLOW_NODES,
    VIEW_WORKFLOWS,
    MANAGE_ORG_STRUCTURE,
    MANAGE_PROJECTS,
)

# holders of the key capability implicitly hold the listed ones
_IMPLIED: dict[str, tuple[str, ...]] = {
    MANAGE_WORKFLOWS: (VIEW_WORKFLOWS,),
    EXECUTE_WORKFLOWS: (VIEW_WORKFLOWS,),
}


@dataclass(frozen=True)
class Membership:
    """One role held by a user, with the department that role belongs to."""

    role_id: UUID
    department_id: UUID | None = None


def get_user_roles(db: Session, user_id: UUID) -> list[Membership]:
    rows = (
        db.query(models.UserRole)
        .options(joinedload(models.UserRole.role))
        .filter(models.UserRole.user_id == user_id)
        .all()
    )
    return [
        Membership(role_id=row.role_id, department_id=row.role.department_id if row.role else None)
        for row in rows
    ]


def _granted(permissions: list[str], capability: str, scope: str | None) -> bool:
    for granted in permissions or []:
        name = granted
        granted_scope = None
        if ":" in granted:
            granted_scope, name = granted.split(":", 1)
        if granted_scope is not None and granted_scope != scope:
            continue
        if name == capability or capability in _IMPLIED.get(name, ()):
            return True
    return False


def has_capability(
    db: Session,
    user: models.User,
    capability: str,
    scope: str | UUID | None = None,
) -> bool:
    """Return whether ``user`` holds ``capability``, globally or within ``scope``."""

    if user.is_admin:
        return True
    scope_key = str(scope) if scope is not None else None
    roles = (
        db.query(models.Role)
        .join(models.UserRole, models.UserRole.role_id == models.Role.id)
        .filter(models.UserRole.user_id == user.id)
        .all()
    )
    return any(_granted(role.permissions, capability, scope_key) for role in roles)


def require_capability(
    db: Session,
    user: models.User,
    capability: str,
    scope: str | UUID | None = None,
    detail: str | None = None,
) -> None:
    if not has_capability(db, user, capability, scope):
        raise HTTPException(
            status_code=403,
            detail=detail or f"Insufficient permissions: requires {capability}",
        )


def ensure_project_member(
    db: Session,
    user: models.User,
    project_id: UUID,
    roles: list[str] | tuple[str, ...] = ("member", "owner"),
):
    if user.is_admin or has_capability(db, user, MANAGE_PROJECTS):
        return
    membership = (
        db.query(models.ProjectMember)
        .filter(models.ProjectMember.project_id == project_id, models.ProjectMember.user_id == user.id)
        .first()
    )
    if not membership or membership.role not in roles:
        raise HTTPException(status_code=403, detail="Not authorized")
