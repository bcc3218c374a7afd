from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session
from uuid import UUID

from ..database import get_db
from ..auth import get_current_user
from ..rbac import CAPABILITIES, MANAGE_ORG_STRUCTURE, require_capability
from .. import audit, models, schemas

router = APIRouter(prefix="/api/org-structure", tags=["org-structure"])


def _check_permissions(permissions: list[str]) -> None:
    for granted in permissions:
        name = granted.split(":", 1)[-1]
        if name not in CAPABILITIES:
            raise HTTPException(status_code=400, detail=f"Unknown capability: {name}")


@router.post("/departments", response_model=schemas.DepartmentOut, status_code=status.HTTP_201_CREATED)
def create_department(
    payload: schemas.DepartmentCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, MANAGE_ORG_STRUCTURE)
    if db.query(models.Department).filter(models.Department.name == payload.name).first():
        raise HTTPException(status_code=400, detail="Department already exists")
    department = models.Department(**payload.model_dump())
    db.add(department)
    db.commit()
    db.refresh(department)
    return department


@router.get("/departments", response_model=list[schemas.DepartmentOut])
def list_departments(db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    return db.query(models.Department).order_by(models.Department.name).all()


@router.delete("/departments/{department_id}", status_code=204)
def delete_department(
    department_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, MANAGE_ORG_STRUCTURE)
    department = db.get(models.Department, department_id)
    if not department:
        raise HTTPException(status_code=404, detail="Department not found")
    db.query(models.Role).filter(models.Role.department_id == department_id).update(
        {models.Role.department_id: None}, synchronize_session=False
    )
    db.delete(department)
    db.commit()
    return Response(status_code=204)


@router.post("/roles", response_model=schemas.RoleOut, status_code=status.HTTP_201_CREATED)
def create_role(
    payload: schemas.RoleCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, MANAGE_ORG_STRUCTURE)
    _check_permissions(payload.permissions)
    if payload.department_id and not db.get(models.Department, payload.department_id):
        raise HTTPException(status_code=404, detail="Department not found")
    role = models.Role(**payload.model_dump())
    db.add(role)
    db.flush()
    audit.log_action(db, user.id, "create_role", "role", role.id, {"permissions": payload.permissions})
    db.commit()
    db.refresh(role)
    return role


@router.get("/roles", response_model=list[schemas.RoleOut])
def list_roles(
    department_id: UUID | None = None,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    query = db.query(models.Role)
    if department_id:
        query = query.filter(models.Role.department_id == department_id)
    return query.order_by(models.Role.name).all()


@router.put("/roles/{role_id}", response_model=schemas.RoleOut)
def update_role(
    role_id: UUID,
    payload: schemas.RoleUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, MANAGE_ORG_STRUCTURE)
    role = db.get(models.Role, role_id)
    if not role:
        raise HTTPException(status_code=404, detail="Role not found")
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("permissions") is not None:
        _check_permissions(changes["permissions"])
    for k, v in changes.items():
        setattr(role, k, v)
    audit.log_action(db, user.id, "update_role", "role", role.id, {"fields": sorted(changes)})
    db.commit()
    db.refresh(role)
    return role


@router.delete("/roles/{role_id}", status_code=204)
def delete_role(
    role_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, MANAGE_ORG_STRUCTURE)
    role = db.get(models.Role, role_id)
    if not role:
        raise HTTPException(status_code=404, detail="Role not found")
    db.delete(role)
    db.commit()
    return Response(status_code=204)


@router.get("/roles/{role_id}/members", response_model=list[schemas.RoleMemberOut])
def list_role_members(
    role_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return db.query(models.UserRole).filter(models.UserRole.role_id == role_id).all()


@router.post(
    "/roles/{role_id}/members",
    response_model=schemas.RoleMemberOut,
    status_code=status.HTTP_201_CREATED,
)
def add_role_member(
    role_id: UUID,
    payload: schemas.RoleMemberAdd,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, MANAGE_ORG_STRUCTURE)
    if not db.get(models.Role, role_id):
        raise HTTPException(status_code=404, detail="Role not found")
    if not db.get(models.User, payload.user_id):
        raise HTTPException(status_code=404, detail="User not found")
    membership = db.get(models.UserRole, (payload.user_id, role_id))
    if membership is None:
        membership = models.UserRole(user_id=payload.user_id, role_id=role_id)
        db.add(membership)
        audit.log_action(db, user.id, "grant_role", "role", role_id, {"user_id": str(payload.user_id)})
        db.commit()
        db.refresh(membership)
    return membership


@router.delete("/roles/{role_id}/members/{user_id}", status_code=204)
def remove_role_member(
    role_id: UUID,
    user_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, MANAGE_ORG_STRUCTURE)
    membership = db.get(models.UserRole, (user_id, role_id))
    if membership is None:
        raise HTTPException(status_code=404, detail="Membership not found")
    db.delete(membership)
    audit.log_action(db, user.id, "revoke_role", "role", role_id, {"user_id": str(user_id)})
    db.commit()
    return Response(status_code=204)


@router.get("/audit-report", response_model=list[schemas.AuditActionCount])
def audit_report(
    start: datetime | None = None,
    end: datetime | None = None,
    target_type: str | None = None,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, MANAGE_ORG_STRUCTURE)
    return audit.action_counts(db, start=start, end=end, target_type=target_type)
