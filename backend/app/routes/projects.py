from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.orm import Session
from uuid import UUID

from ..database import get_db
from ..models import Project, ProjectMember, WorkflowInstance
from ..schemas import ProjectCreate, ProjectUpdate, ProjectOut, WorkflowInstanceOut
from ..auth import get_current_user
from ..rbac import MANAGE_PROJECTS, ensure_project_member, require_capability

router = APIRouter(prefix="/api/projects", tags=["projects"])


@router.post("", response_model=ProjectOut)
def create_project(
    project: ProjectCreate,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    require_capability(db, user, MANAGE_PROJECTS)
    db_proj = Project(**project.model_dump(), created_by=user.id)
    db.add(db_proj)
    db.flush()
    db.add(ProjectMember(project_id=db_proj.id, user_id=user.id, role="owner"))
    db.commit()
    db.refresh(db_proj)
    return db_proj


@router.get("", response_model=list[ProjectOut])
def list_projects(
    status: str | None = None,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    query = db.query(Project)
    if status:
        query = query.filter(Project.status == status)
    return query.order_by(Project.created_at.desc()).all()


@router.get("/{project_id}", response_model=ProjectOut)
def get_project(project_id: UUID, db: Session = Depends(get_db), user=Depends(get_current_user)):
    proj = db.get(Project, project_id)
    if not proj:
        raise HTTPException(status_code=404)
    return proj


@router.put("/{project_id}", response_model=ProjectOut)
def update_project(
    project_id: UUID,
    project: ProjectUpdate,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    proj = db.get(Project, project_id)
    if not proj:
        raise HTTPException(status_code=404)
    ensure_project_member(db, user, project_id, ("owner",))
    for k, v in project.model_dump(exclude_unset=True).items():
        setattr(proj, k, v)
    db.commit()
    db.refresh(proj)
    return proj


@router.delete("/{project_id}", status_code=204)
def delete_project(project_id: UUID, db: Session = Depends(get_db), user=Depends(get_current_user)):
    proj = db.get(Project, project_id)
    if not proj:
        raise HTTPException(status_code=404)
    ensure_project_member(db, user, project_id, ("owner",))
    running = (
        db.query(WorkflowInstance)
        .filter(WorkflowInstance.project_id == project_id, WorkflowInstance.status == "active")
        .first()
    )
    if running:
        raise HTTPException(status_code=409, detail="Cancel the running workflow first")
    db.query(ProjectMember).filter_by(project_id=project_id).delete()
    for instance in db.query(WorkflowInstance).filter_by(project_id=project_id).all():
        db.delete(instance)
    db.delete(proj)
    db.commit()
    return Response(status_code=204)


@router.post("/{project_id}/members", status_code=204)
def add_project_member(project_id: UUID, member_id: UUID, db: Session = Depends(get_db), user=Depends(get_current_user)):
    ensure_project_member(db, user, project_id, ("owner",))
    db.add(ProjectMember(project_id=project_id, user_id=member_id, role="member"))
    db.commit()
    return Response(status_code=204)


@router.get("/{project_id}/workflows", response_model=list[WorkflowInstanceOut])
def list_project_workflows(project_id: UUID, db: Session = Depends(get_db), user=Depends(get_current_user)):
    if not db.get(Project, project_id):
        raise HTTPException(status_code=404)
    return (
        db.query(WorkflowInstance)
        .filter(WorkflowInstance.project_id == project_id)
        .order_by(WorkflowInstance.started_at.desc())
        .all()
    )
