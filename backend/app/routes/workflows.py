import logging

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session
from uuid import UUID

from ..database import get_db
from ..auth import get_current_user
from ..rbac import (
    EXECUTE_WORKFLOWS,
    MANAGE_WORKFLOWS,
    SKIP_WORKFLOW_NODES,
    VIEW_WORKFLOWS,
    require_capability,
)
from ..services import workflow_engine as engine
from ..services.workflow_engine import ProgressResult
from ..services.workflow_errors import WorkflowError
from .. import audit, models, schemas, tasks

router = APIRouter(prefix="/api/workflows", tags=["workflows"])
logger = logging.getLogger(__name__)


def _progress_out(result: ProgressResult) -> schemas.WorkflowProgressOut:
    return schemas.WorkflowProgressOut(
        instance=schemas.WorkflowInstanceOut.model_validate(result.instance),
        next_nodes=[schemas.GraphNodeOut.model_validate(node) for node in result.next_nodes],
        new_active_steps=[
            schemas.WorkflowActiveStepOut.model_validate(step) for step in result.new_active_steps
        ],
        completed=result.completed,
    )


def _commit_progress(db: Session, result: ProgressResult) -> schemas.WorkflowProgressOut:
    db.commit()
    project = result.instance.project
    tasks.enqueue_step_notifications(result.assigned, project.name if project else None)
    return _progress_out(result)


@router.post("/start", response_model=schemas.WorkflowInstanceOut, status_code=status.HTTP_201_CREATED)
def start_workflow(
    payload: schemas.WorkflowStartRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, EXECUTE_WORKFLOWS)
    try:
        instance = engine.start_workflow(db, payload.template_id, payload.project_id, user)
        audit.log_action(
            db,
            user.id,
            "start_workflow",
            "workflow_instance",
            instance.id,
            {"template_id": str(payload.template_id), "project_id": str(payload.project_id)},
        )
        db.commit()
    except WorkflowError:
        db.rollback()
        raise
    db.refresh(instance)
    return instance


@router.get("/instances/{instance_id}", response_model=schemas.WorkflowInstanceDetail)
def get_instance(
    instance_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, VIEW_WORKFLOWS)
    instance = engine.get_instance(db, instance_id)
    detail = schemas.WorkflowInstanceDetail.model_validate(instance)
    detail.steps = [
        schemas.WorkflowActiveStepOut.model_validate(step)
        for step in engine.get_all_active_and_waiting_steps(db, instance_id)
    ]
    return detail


@router.post("/instances/{instance_id}/progress", response_model=schemas.WorkflowProgressOut)
def progress_workflow(
    instance_id: UUID,
    payload: schemas.WorkflowProgressRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, EXECUTE_WORKFLOWS)
    assignment = payload.assignment
    if isinstance(assignment, dict):
        assignment = {str(key): value for key, value in assignment.items()}
    try:
        result = engine.progress_step(
            db,
            instance_id,
            user,
            active_step_id=payload.active_step_id,
            decision=payload.decision,
            form_data=payload.form_data,
            assignment=assignment,
            feedback=payload.feedback,
            form_response_id=payload.form_response_id,
            notes=payload.notes,
        )
    except WorkflowError:
        db.rollback()
        raise
    return _commit_progress(db, result)


@router.post("/instances/{instance_id}/handoff", response_model=schemas.WorkflowProgressOut)
def handoff_workflow(
    instance_id: UUID,
    payload: schemas.WorkflowHandoffRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    """Hand the active step to a chosen node; skipping ahead needs skip rights."""

    require_capability(db, user, EXECUTE_WORKFLOWS)
    out_of_order = payload.out_of_order or engine.is_out_of_order_target(
        db, instance_id, payload.to_node_id, payload.active_step_id
    )
    if out_of_order:
        require_capability(
            db,
            user,
            SKIP_WORKFLOW_NODES,
            detail="Insufficient permissions: out-of-order handoff requires skip_workflow_nodes",
        )
    try:
        result = engine.handoff(
            db,
            instance_id,
            user,
            payload.to_node_id,
            active_step_id=payload.active_step_id,
            handed_off_to=payload.handed_off_to,
            form_response_id=payload.form_response_id,
            notes=payload.notes,
            out_of_order=out_of_order,
        )
    except WorkflowError:
        db.rollback()
        raise
    if out_of_order:
        audit.log_action(
            db,
            user.id,
            "out_of_order_handoff",
            "workflow_instance",
            instance_id,
            {"to_node_id": str(payload.to_node_id)},
        )
    return _commit_progress(db, result)


@router.post("/instances/{instance_id}/cancel", response_model=schemas.WorkflowInstanceOut)
def cancel_workflow(
    instance_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, MANAGE_WORKFLOWS)
    try:
        instance = engine.cancel_workflow(db, instance_id, user)
        audit.log_action(db, user.id, "cancel_workflow", "workflow_instance", instance.id)
        db.commit()
    except WorkflowError:
        db.rollback()
        raise
    db.refresh(instance)
    return instance


@router.get("/instances/{instance_id}/active-steps", response_model=list[schemas.WorkflowActiveStepOut])
def list_active_steps(
    instance_id: UUID,
    include_waiting: bool = True,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, VIEW_WORKFLOWS)
    if include_waiting:
        return engine.get_all_active_and_waiting_steps(db, instance_id)
    return engine.get_active_steps(db, instance_id)


@router.get("/instances/{instance_id}/next-nodes", response_model=list[schemas.GraphNodeOut])
def list_next_nodes(
    instance_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, VIEW_WORKFLOWS)
    return engine.get_next_available_nodes(db, instance_id)


@router.get("/instances/{instance_id}/history", response_model=list[schemas.WorkflowHistoryOut])
def list_history(
    instance_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, VIEW_WORKFLOWS)
    return engine.get_history(db, instance_id)


@router.put(
    "/instances/{instance_id}/steps/{step_id}/assignee",
    response_model=schemas.WorkflowActiveStepOut,
)
def assign_step(
    instance_id: UUID,
    step_id: UUID,
    payload: schemas.StepAssigneeUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, EXECUTE_WORKFLOWS)
    try:
        step = engine.assign_step(db, instance_id, step_id, payload.user_id)
        db.commit()
    except WorkflowError:
        db.rollback()
        raise
    db.refresh(step)
    node_label = step.node.label if step.node is not None else "workflow step"
    project = step.instance.project
    tasks.enqueue_step_notifications([(payload.user_id, node_label)], project.name if project else None)
    return step


@router.get("/instances/{instance_id}/assignments", response_model=list[schemas.NodeAssignmentOut])
def list_assignments(
    instance_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, VIEW_WORKFLOWS)
    return engine.list_node_assignments(db, instance_id)


@router.post(
    "/instances/{instance_id}/assignments",
    response_model=schemas.NodeAssignmentOut,
    status_code=status.HTTP_201_CREATED,
)
def create_assignment(
    instance_id: UUID,
    payload: schemas.NodeAssignmentCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, EXECUTE_WORKFLOWS)
    try:
        assignment = engine.assign_node(db, instance_id, payload.node_id, payload.user_id, user)
        db.commit()
    except WorkflowError:
        db.rollback()
        raise
    db.refresh(assignment)
    return assignment


@router.delete("/instances/{instance_id}/assignments/{assignment_id}", status_code=204)
def delete_assignment(
    instance_id: UUID,
    assignment_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, EXECUTE_WORKFLOWS)
    try:
        engine.unassign_node(db, instance_id, assignment_id)
        db.commit()
    except WorkflowError:
        db.rollback()
        raise
    return Response(status_code=204)


@router.get("/my-approvals", response_model=list[schemas.WorkflowActiveStepOut])
def my_approvals(
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return engine.get_user_pending_steps(db, user)


@router.get("/my-pipeline", response_model=list[schemas.NodeAssignmentOut])
def my_pipeline(
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return engine.get_user_pipeline(db, user)
