import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from uuid import UUID

from ..database import get_db
from ..auth import get_current_user
from ..rbac import MANAGE_WORKFLOWS, VIEW_WORKFLOWS, require_capability
from ..services import workflow_templates
from ..services.workflow_eligibility import eligible_user_ids
from ..services.workflow_errors import WorkflowError, WorkflowNotFound
from ..services.workflow_graph import WorkflowGraph
from .. import audit, models, schemas

router = APIRouter(prefix="/api/workflows/templates", tags=["workflow-templates"])
logger = logging.getLogger(__name__)


@router.post("", response_model=schemas.WorkflowTemplateOut, status_code=status.HTTP_201_CREATED)
def create_template(
    payload: schemas.WorkflowTemplateCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, MANAGE_WORKFLOWS)
    template = workflow_templates.create_template(
        db, payload.name, payload.description, created_by=user.id
    )
    audit.log_action(db, user.id, "create_workflow_template", "workflow_template", template.id)
    db.commit()
    db.refresh(template)
    return template


@router.get("", response_model=list[schemas.WorkflowTemplateOut])
def list_templates(
    active_only: bool = False,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, VIEW_WORKFLOWS)
    return workflow_templates.list_templates(db, active_only=active_only)


@router.post("/validate", response_model=schemas.ValidationResultOut)
def validate_graph(
    payload: schemas.WorkflowGraphIn,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    """Validate an unsaved graph, as the designer does before saving."""

    require_capability(db, user, MANAGE_WORKFLOWS)
    graph = WorkflowGraph.from_payload(payload.node_dicts(), payload.connection_dicts())
    return workflow_templates.validate_template(graph).to_dict()


@router.get("/{template_id}", response_model=schemas.WorkflowTemplateDetail)
def get_template(
    template_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, VIEW_WORKFLOWS)
    return workflow_templates.get_template(db, template_id)


@router.put("/{template_id}", response_model=schemas.WorkflowTemplateOut)
def update_template(
    template_id: UUID,
    payload: schemas.WorkflowTemplateUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, MANAGE_WORKFLOWS)
    template = workflow_templates.update_template(
        db, template_id, name=payload.name, description=payload.description
    )
    db.commit()
    db.refresh(template)
    return template


@router.delete("/{template_id}", response_model=schemas.WorkflowTemplateOut)
def delete_template(
    template_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, MANAGE_WORKFLOWS)
    template = workflow_templates.delete_template(db, template_id)
    audit.log_action(db, user.id, "delete_workflow_template", "workflow_template", template.id)
    db.commit()
    db.refresh(template)
    return template


@router.put("/{template_id}/graph", response_model=schemas.WorkflowGraphReplaceOut)
def replace_graph(
    template_id: UUID,
    payload: schemas.WorkflowGraphIn,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, MANAGE_WORKFLOWS)
    try:
        result = workflow_templates.replace_template_graph(
            db, template_id, payload.node_dicts(), payload.connection_dicts()
        )
        audit.log_action(
            db,
            user.id,
            "replace_workflow_graph",
            "workflow_template",
            template_id,
            {"nodes": len(result["nodes"]), "connections": result["connection_count"]},
        )
        db.commit()
    except WorkflowError:
        db.rollback()
        raise
    for node in result["nodes"]:
        db.refresh(node)
    return result


@router.post("/{template_id}/validate", response_model=schemas.ValidationResultOut)
def validate_template(
    template_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, VIEW_WORKFLOWS)
    return workflow_templates.validate_stored_template(db, template_id).to_dict()


@router.post("/{template_id}/activate", response_model=schemas.WorkflowTemplateOut)
def activate_template(
    template_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, MANAGE_WORKFLOWS)
    try:
        template, result = workflow_templates.activate_template(db, template_id)
    except WorkflowError:
        db.rollback()
        raise
    audit.log_action(
        db,
        user.id,
        "activate_workflow_template",
        "workflow_template",
        template.id,
        {"warnings": len(result.warnings)},
    )
    db.commit()
    db.refresh(template)
    return template


@router.post("/{template_id}/deactivate", response_model=schemas.WorkflowTemplateOut)
def deactivate_template(
    template_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    require_capability(db, user, MANAGE_WORKFLOWS)
    template = workflow_templates.deactivate_template(db, template_id)
    audit.log_action(db, user.id, "deactivate_workflow_template", "workflow_template", template.id)
    db.commit()
    db.refresh(template)
    logger.info("Workflow template %s deactivated by %s", template.id, user.id)
    return template


@router.get("/{template_id}/nodes/{node_id}/eligible-users", response_model=list[schemas.UserOut])
def list_eligible_users(
    template_id: UUID,
    node_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    """Users whose roles or departments qualify them for a node, for assignment pickers."""

    require_capability(db, user, VIEW_WORKFLOWS)
    template = workflow_templates.get_template(db, template_id)
    node = WorkflowGraph.from_template(template).node(str(node_id))
    if node is None:
        raise WorkflowNotFound("Node is not part of this template", node_id=str(node_id))
    user_ids = eligible_user_ids(db, node)
    if not user_ids:
        return []
    return (
        db.query(models.User)
        .filter(models.User.id.in_(user_ids))
        .order_by(models.User.email)
        .all()
    )
