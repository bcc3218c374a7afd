"""Template authoring: CRUD, validation gates and destructive graph replacement."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from .. import models
from .workflow_errors import InvalidGraph, TemplateInvalid, WorkflowNotFound
from .workflow_graph import NODE_TYPES, ConnectionCondition, WorkflowGraph
from .workflow_validation import ValidationResult, validate_workflow

# purpose: keep stored template graphs consistent with running instances across edits
# inputs: SQLAlchemy session, template ids and authoring payloads (node keys, connections)
# outputs: persisted templates, validation results and replace summaries
# status: active
# depends_on: workflow_graph, workflow_validation

logger = logging.getLogger(__name__)


def create_template(
    db: Session,
    name: str,
    description: str | None = None,
    created_by: UUID | None = None,
) -> models.WorkflowTemplate:
    template = models.WorkflowTemplate(
        name=name,
        description=description,
        is_active=False,
        created_by=created_by,
    )
    db.add(template)
    db.flush()
    return template


def get_template(db: Session, template_id: UUID) -> models.WorkflowTemplate:
    template = db.get(models.WorkflowTemplate, template_id)
    if template is None:
        raise WorkflowNotFound("Workflow template not found", template_id=str(template_id))
    return template


def list_templates(db: Session, *, active_only: bool = False) -> list[models.WorkflowTemplate]:
    query = db.query(models.WorkflowTemplate)
    if active_only:
        query = query.filter(models.WorkflowTemplate.is_active.is_(True))
    return query.order_by(models.WorkflowTemplate.created_at.desc()).all()


def update_template(
    db: Session,
    template_id: UUID,
    *,
    name: str | None = None,
    description: str | None = None,
) -> models.WorkflowTemplate:
    template = get_template(db, template_id)
    if name is not None:
        template.name = name
    if description is not None:
        template.description = description
    db.flush()
    return template


def delete_template(db: Session, template_id: UUID) -> models.WorkflowTemplate:
    """Soft delete: the template stops accepting new instances but keeps its history."""

    template = get_template(db, template_id)
    template.is_active = False
    db.flush()
    return template


def validate_template(graph: WorkflowGraph) -> ValidationResult:
    return validate_workflow(graph)


def validate_stored_template(db: Session, template_id: UUID) -> ValidationResult:
    template = get_template(db, template_id)
    return validate_workflow(WorkflowGraph.from_template(template))


def activate_template(db: Session, template_id: UUID) -> tuple[models.WorkflowTemplate, ValidationResult]:
    template = get_template(db, template_id)
    result = validate_workflow(WorkflowGraph.from_template(template))
    if not result.valid:
        raise TemplateInvalid(
            f'Workflow template "{template.name}" has {len(result.errors)} validation error(s)',
            validation=result.to_dict(),
        )
    template.is_active = True
    db.flush()
    logger.info("Workflow template %s activated", template.id)
    return template, result


def deactivate_template(db: Session, template_id: UUID) -> models.WorkflowTemplate:
    template = get_template(db, template_id)
    template.is_active = False
    db.flush()
    return template


def _node_fields(raw: Mapping[str, Any]) -> dict[str, Any]:
    entity = raw.get("required_entity_id")
    if entity is not None and not isinstance(entity, UUID):
        try:
            entity = UUID(str(entity))
        except ValueError as exc:
            raise InvalidGraph(
                "required_entity_id must be a UUID",
                node_key=raw.get("key"),
            ) from exc
    return {
        "node_type": raw["type"],
        "label": raw.get("label") or "",
        "required_entity_id": entity,
        "settings": dict(raw.get("settings") or {}),
        "position_x": float(raw.get("position_x") or 0.0),
        "position_y": float(raw.get("position_y") or 0.0),
    }


def _check_payload(
    nodes: Sequence[Mapping[str, Any]],
    connections: Sequence[Mapping[str, Any]],
) -> None:
    keys: set[str] = set()
    for raw in nodes:
        key = raw.get("key")
        if not key:
            raise InvalidGraph("Every node needs a key")
        if key in keys:
            raise InvalidGraph(f'Duplicate node key "{key}"', node_key=key)
        if raw.get("type") not in NODE_TYPES:
            raise InvalidGraph(f'Unknown node type "{raw.get("type")}"', node_key=key)
        keys.add(key)
    for raw in connections:
        for end in ("source", "target"):
            if raw.get(end) not in keys:
                raise InvalidGraph(
                    f'Connection {end} "{raw.get(end)}" does not name a node in this graph',
                    node_key=raw.get(end),
                )


def _purge_node_references(db: Session, removed: Sequence[UUID]) -> None:
    """Detach runtime rows from nodes that are about to disappear."""

    if not removed:
        return
    db.query(models.WorkflowInstance).filter(
        models.WorkflowInstance.current_node_id.in_(removed)
    ).update({models.WorkflowInstance.current_node_id: None}, synchronize_session=False)
    db.query(models.WorkflowActiveStep).filter(
        models.WorkflowActiveStep.node_id.in_(removed)
    ).update({models.WorkflowActiveStep.node_id: None}, synchronize_session=False)
    db.query(models.WorkflowNodeAssignment).filter(
        models.WorkflowNodeAssignment.node_id.in_(removed)
    ).delete(synchronize_session=False)
    db.query(models.WorkflowHistory).filter(
        or_(
            models.WorkflowHistory.from_node_id.in_(removed),
            models.WorkflowHistory.to_node_id.in_(removed),
        )
    ).delete(synchronize_session=False)


def replace_template_graph(
    db: Session,
    template_id: UUID,
    nodes: Sequence[Mapping[str, Any]],
    connections: Sequence[Mapping[str, Any]],
) -> dict[str, Any]:
    """Replace every node and connection of a template in one transaction.

    Nodes are matched by ``key`` so ids survive repeated saves of the same
    graph; runtime rows pointing at dropped nodes are nulled or purged first.
    """

    template = get_template(db, template_id)
    _check_payload(nodes, connections)

    existing = {
        node.node_key: node
        for node in db.query(models.WorkflowNode)
        .filter(models.WorkflowNode.template_id == template.id)
        .all()
    }
    incoming_keys = {raw["key"] for raw in nodes}
    removed = [node for key, node in existing.items() if key not in incoming_keys]

    _purge_node_references(db, [node.id for node in removed])
    db.query(models.WorkflowConnection).filter(
        models.WorkflowConnection.template_id == template.id
    ).delete(synchronize_session=False)
    for node in removed:
        db.delete(node)
    db.flush()

    by_key: dict[str, models.WorkflowNode] = {}
    for raw in nodes:
        fields = _node_fields(raw)
        node = existing.get(raw["key"])
        if node is None:
            node = models.WorkflowNode(template_id=template.id, node_key=raw["key"], **fields)
            db.add(node)
        else:
            for name, value in fields.items():
                setattr(node, name, value)
        by_key[raw["key"]] = node
    db.flush()

    for raw in connections:
        condition = ConnectionCondition.from_payload(raw.get("condition"))
        db.add(
            models.WorkflowConnection(
                template_id=template.id,
                from_node_id=by_key[raw["source"]].id,
                to_node_id=by_key[raw["target"]].id,
                condition=condition.to_dict() if condition else None,
            )
        )
    db.flush()
    db.expire(template, ["nodes", "connections"])

    if template.is_active:
        result = validate_workflow(WorkflowGraph.from_template(template))
        if not result.valid:
            template.is_active = False
            logger.warning(
                "Workflow template %s deactivated: replaced graph has %d error(s)",
                template.id,
                len(result.errors),
            )

    logger.info(
        "Workflow template %s graph replaced: %d node(s), %d connection(s), %d removed",
        template.id,
        len(by_key),
        len(connections),
        len(removed),
    )
    return {"nodes": list(by_key.values()), "connection_count": len(connections)}
