"""Runtime state machine driving workflow instances through their template graph."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy.orm import Session

from .. import models
from .workflow_conditions import select_conditional_connection
from .workflow_eligibility import (
    EligibilityContext,
    build_eligibility_context,
    is_eligible,
    structurally_eligible,
)
from .workflow_errors import (
    AlreadyApproved,
    AlreadyRunning,
    DecisionRequired,
    IneligibleActor,
    IneligibleAssignment,
    InstanceNotActive,
    NoMatchingPath,
    StepNotFound,
    TemplateNotActive,
    WorkflowNotFound,
    WorkflowStateError,
    WorkflowStructureError,
)
from .workflow_graph import (
    DECISIONS,
    ApprovalSettings,
    GraphConnection,
    GraphNode,
    WorkflowGraph,
    sync_outcome,
)
from .workflow_validation import closing_sync

# purpose: advance active-step tokens through forks, joins and routed decisions
# inputs: SQLAlchemy session, instance identifiers, acting user, handoff payloads
# outputs: mutated instance/step/history rows (caller commits) and ProgressResult summaries
# status: active
# depends_on: workflow_graph, workflow_conditions, workflow_eligibility

logger = logging.getLogger(__name__)

MAIN_BRANCH = "main"
LIVE_STATUSES = ("active", "waiting")

AssignmentInput = UUID | str | Mapping[str, UUID | str] | None


@dataclass(frozen=True, slots=True)
class Lineage:
    """Position of a step in the branch tree."""

    branch_id: str = MAIN_BRANCH
    parent_branch_id: str | None = None
    fork_group_id: str | None = None
    fork_node_id: UUID | None = None

    @classmethod
    def of(cls, step: models.WorkflowActiveStep) -> "Lineage":
        return cls(
            branch_id=step.branch_id,
            parent_branch_id=step.parent_branch_id,
            fork_group_id=step.fork_group_id,
            fork_node_id=step.fork_node_id,
        )


@dataclass
class ProgressResult:
    instance: models.WorkflowInstance
    next_nodes: list[GraphNode] = field(default_factory=list)
    new_active_steps: list[models.WorkflowActiveStep] = field(default_factory=list)
    history: list[models.WorkflowHistory] = field(default_factory=list)
    assigned: list[tuple[UUID, str]] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.instance.status == "completed"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_uuid(value: UUID | str) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def load_graph(db: Session, template_id: UUID) -> WorkflowGraph:
    nodes = (
        db.query(models.WorkflowNode)
        .filter(models.WorkflowNode.template_id == template_id)
        .order_by(models.WorkflowNode.created_at)
        .all()
    )
    connections = (
        db.query(models.WorkflowConnection)
        .filter(models.WorkflowConnection.template_id == template_id)
        .order_by(models.WorkflowConnection.created_at)
        .all()
    )
    return WorkflowGraph.from_models(nodes, connections)


def get_instance(db: Session, instance_id: UUID, *, lock: bool = False) -> models.WorkflowInstance:
    query = db.query(models.WorkflowInstance).filter(models.WorkflowInstance.id == instance_id)
    if lock:
        # serialises concurrent handoffs on one instance; SQLite relies on its writer lock
        query = query.with_for_update()
    instance = query.one_or_none()
    if instance is None:
        raise WorkflowNotFound("Workflow instance not found", instance_id=str(instance_id))
    return instance


def _live_steps(db: Session, instance_id: UUID) -> list[models.WorkflowActiveStep]:
    return (
        db.query(models.WorkflowActiveStep)
        .filter(
            models.WorkflowActiveStep.instance_id == instance_id,
            models.WorkflowActiveStep.status.in_(LIVE_STATUSES),
        )
        .order_by(models.WorkflowActiveStep.activated_at)
        .all()
    )


def start_workflow(
    db: Session,
    template_id: UUID,
    project_id: UUID,
    user: models.User,
) -> models.WorkflowInstance:
    """Create an instance with a single active step on the template's start node."""

    template = db.get(models.WorkflowTemplate, template_id)
    if template is None:
        raise WorkflowNotFound("Workflow template not found", template_id=str(template_id))
    if not template.is_active:
        raise TemplateNotActive(f'Workflow template "{template.name}" is not active')
    project = db.get(models.Project, project_id)
    if project is None:
        raise WorkflowNotFound("Project not found", project_id=str(project_id))

    running = (
        db.query(models.WorkflowInstance)
        .filter(
            models.WorkflowInstance.project_id == project_id,
            models.WorkflowInstance.status == "active",
        )
        .with_for_update()
        .first()
    )
    if running is not None:
        raise AlreadyRunning(
            "A workflow is already running for this project",
            instance_id=str(running.id),
        )

    graph = load_graph(db, template.id)
    start = graph.start_node()
    if start is None:
        raise WorkflowStructureError("Workflow template has no single Start node")

    now = _now()
    start_id = UUID(start.id)
    instance = models.WorkflowInstance(
        template_id=template.id,
        project_id=project.id,
        status="active",
        current_node_id=start_id,
        has_parallel_paths=False,
        started_by=user.id,
        started_at=now,
    )
    db.add(instance)
    db.flush()
    db.add(
        models.WorkflowActiveStep(
            instance_id=instance.id,
            node_id=start_id,
            branch_id=MAIN_BRANCH,
            status="active",
            activated_at=now,
        )
    )
    db.add(
        models.WorkflowHistory(
            instance_id=instance.id,
            from_node_id=None,
            to_node_id=start_id,
            handed_off_by=user.id,
            notes="Workflow started",
            handed_off_at=now,
        )
    )
    db.flush()
    logger.info("Workflow %s started for project %s by %s", instance.id, project.id, user.id)
    return instance


class _Progression:
    """One handoff event: every step created, completed or joined while it runs."""

    def __init__(
        self,
        db: Session,
        instance: models.WorkflowInstance,
        graph: WorkflowGraph,
        actor: models.User,
        *,
        decision: str | None,
        form_data: Mapping[str, Any] | None,
        assignment: AssignmentInput,
    ) -> None:
        self.db = db
        self.instance = instance
        self.graph = graph
        self.actor = actor
        self.decision = decision
        self.form_data = form_data or {}
        self.assignment = assignment
        self.now = _now()
        self.created: list[models.WorkflowActiveStep] = []
        self.history: list[models.WorkflowHistory] = []
        self.assigned: list[tuple[UUID, str]] = []
        self._hops = 0

    # -- graph helpers -------------------------------------------------

    def node_of(self, step: models.WorkflowActiveStep) -> GraphNode:
        node = self.graph.node(str(step.node_id)) if step.node_id else None
        if node is None:
            raise WorkflowStructureError(
                "Active step references a node that no longer exists in the template",
                step_id=str(step.id),
            )
        return node

    def target_of(self, connection: GraphConnection) -> GraphNode:
        node = self.graph.node(connection.target)
        if node is None:
            raise WorkflowStructureError(
                "Connection points at a node that no longer exists",
                connection_id=connection.id,
            )
        return node

    def select_connections(self, node: GraphNode, outcome: str | None = None) -> list[GraphConnection]:
        """Outgoing connections that fire when a step on ``node`` completes.

        ``outcome`` is the aggregate of the merged branches' decisions when
        ``node`` is a sync; edges tagged ``all_approved`` or ``any_rejected``
        fire on a match and untagged edges are the fallback.
        """

        outgoing = self.graph.outgoing(node.id)
        if not outgoing:
            return []

        if node.type == "approval":
            tagged = [c for c in outgoing if not c.is_unconditioned]
            defaults = [c for c in outgoing if c.is_unconditioned]
            if self.decision is None:
                if tagged:
                    raise DecisionRequired(
                        f'Approval node "{node.display_label}" requires an approved/rejected decision'
                    )
                return defaults
            matching = [c for c in outgoing if c.is_tagged(self.decision)]
            if matching:
                return matching
            if defaults:
                return defaults
            raise NoMatchingPath(
                f'Approval node "{node.display_label}" has no path for decision "{self.decision}"'
            )

        if node.type == "conditional":
            chosen = select_conditional_connection(node, outgoing, self.form_data, self.decision)
            if chosen is None:
                raise NoMatchingPath(
                    f'No condition matched on "{node.display_label}" and no default path exists'
                )
            return [chosen]

        if node.type == "sync":
            matching = [c for c in outgoing if outcome and c.is_tagged(outcome)]
            defaults = [c for c in outgoing if c.is_unconditioned]
            if matching or defaults:
                return matching or defaults
            raise NoMatchingPath(
                f'Sync node "{node.display_label}" has no path for outcome "{outcome or "undecided"}"'
            )

        unconditioned = [c for c in outgoing if c.is_unconditioned]
        if unconditioned:
            return unconditioned
        if self.decision:
            matching = [c for c in outgoing if c.is_tagged(self.decision)]
            if matching:
                return matching
        raise NoMatchingPath(f'No outgoing path can fire from "{node.display_label}"')

    # -- bookkeeping ---------------------------------------------------

    def record(
        self,
        from_node: GraphNode | None,
        to_node: GraphNode | None,
        **fields: Any,
    ) -> models.WorkflowHistory:
        row = models.WorkflowHistory(
            instance_id=self.instance.id,
            from_node_id=UUID(from_node.id) if from_node else None,
            to_node_id=UUID(to_node.id) if to_node else None,
            handed_off_by=self.actor.id,
            handed_off_at=self.now,
            **fields,
        )
        self.db.add(row)
        self.history.append(row)
        return row

    def complete(self, step: models.WorkflowActiveStep) -> None:
        step.status = "completed"
        step.completed_at = self.now

    def create_step(self, node: GraphNode, lineage: Lineage) -> models.WorkflowActiveStep:
        step = models.WorkflowActiveStep(
            instance_id=self.instance.id,
            node_id=UUID(node.id),
            branch_id=lineage.branch_id,
            parent_branch_id=lineage.parent_branch_id,
            fork_group_id=lineage.fork_group_id,
            fork_node_id=lineage.fork_node_id,
            status="active",
            approvals=[],
            activated_at=self.now,
        )
        self.db.add(step)
        self.created.append(step)
        return step

    # -- routing -------------------------------------------------------

    def fire(
        self,
        step: models.WorkflowActiveStep,
        node: GraphNode,
        connections: list[GraphConnection],
        **history_fields: Any,
    ) -> list[GraphNode]:
        """Complete ``step`` and create successor steps for each firing connection."""

        self.complete(step)
        if history_fields.get("decision"):
            step.decision = history_fields["decision"]
        if not connections:
            self.record(node, None, **history_fields)
            self.db.flush()
            return []

        parent = Lineage.of(step)
        targets = [self.target_of(connection) for connection in connections]
        arrivals: list[tuple[models.WorkflowActiveStep, GraphNode]] = []

        if len(connections) > 1:
            group = uuid.uuid4().hex[:8]
            self.instance.has_parallel_paths = True
            for index, target in enumerate(targets, start=1):
                lineage = Lineage(
                    branch_id=f"{parent.branch_id}.{group}-{index}",
                    parent_branch_id=parent.branch_id,
                    fork_group_id=group,
                    fork_node_id=UUID(node.id),
                )
                self.record(node, target, **history_fields)
                arrivals.append((self.create_step(target, lineage), target))
        else:
            self.record(node, targets[0], **history_fields)
            arrivals.append((self.create_step(targets[0], parent), targets[0]))

        # every sibling exists before any of them lands, so joins see the whole fork
        self.db.flush()
        for new_step, target in arrivals:
            self.land(new_step, target)
        return targets

    def land(self, step: models.WorkflowActiveStep, node: GraphNode) -> None:
        self._hops += 1
        if self._hops > 4 * max(len(self.graph.nodes), 1):
            raise WorkflowStructureError("Automatic routing did not settle; check for conditional loops")

        if node.type == "end":
            self.complete(step)
            self.db.flush()
            return
        if node.type == "sync":
            self.join(step, node)
            return
        if node.type == "conditional":
            connections = self.select_connections(node)
            self.fire(step, node, connections, notes=f'Auto-routed through "{node.display_label}"')
            return
        if node.is_human:
            self.assign(step, node)

    def join(self, step: models.WorkflowActiveStep, sync: GraphNode) -> None:
        """Hold ``step`` at the sync until every sibling branch of its fork has arrived."""

        if step.fork_group_id is None:
            self.fire(
                step,
                sync,
                self.select_connections(sync, sync_outcome([self.decision])),
                notes="Passed through sync",
            )
            return

        step.status = "waiting"
        self.db.flush()

        group_steps = (
            self.db.query(models.WorkflowActiveStep)
            .filter(
                models.WorkflowActiveStep.instance_id == self.instance.id,
                models.WorkflowActiveStep.fork_group_id == step.fork_group_id,
            )
            .order_by(models.WorkflowActiveStep.activated_at)
            .all()
        )
        sync_id = UUID(sync.id)
        waiting_here = [s for s in group_steps if s.node_id == sync_id and s.status == "waiting"]
        arrived = {s.branch_id for s in waiting_here}
        siblings = {s.branch_id for s in group_steps}

        live = _live_steps(self.db, self.instance.id)
        for branch in siblings - arrived:
            prefix = f"{branch}."
            if any(s.branch_id == branch or s.branch_id.startswith(prefix) for s in live):
                logger.debug(
                    "Instance %s: branch %s waiting at sync %s for %s",
                    self.instance.id,
                    step.branch_id,
                    sync.id,
                    branch,
                )
                return

        for waiting in waiting_here:
            self.complete(waiting)
        outcome = sync_outcome(self.branch_decisions(group_steps, siblings))
        merged = self.create_step(sync, self.parent_lineage(step))
        merged.decision = {"all_approved": "approved", "any_rejected": "rejected"}.get(outcome)
        self.db.flush()
        logger.info(
            "Instance %s: joined %d branch(es) at sync %s (%s)",
            self.instance.id,
            len(waiting_here),
            sync.id,
            outcome or "no decisions",
        )

        # a fork re-entered from inside one of its own branches closes at the same sync
        outer_fork = merged.fork_node_id
        if outer_fork is not None and closing_sync(self.graph, str(outer_fork)) == sync.id:
            self.join(merged, sync)
            return
        self.fire(
            merged,
            sync,
            self.select_connections(sync, outcome),
            notes=f"Joined {len(waiting_here)} parallel branch(es)",
        )

    @staticmethod
    def branch_decisions(
        group_steps: list[models.WorkflowActiveStep],
        branches: set[str],
    ) -> list[str | None]:
        """Latest recorded decision on each branch; ``group_steps`` is in activation order."""

        latest: dict[str, str] = {}
        for candidate in group_steps:
            if candidate.branch_id in branches and candidate.decision is not None:
                latest[candidate.branch_id] = candidate.decision
        return [latest.get(branch) for branch in sorted(branches)]

    def parent_lineage(self, step: models.WorkflowActiveStep) -> Lineage:
        parent_branch = step.parent_branch_id or MAIN_BRANCH
        if parent_branch == MAIN_BRANCH:
            return Lineage()
        ancestor = (
            self.db.query(models.WorkflowActiveStep)
            .filter(
                models.WorkflowActiveStep.instance_id == self.instance.id,
                models.WorkflowActiveStep.branch_id == parent_branch,
            )
            .order_by(models.WorkflowActiveStep.activated_at.desc())
            .first()
        )
        if ancestor is None:
            raise WorkflowStructureError(
                "Parent branch of a joined fork has no recorded steps",
                branch_id=parent_branch,
            )
        return Lineage.of(ancestor)

    # -- assignment ----------------------------------------------------

    def requested_assignee(self, node: GraphNode) -> UUID | None:
        if self.assignment is None:
            return None
        if isinstance(self.assignment, Mapping):
            chosen = self.assignment.get(node.id)
            if chosen is None and node.key:
                chosen = self.assignment.get(node.key)
            return _as_uuid(chosen) if chosen else None
        return _as_uuid(self.assignment)

    def assign(self, step: models.WorkflowActiveStep, node: GraphNode) -> None:
        chosen = self.requested_assignee(node)
        if chosen is not None:
            ensure_assignable(self.db, self.instance, node, chosen)
        else:
            preassigned = (
                self.db.query(models.WorkflowNodeAssignment.user_id)
                .filter(
                    models.WorkflowNodeAssignment.instance_id == self.instance.id,
                    models.WorkflowNodeAssignment.node_id == UUID(node.id),
                )
                .all()
            )
            if len(preassigned) == 1:
                chosen = preassigned[0].user_id
        if chosen is None:
            return
        step.assigned_user_id = chosen
        _notify_assignment(self.db, self.instance, node, chosen)
        self.assigned.append((chosen, node.display_label))

    # -- instance state ------------------------------------------------

    def settle_instance(self) -> None:
        self.db.flush()
        live = _live_steps(self.db, self.instance.id)
        if not live:
            self.instance.status = "completed"
            self.instance.completed_at = self.now
            self.instance.current_node_id = None
            project = self.instance.project
            if project is not None:
                project.status = "complete"
                project.completed_at = self.now
            logger.info("Workflow %s completed", self.instance.id)
        elif len(live) == 1:
            self.instance.current_node_id = live[0].node_id
        else:
            self.instance.current_node_id = None
        self.db.flush()

    def result(self, targets: list[GraphNode]) -> ProgressResult:
        return ProgressResult(
            instance=self.instance,
            next_nodes=targets,
            new_active_steps=[s for s in self.created if s.status == "active"],
            history=list(self.history),
            assigned=list(self.assigned),
        )


def _notify_assignment(
    db: Session,
    instance: models.WorkflowInstance,
    node: GraphNode,
    user_id: UUID,
) -> None:
    project_name = instance.project.name if instance.project is not None else "a project"
    db.add(
        models.Notification(
            user_id=user_id,
            message=f'You have been assigned "{node.display_label}" on {project_name}',
            category="workflow",
            meta={"instance_id": str(instance.id), "node_id": node.id},
        )
    )


def ensure_assignable(
    db: Session,
    instance: models.WorkflowInstance,
    node: GraphNode,
    user_id: UUID,
) -> EligibilityContext:
    user = db.get(models.User, user_id)
    if user is None:
        raise WorkflowNotFound("Assigned user not found", user_id=str(user_id))
    context = build_eligibility_context(db, user, instance.id)
    if not is_eligible(node, context):
        raise IneligibleAssignment(
            f'User is not eligible for "{node.display_label}" and has no assignment to it',
            node_id=node.id,
            user_id=str(user_id),
        )
    return context


def _resolve_step(
    db: Session,
    instance: models.WorkflowInstance,
    active_step_id: UUID | None,
) -> models.WorkflowActiveStep:
    if active_step_id is not None:
        step = (
            db.query(models.WorkflowActiveStep)
            .filter(
                models.WorkflowActiveStep.id == active_step_id,
                models.WorkflowActiveStep.instance_id == instance.id,
            )
            .one_or_none()
        )
        if step is None or step.status != "active":
            raise StepNotFound(
                "Active step not found or already completed",
                active_step_id=str(active_step_id),
            )
        return step

    active = [s for s in _live_steps(db, instance.id) if s.status == "active"]
    if len(active) == 1:
        return active[0]
    if instance.current_node_id is not None:
        for step in active:
            if step.node_id == instance.current_node_id:
                return step
    if not active:
        raise StepNotFound("Workflow has no active step to progress")
    raise StepNotFound("Several branches are active; an active_step_id is required")


def _ensure_actor(step: models.WorkflowActiveStep, node: GraphNode, context: EligibilityContext) -> None:
    if context.is_superadmin or step.assigned_user_id == context.user_id:
        return
    if not is_eligible(node, context):
        raise IneligibleActor(f'You are not eligible to act on "{node.display_label}"', node_id=node.id)


def progress_step(
    db: Session,
    instance_id: UUID,
    actor: models.User,
    *,
    active_step_id: UUID | None = None,
    decision: str | None = None,
    form_data: Mapping[str, Any] | None = None,
    assignment: AssignmentInput = None,
    feedback: str | None = None,
    form_response_id: UUID | None = None,
    notes: str | None = None,
    target_node_id: UUID | None = None,
    out_of_order: bool = False,
    handed_off_to: UUID | None = None,
) -> ProgressResult:
    """Complete one active step and advance the instance frontier.

    The instance row is locked for the whole read-modify-write so two branches
    finishing together cannot both promote past the same sync node. The caller
    owns the transaction and commits on success.
    """

    if decision is not None and decision not in DECISIONS:
        raise DecisionRequired(f'Unknown decision "{decision}"; expected approved or rejected')

    instance = get_instance(db, instance_id, lock=True)
    if instance.status != "active":
        raise InstanceNotActive(f"Workflow instance is {instance.status}")

    graph = load_graph(db, instance.template_id)
    step = _resolve_step(db, instance, active_step_id)
    run = _Progression(
        db,
        instance,
        graph,
        actor,
        decision=decision,
        form_data=form_data,
        assignment=assignment,
    )
    node = run.node_of(step)
    _ensure_actor(step, node, build_eligibility_context(db, actor, instance.id))

    history_fields: dict[str, Any] = {
        "decision": decision,
        "feedback": feedback,
        "form_response_id": form_response_id,
        "form_data": dict(form_data) if form_data else None,
        "notes": notes,
        "out_of_order": out_of_order,
        "handed_off_to": handed_off_to,
    }

    if target_node_id is not None:
        target = graph.node(str(target_node_id))
        if target is None:
            raise WorkflowNotFound("Handoff target node is not part of this workflow", node_id=str(target_node_id))
        connections = [GraphConnection(id="handoff", source=node.id, target=target.id)]
    else:
        settings = node.settings
        if (
            node.type == "approval"
            and decision == "approved"
            and isinstance(settings, ApprovalSettings)
            and settings.required_approvals > 1
        ):
            approvals = list(step.approvals or [])
            if str(actor.id) in approvals:
                raise AlreadyApproved("You have already approved this step")
            approvals.append(str(actor.id))
            step.approvals = approvals
            if len(approvals) < settings.required_approvals:
                partial = dict(history_fields)
                partial["notes"] = notes or f"Approval {len(approvals)} of {settings.required_approvals} recorded"
                run.record(node, None, **partial)
                db.flush()
                return run.result([])
        connections = run.select_connections(node)

    targets = run.fire(step, node, connections, **history_fields)
    run.settle_instance()
    logger.info(
        "Instance %s: %s progressed %s -> %s%s",
        instance.id,
        actor.id,
        node.display_label,
        ", ".join(t.display_label for t in targets) or "(branch end)",
        " [out of order]" if out_of_order else "",
    )
    return run.result(targets)


def is_out_of_order_target(
    db: Session,
    instance_id: UUID,
    target_node_id: UUID,
    active_step_id: UUID | None = None,
) -> bool:
    """Whether handing off to ``target_node_id`` skips the structural successors."""

    instance = get_instance(db, instance_id)
    graph = load_graph(db, instance.template_id)
    step = _resolve_step(db, instance, active_step_id)
    successors = {c.target for c in graph.outgoing(str(step.node_id))}
    return str(target_node_id) not in successors


def handoff(
    db: Session,
    instance_id: UUID,
    actor: models.User,
    target_node_id: UUID,
    *,
    active_step_id: UUID | None = None,
    handed_off_to: UUID | None = None,
    form_response_id: UUID | None = None,
    notes: str | None = None,
    out_of_order: bool = False,
) -> ProgressResult:
    """Explicit handoff to a chosen node; the caller has already checked skip rights."""

    return progress_step(
        db,
        instance_id,
        actor,
        active_step_id=active_step_id,
        assignment=handed_off_to,
        form_response_id=form_response_id,
        notes=notes,
        target_node_id=target_node_id,
        out_of_order=out_of_order,
        handed_off_to=handed_off_to,
    )


def cancel_workflow(db: Session, instance_id: UUID, actor: models.User) -> models.WorkflowInstance:
    instance = get_instance(db, instance_id, lock=True)
    if instance.status != "active":
        raise InstanceNotActive(f"Workflow instance is {instance.status}")
    now = _now()
    for step in _live_steps(db, instance.id):
        step.status = "completed"
        step.completed_at = now
    db.add(
        models.WorkflowHistory(
            instance_id=instance.id,
            from_node_id=instance.current_node_id,
            to_node_id=None,
            handed_off_by=actor.id,
            notes="Workflow cancelled",
            handed_off_at=now,
        )
    )
    instance.status = "cancelled"
    instance.completed_at = now
    instance.current_node_id = None
    db.flush()
    logger.info("Workflow %s cancelled by %s", instance.id, actor.id)
    return instance


def assign_step(
    db: Session,
    instance_id: UUID,
    step_id: UUID,
    user_id: UUID,
) -> models.WorkflowActiveStep:
    """Set the assignee of a live step, subject to eligibility."""

    instance = get_instance(db, instance_id, lock=True)
    step = (
        db.query(models.WorkflowActiveStep)
        .filter(
            models.WorkflowActiveStep.id == step_id,
            models.WorkflowActiveStep.instance_id == instance.id,
            models.WorkflowActiveStep.status.in_(LIVE_STATUSES),
        )
        .one_or_none()
    )
    if step is None:
        raise StepNotFound("Active step not found or already completed", active_step_id=str(step_id))
    graph = load_graph(db, instance.template_id)
    node = graph.node(str(step.node_id)) if step.node_id else None
    if node is None:
        raise WorkflowStructureError("Active step references a node that no longer exists", step_id=str(step.id))
    ensure_assignable(db, instance, node, user_id)
    step.assigned_user_id = user_id
    _notify_assignment(db, instance, node, user_id)
    db.flush()
    return step


def assign_node(
    db: Session,
    instance_id: UUID,
    node_id: UUID,
    user_id: UUID,
    assigned_by: models.User,
) -> models.WorkflowNodeAssignment:
    """Pre-assign ``user_id`` to a node the frontier has not necessarily reached yet."""

    instance = get_instance(db, instance_id)
    graph = load_graph(db, instance.template_id)
    node = graph.node(str(node_id))
    if node is None:
        raise WorkflowNotFound("Node is not part of this workflow", node_id=str(node_id))
    if not node.is_human:
        raise WorkflowStateError(f'Node "{node.display_label}" does not take assignees')
    if db.get(models.User, user_id) is None:
        raise WorkflowNotFound("User not found", user_id=str(user_id))

    existing = (
        db.query(models.WorkflowNodeAssignment)
        .filter(
            models.WorkflowNodeAssignment.instance_id == instance.id,
            models.WorkflowNodeAssignment.node_id == node_id,
            models.WorkflowNodeAssignment.user_id == user_id,
        )
        .one_or_none()
    )
    if existing is not None:
        return existing
    assignment = models.WorkflowNodeAssignment(
        instance_id=instance.id,
        node_id=node_id,
        user_id=user_id,
        assigned_by=assigned_by.id,
        assigned_at=_now(),
    )
    db.add(assignment)
    db.flush()
    return assignment


def unassign_node(db: Session, instance_id: UUID, assignment_id: UUID) -> None:
    assignment = (
        db.query(models.WorkflowNodeAssignment)
        .filter(
            models.WorkflowNodeAssignment.id == assignment_id,
            models.WorkflowNodeAssignment.instance_id == instance_id,
        )
        .one_or_none()
    )
    if assignment is None:
        raise WorkflowNotFound("Node assignment not found", assignment_id=str(assignment_id))
    db.delete(assignment)
    db.flush()


def list_node_assignments(db: Session, instance_id: UUID) -> list[models.WorkflowNodeAssignment]:
    get_instance(db, instance_id)
    return (
        db.query(models.WorkflowNodeAssignment)
        .filter(models.WorkflowNodeAssignment.instance_id == instance_id)
        .order_by(models.WorkflowNodeAssignment.assigned_at)
        .all()
    )


def get_active_steps(db: Session, instance_id: UUID) -> list[models.WorkflowActiveStep]:
    get_instance(db, instance_id)
    return [s for s in _live_steps(db, instance_id) if s.status == "active"]


def get_all_active_and_waiting_steps(db: Session, instance_id: UUID) -> list[models.WorkflowActiveStep]:
    get_instance(db, instance_id)
    return _live_steps(db, instance_id)


def is_workflow_complete(db: Session, instance_id: UUID) -> bool:
    get_instance(db, instance_id)
    return not _live_steps(db, instance_id)


def get_next_available_nodes(db: Session, instance_id: UUID) -> list[GraphNode]:
    """Structural successors of every active step, for previews; eligibility is ignored."""

    instance = get_instance(db, instance_id)
    graph = load_graph(db, instance.template_id)
    current = [s.node_id for s in _live_steps(db, instance_id) if s.status == "active" and s.node_id]
    if not current and instance.current_node_id is not None:
        current = [instance.current_node_id]

    seen: set[str] = set()
    nodes: list[GraphNode] = []
    for node_id in current:
        for connection in graph.outgoing(str(node_id)):
            target = graph.node(connection.target)
            if target is not None and target.id not in seen:
                seen.add(target.id)
                nodes.append(target)
    return nodes


def get_history(db: Session, instance_id: UUID) -> list[models.WorkflowHistory]:
    get_instance(db, instance_id)
    return (
        db.query(models.WorkflowHistory)
        .filter(models.WorkflowHistory.instance_id == instance_id)
        .order_by(models.WorkflowHistory.handed_off_at, models.WorkflowHistory.id)
        .all()
    )


def get_user_pending_steps(db: Session, user: models.User) -> list[models.WorkflowActiveStep]:
    """Active steps on task nodes the user is assigned to or eligible for."""

    steps = (
        db.query(models.WorkflowActiveStep)
        .join(models.WorkflowInstance, models.WorkflowInstance.id == models.WorkflowActiveStep.instance_id)
        .filter(
            models.WorkflowInstance.status == "active",
            models.WorkflowActiveStep.status == "active",
        )
        .order_by(models.WorkflowActiveStep.activated_at)
        .all()
    )
    if not steps:
        return []

    # pre-assignments are scoped to their instance
    assigned = {
        (row.instance_id, row.node_id)
        for row in db.query(models.WorkflowNodeAssignment.instance_id, models.WorkflowNodeAssignment.node_id)
        .filter(models.WorkflowNodeAssignment.user_id == user.id)
        .all()
    }
    context = build_eligibility_context(db, user)

    graphs: dict[UUID, WorkflowGraph] = {}
    pending = []
    for step in steps:
        if step.assigned_user_id is not None:
            if step.assigned_user_id == user.id:
                pending.append(step)
            continue
        template_id = step.instance.template_id
        if template_id not in graphs:
            graphs[template_id] = load_graph(db, template_id)
        node = graphs[template_id].node(str(step.node_id)) if step.node_id else None
        if node is None or not node.is_human:
            continue
        if (step.instance_id, step.node_id) in assigned or structurally_eligible(node, context):
            pending.append(step)
    return pending


def get_user_pipeline(db: Session, user: models.User) -> list[models.WorkflowNodeAssignment]:
    """Pre-assignments on running instances whose node has not been completed yet."""

    assignments = (
        db.query(models.WorkflowNodeAssignment)
        .join(models.WorkflowInstance, models.WorkflowInstance.id == models.WorkflowNodeAssignment.instance_id)
        .filter(
            models.WorkflowNodeAssignment.user_id == user.id,
            models.WorkflowInstance.status == "active",
        )
        .order_by(models.WorkflowNodeAssignment.assigned_at)
        .all()
    )
    pipeline = []
    for assignment in assignments:
        done = (
            db.query(models.WorkflowActiveStep.id)
            .filter(
                models.WorkflowActiveStep.instance_id == assignment.instance_id,
                models.WorkflowActiveStep.node_id == assignment.node_id,
                models.WorkflowActiveStep.status == "completed",
            )
            .first()
        )
        if done is None:
            pipeline.append(assignment)
    return pipeline
