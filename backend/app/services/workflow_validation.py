"""Structural validation for workflow templates.

Errors block activation; warnings are advisory. The checks never mutate the
graph and never try to repair it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from .workflow_graph import GraphNode, WorkflowGraph

# purpose: reject structurally unsound approval graphs before they can run
# inputs: WorkflowGraph built from stored rows or an authoring payload
# outputs: ValidationResult listing node-identified errors and warnings
# status: active


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    type: Literal["error", "warning"]
    code: str
    message: str
    node_id: str | None = None
    node_key: str | None = None
    node_label: str | None = None

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "code": self.code,
            "message": self.message,
            "node_id": self.node_id,
            "node_key": self.node_key,
            "node_label": self.node_label,
        }


@dataclass
class ValidationResult:
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "errors": [issue.to_dict() for issue in self.errors],
            "warnings": [issue.to_dict() for issue in self.warnings],
        }


def _error(code: str, message: str, node: GraphNode | None = None) -> ValidationIssue:
    return ValidationIssue(
        type="error",
        code=code,
        message=message,
        node_id=node.id if node else None,
        node_key=node.key if node else None,
        node_label=node.label if node else None,
    )


def _warning(code: str, message: str, node: GraphNode | None = None) -> ValidationIssue:
    return ValidationIssue(
        type="warning",
        code=code,
        message=message,
        node_id=node.id if node else None,
        node_key=node.key if node else None,
        node_label=node.label if node else None,
    )


def validate_workflow(graph: WorkflowGraph) -> ValidationResult:
    """Run every structural check against ``graph``."""

    result = ValidationResult()
    if not graph.nodes:
        result.errors.append(_error("NO_NODES", "Workflow must have at least one node"))
        return result

    starts = graph.nodes_of_type("start")
    if not starts:
        result.errors.append(_error("NO_START", "Workflow must have a Start node"))
    elif len(starts) > 1:
        result.errors.append(
            _error("MULTIPLE_STARTS", "Workflow can only have one Start node", starts[1])
        )

    if not graph.nodes_of_type("end"):
        result.warnings.append(
            _warning("NO_END", "Workflow has no End node. The workflow may not terminate properly.")
        )

    result.errors.extend(_dangling_connections(graph))

    for node in _orphaned_nodes(graph):
        result.warnings.append(
            _warning(
                "ORPHANED_NODE",
                f'Node "{node.label or "Unknown"}" is not connected to the workflow',
                node,
            )
        )

    result.errors.extend(_parallel_branch_errors(graph))
    result.errors.extend(_cycle_errors(graph))
    result.errors.extend(_approval_errors(graph))
    result.warnings.extend(_sync_warnings(graph))

    conditional_errors, conditional_warnings = _conditional_issues(graph)
    result.errors.extend(conditional_errors)
    result.warnings.extend(conditional_warnings)
    return result


def _dangling_connections(graph: WorkflowGraph) -> list[ValidationIssue]:
    errors = []
    for connection in graph.connections:
        missing = [end for end in (connection.source, connection.target) if end not in graph]
        if missing:
            errors.append(
                _error(
                    "DANGLING_CONNECTION",
                    f"Connection {connection.id} references unknown node(s): {', '.join(missing)}",
                    graph.node(connection.source) or graph.node(connection.target),
                )
            )
    return errors


def _orphaned_nodes(graph: WorkflowGraph) -> list[GraphNode]:
    orphans = []
    for node in graph.nodes:
        if node.type == "start":
            if not graph.outgoing(node.id):
                orphans.append(node)
        elif node.type == "end":
            if not graph.incoming(node.id):
                orphans.append(node)
        elif not graph.outgoing(node.id) and not graph.incoming(node.id):
            orphans.append(node)
    return orphans


def _is_fork(graph: WorkflowGraph, node_id: str) -> bool:
    return sum(1 for c in graph.outgoing(node_id) if c.is_unconditioned) > 1


def _first_sync_on_path(
    graph: WorkflowGraph,
    node_id: str,
    visited: set[tuple[str, int]],
    depth: int = 0,
) -> str | None:
    """Follow a branch to the sync that closes it; syncs closing nested forks are walked past."""

    if (node_id, depth) in visited:
        return None
    visited.add((node_id, depth))
    node = graph.node(node_id)
    if node is None:
        return None
    if node.type == "sync":
        if depth == 0:
            return node.id
        depth -= 1
    elif node.type == "end":
        return None
    if _is_fork(graph, node_id):
        depth += 1
    for connection in graph.outgoing(node_id):
        found = _first_sync_on_path(graph, connection.target, visited, depth)
        if found:
            return found
    return None


def closing_sync(graph: WorkflowGraph, fork_id: str) -> str | None:
    """Sync node where the parallel branches leaving ``fork_id`` merge, if they reach one."""

    for connection in graph.outgoing(fork_id):
        if connection.is_unconditioned:
            found = _first_sync_on_path(graph, connection.target, set())
            if found:
                return found
    return None


def _branches_merge_at_sync(graph: WorkflowGraph, fork: GraphNode) -> tuple[bool, str]:
    parallel = [c for c in graph.outgoing(fork.id) if c.is_unconditioned]
    if len(parallel) < 2:
        return True, ""

    # routing edges leaving the fork take no part in the parallel split
    branch_syncs: dict[str, str | None] = {}
    for connection in parallel:
        branch_syncs[connection.target] = _first_sync_on_path(graph, connection.target, set())

    sync_ids = {sync for sync in branch_syncs.values() if sync}
    if not sync_ids:
        return False, "No Sync node found on any branch."
    if len(sync_ids) > 1:
        return False, "Branches merge at different Sync nodes."

    unsynced = [graph.label_of(target) for target, sync in branch_syncs.items() if not sync]
    if unsynced:
        return False, f'Branch starting at "{", ".join(unsynced)}" does not reach a Sync node.'
    return True, ""


def _parallel_branch_errors(graph: WorkflowGraph) -> list[ValidationIssue]:
    errors = []
    for node in graph.nodes:
        parallel = [c for c in graph.outgoing(node.id) if c.is_unconditioned]
        if len(parallel) < 2:
            continue
        merges, reason = _branches_merge_at_sync(graph, node)
        if not merges:
            errors.append(
                _error(
                    "PARALLEL_WITHOUT_SYNC",
                    f'Parallel branches from "{node.label or "node"}" must merge at a Sync node. {reason}',
                    node,
                )
            )
    return errors


def _cycle_errors(graph: WorkflowGraph) -> list[ValidationIssue]:
    """Depth-first search for back-edges, skipping rejection (send-back) loops."""

    errors: list[ValidationIssue] = []
    visited: set[str] = set()
    on_stack: set[str] = set()
    path: list[str] = []

    def visit(node_id: str) -> bool:
        visited.add(node_id)
        on_stack.add(node_id)
        path.append(node_id)
        for connection in graph.outgoing(node_id):
            if connection.is_tagged("rejected") or connection.is_tagged("any_rejected"):
                continue
            target = connection.target
            if target not in graph:
                continue
            if target not in visited:
                if visit(target):
                    return True
            elif target in on_stack:
                cycle = path[path.index(target):]
                labels = [graph.label_of(item) for item in cycle]
                errors.append(
                    _error(
                        "CYCLE_DETECTED",
                        f"Workflow contains a cycle: {' → '.join(labels)} → {labels[0]}. "
                        "Cycles are only allowed via rejection paths.",
                        graph.node(target),
                    )
                )
                return True
        path.pop()
        on_stack.discard(node_id)
        return False

    for node in graph.nodes:
        if node.id not in visited:
            # a reported cycle aborts the walk; reset the stack before the next root
            if visit(node.id):
                on_stack.clear()
                path.clear()
    return errors


def _approval_errors(graph: WorkflowGraph) -> list[ValidationIssue]:
    errors = []
    for node in graph.nodes_of_type("approval"):
        outgoing = graph.outgoing(node.id)
        label = node.label or "node"
        if not outgoing:
            errors.append(
                _error(
                    "APPROVAL_NO_EDGES",
                    f'Approval node "{label}" has no outgoing connections',
                    node,
                )
            )
            continue
        has_approved = any(c.is_tagged("approved") for c in outgoing)
        if not has_approved and len(outgoing) > 1:
            errors.append(
                _error(
                    "APPROVAL_NO_APPROVED_PATH",
                    f'Approval node "{label}" has no "Approved" path configured',
                    node,
                )
            )
    return errors


def _sync_warnings(graph: WorkflowGraph) -> list[ValidationIssue]:
    warnings = []
    for node in graph.nodes_of_type("sync"):
        label = node.label or "node"
        incoming = graph.incoming(node.id)
        if len(incoming) < 2:
            warnings.append(
                _warning(
                    "SYNC_SINGLE_BRANCH",
                    f'Sync node "{label}" has only {len(incoming)} incoming branch(es). '
                    "Sync nodes are typically used to merge 2+ parallel branches.",
                    node,
                )
            )
        if not graph.outgoing(node.id):
            warnings.append(
                _warning(
                    "SYNC_NO_OUTPUT",
                    f'Sync node "{label}" has no outgoing connection. '
                    "The workflow cannot continue after this point.",
                    node,
                )
            )
    return warnings


def _conditional_issues(graph: WorkflowGraph) -> tuple[list[ValidationIssue], list[ValidationIssue]]:
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []
    for node in graph.nodes_of_type("conditional"):
        label = node.label or "node"
        outgoing = graph.outgoing(node.id)
        if not outgoing:
            errors.append(
                _error(
                    "CONDITIONAL_NO_OUTPUT",
                    f'Conditional node "{label}" has no outgoing connections. The workflow cannot continue.',
                    node,
                )
            )
            continue
        has_default = any(c.is_unconditioned for c in outgoing)
        conditioned = [c for c in outgoing if not c.is_unconditioned]
        if not conditioned:
            warnings.append(
                _warning(
                    "CONDITIONAL_NO_CONDITIONS",
                    f'Conditional node "{label}" has no condition-based edges. '
                    "All paths will be treated as default.",
                    node,
                )
            )
        elif not has_default and len(conditioned) < 2:
            warnings.append(
                _warning(
                    "CONDITIONAL_MISSING_DEFAULT",
                    f'Conditional node "{label}" may not handle all cases. '
                    "Consider adding a default path or additional conditions.",
                    node,
                )
            )
    return errors, warnings
