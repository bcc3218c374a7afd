"""In-memory graph model shared by the template validator and the execution engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Mapping, Sequence, Union

from .. import models

# purpose: typed view over workflow nodes and connections, independent of storage
# inputs: ORM node/connection rows or authoring payload dictionaries
# outputs: WorkflowGraph with adjacency lookups and typed node settings
# status: active

NODE_TYPES = (
    "start",
    "end",
    "role",
    "department",
    "approval",
    "conditional",
    "form",
    "sync",
)

# node types a person acts on; the rest are routed by the engine itself
HUMAN_NODE_TYPES = frozenset({"role", "department", "approval", "form"})

DECISIONS = ("approved", "rejected")

# tags a sync node's outgoing edges may carry to route on the merged branches' decisions
SYNC_OUTCOMES = ("all_approved", "any_rejected")


def sync_outcome(decisions: Iterable[str | None]) -> str | None:
    """Aggregate branch decisions into a sync outcome; None when no branch decided."""

    recorded = [d for d in decisions if d]
    if not recorded:
        return None
    return "any_rejected" if "rejected" in recorded else "all_approved"


@dataclass(frozen=True, slots=True)
class ConditionClause:
    field: str | None = None
    operator: str = "equals"
    values: tuple[str, ...] = ()
    target: str | None = None


@dataclass(frozen=True, slots=True)
class ApprovalSettings:
    required_approvals: int = 1
    allow_feedback: bool = True
    allow_send_back: bool = False


@dataclass(frozen=True, slots=True)
class ConditionalSettings:
    condition_type: str = "form_value"
    conditions: tuple[ConditionClause, ...] = ()
    source_form_node: str | None = None
    source_field: str | None = None


@dataclass(frozen=True, slots=True)
class FormSettings:
    fields: tuple[dict[str, Any], ...] = ()
    form_name: str | None = None
    is_draft: bool = False
    allow_attachments: bool = False


@dataclass(frozen=True, slots=True)
class DepartmentSettings:
    department_id: str | None = None


NodeSettings = Union[ApprovalSettings, ConditionalSettings, FormSettings, DepartmentSettings, None]


def _pick(raw: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return default


def _parse_clause(raw: Mapping[str, Any]) -> ConditionClause:
    values = raw.get("values")
    if values is None:
        single = raw.get("value")
        values = [] if single is None else [single]
    elif not isinstance(values, (list, tuple)):
        values = [values]
    return ConditionClause(
        field=_pick(raw, "field", "field_id", "fieldId"),
        operator=str(_pick(raw, "operator", "condition", default="equals")),
        values=tuple(str(v) for v in values),
        target=_pick(raw, "target", "handle", "source_handle", "sourceHandle"),
    )


def parse_settings(
    node_type: str,
    raw: Mapping[str, Any] | None,
    required_entity_id: str | None = None,
) -> NodeSettings:
    """Turn a stored settings bag into the variant for ``node_type``."""

    raw = raw or {}
    if node_type == "approval":
        required = _pick(raw, "required_approvals", "requiredApprovals", default=1)
        return ApprovalSettings(
            required_approvals=max(int(required), 1),
            allow_feedback=bool(_pick(raw, "allow_feedback", "allowFeedback", default=True)),
            allow_send_back=bool(_pick(raw, "allow_send_back", "allowSendBack", default=False)),
        )
    if node_type == "conditional":
        clauses = _pick(raw, "conditions", default=[]) or []
        return ConditionalSettings(
            condition_type=str(_pick(raw, "condition_type", "conditionType", default="form_value")),
            conditions=tuple(_parse_clause(c) for c in clauses if isinstance(c, Mapping)),
            source_form_node=_pick(raw, "source_form_node", "sourceFormNode"),
            source_field=_pick(raw, "source_field", "sourceField"),
        )
    if node_type == "form":
        fields = _pick(raw, "fields", "formFields", default=[]) or []
        return FormSettings(
            fields=tuple(dict(f) for f in fields if isinstance(f, Mapping)),
            form_name=_pick(raw, "form_name", "formName"),
            is_draft=bool(_pick(raw, "is_draft", "isDraftForm", default=False)),
            allow_attachments=bool(_pick(raw, "allow_attachments", "allowAttachments", default=False)),
        )
    if node_type == "department":
        department_id = _pick(raw, "department_id", "departmentId", default=required_entity_id)
        return DepartmentSettings(department_id=str(department_id) if department_id else None)
    return None


def settings_to_dict(settings: NodeSettings) -> dict[str, Any]:
    if settings is None:
        return {}
    payload = asdict(settings)
    if isinstance(settings, ConditionalSettings):
        payload["conditions"] = [
            {
                "field": clause.field,
                "operator": clause.operator,
                "values": list(clause.values),
                "target": clause.target,
            }
            for clause in settings.conditions
        ]
    if isinstance(settings, FormSettings):
        payload["fields"] = [dict(f) for f in settings.fields]
    return payload


@dataclass(frozen=True, slots=True)
class ConnectionCondition:
    label: str | None = None
    condition_type: str | None = None
    condition_value: str | None = None
    decision: str | None = None
    source_handle: str | None = None

    @property
    def is_routing(self) -> bool:
        """Edges tagged with a decision or condition value choose a path, they never fork."""
        return bool(self.decision or self.condition_value)

    @classmethod
    def from_payload(cls, raw: Mapping[str, Any] | None) -> "ConnectionCondition | None":
        if not raw:
            return None
        condition = cls(
            label=_pick(raw, "label"),
            condition_type=_pick(raw, "condition_type", "conditionType"),
            condition_value=_pick(raw, "condition_value", "conditionValue"),
            decision=_pick(raw, "decision"),
            source_handle=_pick(raw, "source_handle", "sourceHandle"),
        )
        if not any(asdict(condition).values()):
            return None
        return condition

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass(frozen=True, slots=True)
class GraphNode:
    id: str
    type: str
    label: str = ""
    key: str | None = None
    required_entity_id: str | None = None
    settings: NodeSettings = None

    @property
    def display_label(self) -> str:
        return self.label or self.key or self.id

    @property
    def is_human(self) -> bool:
        return self.type in HUMAN_NODE_TYPES


@dataclass(frozen=True, slots=True)
class GraphConnection:
    id: str
    source: str
    target: str
    condition: ConnectionCondition | None = None

    @property
    def decision(self) -> str | None:
        return self.condition.decision if self.condition else None

    @property
    def condition_value(self) -> str | None:
        return self.condition.condition_value if self.condition else None

    @property
    def source_handle(self) -> str | None:
        return self.condition.source_handle if self.condition else None

    @property
    def is_unconditioned(self) -> bool:
        return self.condition is None or not self.condition.is_routing

    def is_tagged(self, value: str) -> bool:
        return self.decision == value or self.condition_value == value


@dataclass
class WorkflowGraph:
    """Nodes and connections with adjacency lookups; carries no behaviour."""

    nodes: list[GraphNode] = field(default_factory=list)
    connections: list[GraphConnection] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._by_id = {node.id: node for node in self.nodes}
        self._outgoing: dict[str, list[GraphConnection]] = {}
        self._incoming: dict[str, list[GraphConnection]] = {}
        for connection in self.connections:
            self._outgoing.setdefault(connection.source, []).append(connection)
            self._incoming.setdefault(connection.target, []).append(connection)

    def node(self, node_id: str) -> GraphNode | None:
        return self._by_id.get(node_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._by_id

    def outgoing(self, node_id: str) -> list[GraphConnection]:
        return list(self._outgoing.get(node_id, []))

    def incoming(self, node_id: str) -> list[GraphConnection]:
        return list(self._incoming.get(node_id, []))

    def nodes_of_type(self, node_type: str) -> list[GraphNode]:
        return [node for node in self.nodes if node.type == node_type]

    def start_node(self) -> GraphNode | None:
        starts = self.nodes_of_type("start")
        return starts[0] if len(starts) == 1 else None

    def label_of(self, node_id: str) -> str:
        node = self.node(node_id)
        return node.display_label if node else node_id

    @classmethod
    def from_models(
        cls,
        nodes: Sequence[models.WorkflowNode],
        connections: Sequence[models.WorkflowConnection],
    ) -> "WorkflowGraph":
        graph_nodes = [
            GraphNode(
                id=str(node.id),
                type=node.node_type,
                label=node.label or "",
                key=node.node_key,
                required_entity_id=str(node.required_entity_id) if node.required_entity_id else None,
                settings=parse_settings(
                    node.node_type,
                    node.settings,
                    str(node.required_entity_id) if node.required_entity_id else None,
                ),
            )
            for node in nodes
        ]
        graph_connections = [
            GraphConnection(
                id=str(conn.id),
                source=str(conn.from_node_id),
                target=str(conn.to_node_id),
                condition=ConnectionCondition.from_payload(conn.condition),
            )
            for conn in connections
        ]
        return cls(graph_nodes, graph_connections)

    @classmethod
    def from_template(cls, template: models.WorkflowTemplate) -> "WorkflowGraph":
        return cls.from_models(template.nodes, template.connections)

    @classmethod
    def from_payload(
        cls,
        nodes: Iterable[Mapping[str, Any]],
        connections: Iterable[Mapping[str, Any]],
    ) -> "WorkflowGraph":
        """Build a graph keyed by the author's node keys."""

        graph_nodes = []
        for raw in nodes:
            key = str(_pick(raw, "key", "id"))
            node_type = str(_pick(raw, "type", "node_type", default=""))
            entity = _pick(raw, "required_entity_id", "entity_id")
            entity = str(entity) if entity else None
            graph_nodes.append(
                GraphNode(
                    id=key,
                    type=node_type,
                    label=str(_pick(raw, "label", default="")),
                    key=key,
                    required_entity_id=entity,
                    settings=parse_settings(node_type, raw.get("settings"), entity),
                )
            )
        graph_connections = []
        for index, raw in enumerate(connections):
            graph_connections.append(
                GraphConnection(
                    id=str(_pick(raw, "id", default=f"connection-{index}")),
                    source=str(_pick(raw, "source", "from", "from_node")),
                    target=str(_pick(raw, "target", "to", "to_node")),
                    condition=ConnectionCondition.from_payload(raw.get("condition")),
                )
            )
        return cls(graph_nodes, graph_connections)
