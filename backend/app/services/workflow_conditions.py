"""Conditional-node routing against submitted form data."""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from .workflow_graph import (
    ConditionClause,
    ConditionalSettings,
    GraphConnection,
    GraphNode,
)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip().lower()


def _as_number(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _lookup(form_data: Mapping[str, Any], field: str | None) -> Any:
    if not field:
        return None
    if field in form_data:
        return form_data[field]
    # nested payloads are addressed with dotted paths, e.g. "budget.total"
    current: Any = form_data
    for part in field.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current


def clause_matches(clause: ConditionClause, form_data: Mapping[str, Any]) -> bool:
    actual = _lookup(form_data, clause.field)
    operator = clause.operator.lower()
    expected = [_as_text(v) for v in clause.values]

    if operator == "is_empty":
        return actual in (None, "", [], {})
    if operator == "is_not_empty":
        return actual not in (None, "", [], {})
    if actual is None:
        return False

    if operator in ("greater_than", "less_than", "greater_or_equal", "less_or_equal"):
        left = _as_number(actual)
        right = _as_number(clause.values[0]) if clause.values else None
        if left is None or right is None:
            return False
        if operator == "greater_than":
            return left > right
        if operator == "less_than":
            return left < right
        if operator == "greater_or_equal":
            return left >= right
        return left <= right

    if isinstance(actual, (list, tuple, set)):
        actual_values = {_as_text(v) for v in actual}
    else:
        actual_values = {_as_text(actual)}

    if operator in ("equals", "eq"):
        return bool(expected) and actual_values == {expected[0]}
    if operator in ("not_equals", "neq"):
        return bool(expected) and expected[0] not in actual_values
    if operator == "contains":
        needle = expected[0] if expected else ""
        return any(needle in value for value in actual_values)
    if operator == "in":
        return bool(actual_values & set(expected))
    if operator == "not_in":
        return not (actual_values & set(expected))
    return False


def _connection_for_clause(
    clause: ConditionClause,
    index: int,
    tagged: Sequence[GraphConnection],
) -> GraphConnection | None:
    keys = [clause.target] if clause.target else []
    keys.extend(clause.values[:1])
    for key in keys:
        for connection in tagged:
            if key and (connection.source_handle == key or connection.condition_value == key):
                return connection
    if index < len(tagged):
        return tagged[index]
    return None


def select_conditional_connection(
    node: GraphNode,
    outgoing: Sequence[GraphConnection],
    form_data: Mapping[str, Any] | None,
    decision: str | None = None,
) -> GraphConnection | None:
    """Return the connection a conditional node routes to, or None when nothing applies.

    The first matching clause wins; otherwise the unconditioned (default)
    connection is taken.
    """

    form_data = form_data or {}
    settings = node.settings if isinstance(node.settings, ConditionalSettings) else ConditionalSettings()
    tagged = [c for c in outgoing if c.condition_value or c.source_handle or c.decision]
    defaults = [c for c in outgoing if c.is_unconditioned and not c.source_handle]

    if settings.condition_type == "approval_decision" or (not settings.conditions and decision):
        if decision:
            for connection in outgoing:
                if connection.is_tagged(decision):
                    return connection
    else:
        scoped = form_data
        if settings.source_field and settings.source_field not in form_data:
            nested = form_data.get(settings.source_form_node or "", {})
            if isinstance(nested, Mapping):
                scoped = nested
        for index, clause in enumerate(settings.conditions):
            if clause.field is None and settings.source_field:
                clause = ConditionClause(
                    field=settings.source_field,
                    operator=clause.operator,
                    values=clause.values,
                    target=clause.target,
                )
            if clause_matches(clause, scoped):
                connection = _connection_for_clause(clause, index, tagged)
                if connection is not None:
                    return connection

    return defaults[0] if defaults else None
