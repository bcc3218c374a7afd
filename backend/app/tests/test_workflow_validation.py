from app.services.workflow_graph import WorkflowGraph
from app.services.workflow_validation import validate_workflow


def node(key, node_type, **extra):
    return {"key": key, "type": node_type, "label": key.replace("_", " ").title(), **extra}


def edge(source, target, **condition):
    payload = {"source": source, "target": target}
    if condition:
        payload["condition"] = condition
    return payload


def codes(issues):
    return [issue.code for issue in issues]


def validate(nodes, connections):
    return validate_workflow(WorkflowGraph.from_payload(nodes, connections))


def test_linear_template_has_no_errors():
    result = validate(
        [node("start", "start"), node("review", "role"), node("end", "end")],
        [edge("start", "review"), edge("review", "end")],
    )
    assert result.valid
    assert result.errors == []
    assert result.warnings == []


def test_empty_graph_is_rejected():
    result = validate([], [])
    assert codes(result.errors) == ["NO_NODES"]


def test_missing_and_duplicate_start():
    missing = validate([node("review", "role"), node("end", "end")], [edge("review", "end")])
    assert "NO_START" in codes(missing.errors)

    duplicate = validate(
        [node("start", "start"), node("start_2", "start"), node("end", "end")],
        [edge("start", "end"), edge("start_2", "end")],
    )
    issue = next(i for i in duplicate.errors if i.code == "MULTIPLE_STARTS")
    assert issue.node_key == "start_2"


def test_missing_end_is_only_a_warning():
    result = validate([node("start", "start"), node("review", "role")], [edge("start", "review")])
    assert result.valid
    assert "NO_END" in codes(result.warnings)


def test_fork_without_sync_is_reported_on_fork_node():
    result = validate(
        [node("start", "start"), node("design", "role"), node("legal", "role"), node("end", "end")],
        [
            edge("start", "design"),
            edge("start", "legal"),
            edge("design", "end"),
            edge("legal", "end"),
        ],
    )
    issue = next(i for i in result.errors if i.code == "PARALLEL_WITHOUT_SYNC")
    assert issue.node_key == "start"


def test_fork_merging_at_different_syncs_is_rejected():
    result = validate(
        [
            node("start", "start"),
            node("design", "role"),
            node("legal", "role"),
            node("sync_a", "sync"),
            node("sync_b", "sync"),
            node("end", "end"),
        ],
        [
            edge("start", "design"),
            edge("start", "legal"),
            edge("design", "sync_a"),
            edge("legal", "sync_b"),
            edge("sync_a", "end"),
            edge("sync_b", "end"),
        ],
    )
    issue = next(i for i in result.errors if i.code == "PARALLEL_WITHOUT_SYNC")
    assert "different Sync" in issue.message


def test_fork_with_sync_is_valid():
    result = validate(
        [
            node("start", "start"),
            node("design", "role"),
            node("legal", "role"),
            node("merge", "sync"),
            node("end", "end"),
        ],
        [
            edge("start", "design"),
            edge("start", "legal"),
            edge("design", "merge"),
            edge("legal", "merge"),
            edge("merge", "end"),
        ],
    )
    assert result.valid
    assert result.warnings == []


def test_nested_fork_closes_at_inner_then_outer_sync():
    result = validate(
        [
            node("start", "start"),
            node("design", "role"),
            node("copy", "role"),
            node("visuals", "role"),
            node("inner", "sync"),
            node("legal", "role"),
            node("outer", "sync"),
            node("end", "end"),
        ],
        [
            edge("start", "design"),
            edge("start", "legal"),
            edge("design", "copy"),
            edge("design", "visuals"),
            edge("copy", "inner"),
            edge("visuals", "inner"),
            edge("inner", "outer"),
            edge("legal", "outer"),
            edge("outer", "end"),
        ],
    )
    assert codes(result.errors) == []


def test_rejection_back_edge_is_not_a_cycle():
    result = validate(
        [node("start", "start"), node("draft", "role"), node("signoff", "approval"), node("end", "end")],
        [
            edge("start", "draft"),
            edge("draft", "signoff"),
            edge("signoff", "end", decision="approved"),
            edge("signoff", "draft", decision="rejected"),
        ],
    )
    assert "CYCLE_DETECTED" not in codes(result.errors)
    assert result.valid


def test_plain_back_edge_is_a_cycle():
    result = validate(
        [node("start", "start"), node("draft", "role"), node("review", "role"), node("end", "end")],
        [
            edge("start", "draft"),
            edge("draft", "review"),
            edge("review", "draft"),
            edge("review", "end", condition_value="done"),
        ],
    )
    issue = next(i for i in result.errors if i.code == "CYCLE_DETECTED")
    assert "Draft" in issue.message and "Review" in issue.message


def test_approval_needs_edges_and_an_approved_path():
    no_edges = validate(
        [node("start", "start"), node("signoff", "approval")],
        [edge("start", "signoff")],
    )
    assert "APPROVAL_NO_EDGES" in codes(no_edges.errors)

    no_approved = validate(
        [node("start", "start"), node("signoff", "approval"), node("rework", "role"), node("end", "end")],
        [
            edge("start", "signoff"),
            edge("signoff", "end", decision="rejected"),
            edge("signoff", "rework", condition_value="later"),
        ],
    )
    assert "APPROVAL_NO_APPROVED_PATH" in codes(no_approved.errors)


def test_conditional_without_output_is_an_error():
    result = validate(
        [node("start", "start"), node("route", "conditional"), node("end", "end")],
        [edge("start", "route")],
    )
    assert "CONDITIONAL_NO_OUTPUT" in codes(result.errors)


def test_conditional_warnings():
    no_conditions = validate(
        [node("start", "start"), node("route", "conditional"), node("end", "end")],
        [edge("start", "route"), edge("route", "end")],
    )
    assert "CONDITIONAL_NO_CONDITIONS" in codes(no_conditions.warnings)

    missing_default = validate(
        [node("start", "start"), node("route", "conditional"), node("end", "end")],
        [edge("start", "route"), edge("route", "end", condition_value="large")],
    )
    assert "CONDITIONAL_MISSING_DEFAULT" in codes(missing_default.warnings)


def test_orphans_single_branch_sync_and_dangling_edges():
    result = validate(
        [
            node("start", "start"),
            node("merge", "sync"),
            node("stray", "role"),
            node("end", "end"),
        ],
        [edge("start", "merge"), edge("merge", "end"), edge("merge", "ghost")],
    )
    assert "ORPHANED_NODE" in codes(result.warnings)
    assert "SYNC_SINGLE_BRANCH" in codes(result.warnings)
    assert "DANGLING_CONNECTION" in codes(result.errors)
    orphan = next(i for i in result.warnings if i.code == "ORPHANED_NODE")
    assert orphan.node_key == "stray"


def test_result_serialises_with_node_identity():
    result = validate([node("review", "role")], [])
    payload = result.to_dict()
    assert payload["valid"] is False
    assert payload["errors"][0]["code"] == "NO_START"
    assert {"type", "code", "message", "node_id", "node_key", "node_label"} <= set(payload["errors"][0])
