import uuid

import pytest

from app import models
from app.rbac import Membership
from app.services import workflow_engine as engine
from app.services.workflow_eligibility import EligibilityContext, is_eligible
from app.services.workflow_errors import (
    AlreadyApproved,
    AlreadyRunning,
    DecisionRequired,
    IneligibleActor,
    IneligibleAssignment,
    InstanceNotActive,
    NoMatchingPath,
    StepNotFound,
    TemplateNotActive,
)
from app.services.workflow_graph import DepartmentSettings, GraphNode


def node(key, node_type, **extra):
    return {"key": key, "type": node_type, "label": key.replace("_", " ").title(), **extra}


def edge(source, target, **condition):
    payload = {"source": source, "target": target}
    if condition:
        payload["condition"] = condition
    return payload


def node_id(db, template_id, key):
    return (
        db.query(models.WorkflowNode)
        .filter(models.WorkflowNode.template_id == template_id, models.WorkflowNode.node_key == key)
        .one()
        .id
    )


def keys_of(steps):
    return sorted(step.node.node_key for step in steps)


LINEAR = (
    [node("start", "start"), node("review", "role"), node("end", "end")],
    [edge("start", "review"), edge("review", "end")],
)

FORK_JOIN = (
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

SIGNOFF = (
    [node("start", "start"), node("draft", "role"), node("signoff", "approval"), node("end", "end")],
    [
        edge("start", "draft"),
        edge("draft", "signoff"),
        edge("signoff", "end", decision="approved"),
        edge("signoff", "draft", decision="rejected"),
    ],
)


@pytest.fixture
def admin_id(make_user):
    user_id, _ = make_user(is_admin=True)
    return user_id


def test_linear_workflow_completes_on_second_progress(db, admin_id, make_project, make_template):
    project_id = make_project()
    template_id = make_template(*LINEAR)
    admin = db.get(models.User, admin_id)

    instance = engine.start_workflow(db, template_id, project_id, admin)
    assert keys_of(engine.get_active_steps(db, instance.id)) == ["start"]
    assert instance.current_node_id == node_id(db, template_id, "start")

    first = engine.progress_step(db, instance.id, admin)
    assert [n.key for n in first.next_nodes] == ["review"]
    assert not first.completed
    assert not engine.is_workflow_complete(db, instance.id)
    assert instance.current_node_id == node_id(db, template_id, "review")

    second = engine.progress_step(db, instance.id, admin)
    assert second.completed
    assert engine.is_workflow_complete(db, instance.id)
    assert instance.status == "completed"
    assert instance.completed_at is not None
    assert db.get(models.Project, project_id).status == "complete"


def test_fork_waits_at_sync_until_every_branch_arrives(db, admin_id, make_project, make_template):
    project_id = make_project()
    template_id = make_template(*FORK_JOIN)
    admin = db.get(models.User, admin_id)
    instance = engine.start_workflow(db, template_id, project_id, admin)

    forked = engine.progress_step(db, instance.id, admin)
    assert keys_of(forked.new_active_steps) == ["design", "legal"]
    assert instance.has_parallel_paths is True
    assert instance.current_node_id is None
    branches = {step.branch_id for step in forked.new_active_steps}
    assert len(branches) == 2
    assert all(branch.startswith("main.") for branch in branches)

    with pytest.raises(StepNotFound):
        engine.progress_step(db, instance.id, admin)

    design = next(s for s in forked.new_active_steps if s.node.node_key == "design")
    legal = next(s for s in forked.new_active_steps if s.node.node_key == "legal")

    engine.progress_step(db, instance.id, admin, active_step_id=design.id)
    assert keys_of(engine.get_active_steps(db, instance.id)) == ["legal"]
    live = engine.get_all_active_and_waiting_steps(db, instance.id)
    waiting = [s for s in live if s.status == "waiting"]
    assert keys_of(waiting) == ["merge"]
    assert not engine.is_workflow_complete(db, instance.id)

    joined = engine.progress_step(db, instance.id, admin, active_step_id=legal.id)
    assert joined.completed
    end_id = node_id(db, template_id, "end")
    end_steps = (
        db.query(models.WorkflowActiveStep)
        .filter(
            models.WorkflowActiveStep.instance_id == instance.id,
            models.WorkflowActiveStep.node_id == end_id,
        )
        .all()
    )
    assert len(end_steps) == 1
    assert end_steps[0].branch_id == engine.MAIN_BRANCH
    assert design.status == "completed" and legal.status == "completed"
    assert engine.get_all_active_and_waiting_steps(db, instance.id) == []


def test_progressing_a_completed_step_is_rejected_without_side_effects(
    db, admin_id, make_project, make_template
):
    project_id = make_project()
    template_id = make_template(*LINEAR)
    admin = db.get(models.User, admin_id)
    instance = engine.start_workflow(db, template_id, project_id, admin)
    start_step = engine.get_active_steps(db, instance.id)[0]
    engine.progress_step(db, instance.id, admin, active_step_id=start_step.id)

    history_before = len(engine.get_history(db, instance.id))
    for _ in range(2):
        with pytest.raises(StepNotFound):
            engine.progress_step(db, instance.id, admin, active_step_id=start_step.id)
    assert len(engine.get_history(db, instance.id)) == history_before
    assert keys_of(engine.get_active_steps(db, instance.id)) == ["review"]


def test_rejection_routes_back_and_approval_finishes(db, admin_id, make_project, make_template):
    project_id = make_project()
    template_id = make_template(*SIGNOFF)
    admin = db.get(models.User, admin_id)
    instance = engine.start_workflow(db, template_id, project_id, admin)
    engine.progress_step(db, instance.id, admin)
    engine.progress_step(db, instance.id, admin)
    assert keys_of(engine.get_active_steps(db, instance.id)) == ["signoff"]

    with pytest.raises(DecisionRequired):
        engine.progress_step(db, instance.id, admin)

    rejected = engine.progress_step(
        db, instance.id, admin, decision="rejected", feedback="Budget section is missing"
    )
    assert [n.key for n in rejected.next_nodes] == ["draft"]
    row = rejected.history[-1]
    assert row.decision == "rejected"
    assert row.feedback == "Budget section is missing"
    assert row.to_node_id == node_id(db, template_id, "draft")

    engine.progress_step(db, instance.id, admin)
    approved = engine.progress_step(db, instance.id, admin, decision="approved")
    assert approved.completed


def test_start_requires_active_template_and_one_run_per_project(
    db, admin_id, make_project, make_template
):
    project_id = make_project()
    draft_id = make_template(*LINEAR, activate=False)
    active_id = make_template(*LINEAR)
    admin = db.get(models.User, admin_id)

    with pytest.raises(TemplateNotActive):
        engine.start_workflow(db, draft_id, project_id, admin)

    engine.start_workflow(db, active_id, project_id, admin)
    with pytest.raises(AlreadyRunning):
        engine.start_workflow(db, active_id, project_id, admin)


def test_cancel_closes_live_steps(db, admin_id, make_project, make_template):
    project_id = make_project()
    template_id = make_template(*FORK_JOIN)
    admin = db.get(models.User, admin_id)
    instance = engine.start_workflow(db, template_id, project_id, admin)
    engine.progress_step(db, instance.id, admin)

    engine.cancel_workflow(db, instance.id, admin)
    assert instance.status == "cancelled"
    assert engine.get_all_active_and_waiting_steps(db, instance.id) == []
    assert engine.get_history(db, instance.id)[-1].notes == "Workflow cancelled"
    with pytest.raises(InstanceNotActive):
        engine.progress_step(db, instance.id, admin)

    restarted = engine.start_workflow(db, template_id, project_id, admin)
    assert restarted.id != instance.id


def test_eligibility_from_roles_departments_and_assignments():
    role_id = uuid.uuid4()
    department_id = uuid.uuid4()
    user_id = uuid.uuid4()
    role_node = GraphNode(id="n-role", type="role", required_entity_id=str(role_id))
    dept_node = GraphNode(
        id="n-dept",
        type="department",
        required_entity_id=str(department_id),
        settings=DepartmentSettings(department_id=str(department_id)),
    )

    outsider = EligibilityContext(user_id=user_id)
    assert not is_eligible(role_node, outsider)
    assert not is_eligible(dept_node, outsider)

    member = EligibilityContext(
        user_id=user_id,
        memberships=(Membership(role_id=role_id, department_id=department_id),),
    )
    assert is_eligible(role_node, member)
    assert is_eligible(dept_node, member)

    preassigned = EligibilityContext(user_id=user_id, assigned_node_ids=frozenset({"n-role"}))
    assert is_eligible(role_node, preassigned)
    assert not is_eligible(dept_node, preassigned)


def test_actor_must_be_eligible_unless_preassigned(
    db, admin_id, make_user, make_role, make_project, make_template
):
    role_id = make_role()
    outsider_id, _ = make_user()
    project_id = make_project()
    template_id = make_template(
        [node("start", "start"), node("review", "role", required_entity_id=role_id), node("end", "end")],
        LINEAR[1],
    )
    admin = db.get(models.User, admin_id)
    outsider = db.get(models.User, outsider_id)
    instance = engine.start_workflow(db, template_id, project_id, admin)
    engine.progress_step(db, instance.id, admin)

    with pytest.raises(IneligibleActor):
        engine.progress_step(db, instance.id, outsider)

    engine.assign_node(db, instance.id, node_id(db, template_id, "review"), outsider_id, admin)
    result = engine.progress_step(db, instance.id, outsider)
    assert result.completed


def test_assignment_must_be_eligible_and_failure_rolls_back(
    db, admin_id, make_user, make_role, make_project, make_template
):
    role_id = make_role()
    holder_id, _ = make_user(roles=(role_id,))
    outsider_id, _ = make_user()
    project_id = make_project()
    template_id = make_template(
        [node("start", "start"), node("review", "role", required_entity_id=role_id), node("end", "end")],
        LINEAR[1],
    )
    admin = db.get(models.User, admin_id)
    instance = engine.start_workflow(db, template_id, project_id, admin)
    db.commit()

    with pytest.raises(IneligibleAssignment):
        engine.progress_step(db, instance.id, admin, assignment=outsider_id)
    db.rollback()
    assert keys_of(engine.get_active_steps(db, instance.id)) == ["start"]

    result = engine.progress_step(db, instance.id, admin, assignment=holder_id)
    step = result.new_active_steps[0]
    assert step.assigned_user_id == holder_id
    assert result.assigned == [(holder_id, "Review")]
    notice = (
        db.query(models.Notification)
        .filter(models.Notification.user_id == holder_id)
        .one()
    )
    assert "Review" in notice.message


def test_single_preassigned_user_is_picked_automatically(
    db, admin_id, make_user, make_project, make_template
):
    reviewer_id, _ = make_user()
    project_id = make_project()
    template_id = make_template(*LINEAR)
    admin = db.get(models.User, admin_id)
    instance = engine.start_workflow(db, template_id, project_id, admin)
    review_id = node_id(db, template_id, "review")
    engine.assign_node(db, instance.id, review_id, reviewer_id, admin)

    reviewer = db.get(models.User, reviewer_id)
    assert [a.node_id for a in engine.get_user_pipeline(db, reviewer)] == [review_id]

    result = engine.progress_step(db, instance.id, admin)
    assert result.new_active_steps[0].assigned_user_id == reviewer_id
    assert result.new_active_steps[0].id in [s.id for s in engine.get_user_pending_steps(db, reviewer)]

    engine.progress_step(db, instance.id, reviewer)
    assert engine.get_user_pipeline(db, reviewer) == []


def test_conditional_node_routes_on_form_data(db, admin_id, make_project, make_template):
    nodes = [
        node("start", "start"),
        node(
            "budget_check",
            "conditional",
            settings={
                "condition_type": "form_value",
                "conditions": [
                    {"field": "budget", "operator": "greater_than", "value": "10000", "target": "large"}
                ],
            },
        ),
        node("executive", "approval"),
        node("end", "end"),
    ]
    connections = [
        edge("start", "budget_check"),
        edge("budget_check", "executive", condition_value="large", source_handle="large"),
        edge("budget_check", "end"),
        edge("executive", "end", decision="approved"),
    ]
    template_id = make_template(nodes, connections)
    big_project, small_project = make_project("Big"), make_project("Small")
    admin = db.get(models.User, admin_id)

    big = engine.start_workflow(db, template_id, big_project, admin)
    routed = engine.progress_step(db, big.id, admin, form_data={"budget": 25000})
    assert keys_of(routed.new_active_steps) == ["executive"]
    assert any(row.notes and "Auto-routed" in row.notes for row in routed.history)

    small = engine.start_workflow(db, template_id, small_project, admin)
    finished = engine.progress_step(db, small.id, admin, form_data={"budget": 900})
    assert finished.completed


def test_conditional_without_match_or_default_raises(db, admin_id, make_project, make_template):
    nodes = [
        node("start", "start"),
        node(
            "region",
            "conditional",
            settings={"conditions": [{"field": "region", "operator": "equals", "value": "emea"}]},
        ),
        node("emea_desk", "role"),
        node("end", "end"),
    ]
    connections = [
        edge("start", "region"),
        edge("region", "emea_desk", condition_value="emea"),
        edge("emea_desk", "end"),
    ]
    template_id = make_template(nodes, connections)
    admin = db.get(models.User, admin_id)
    instance = engine.start_workflow(db, template_id, make_project(), admin)

    with pytest.raises(NoMatchingPath):
        engine.progress_step(db, instance.id, admin, form_data={"region": "apac"})


def test_required_approvals_collects_distinct_approvers(
    db, admin_id, make_user, make_role, make_project, make_template
):
    role_id = make_role()
    first_id, _ = make_user(roles=(role_id,))
    second_id, _ = make_user(roles=(role_id,))
    project_id = make_project()
    template_id = make_template(
        [
            node("start", "start"),
            node(
                "board",
                "approval",
                required_entity_id=role_id,
                settings={"required_approvals": 2},
            ),
            node("end", "end"),
        ],
        [
            edge("start", "board"),
            edge("board", "end", decision="approved"),
            edge("board", "start", decision="rejected"),
        ],
    )
    admin = db.get(models.User, admin_id)
    first = db.get(models.User, first_id)
    second = db.get(models.User, second_id)
    instance = engine.start_workflow(db, template_id, project_id, admin)
    engine.progress_step(db, instance.id, admin)

    partial = engine.progress_step(db, instance.id, first, decision="approved")
    assert partial.new_active_steps == []
    step = engine.get_active_steps(db, instance.id)[0]
    assert step.approvals == [str(first_id)]

    with pytest.raises(AlreadyApproved):
        engine.progress_step(db, instance.id, first, decision="approved")

    done = engine.progress_step(db, instance.id, second, decision="approved")
    assert done.completed


def test_out_of_order_handoff_is_flagged(db, admin_id, make_project, make_template):
    project_id = make_project()
    template_id = make_template(*LINEAR)
    admin = db.get(models.User, admin_id)
    instance = engine.start_workflow(db, template_id, project_id, admin)
    end_id = node_id(db, template_id, "end")
    review_id = node_id(db, template_id, "review")

    assert engine.is_out_of_order_target(db, instance.id, end_id)
    assert not engine.is_out_of_order_target(db, instance.id, review_id)
    assert [n.key for n in engine.get_next_available_nodes(db, instance.id)] == ["review"]

    result = engine.handoff(db, instance.id, admin, end_id, out_of_order=True, notes="Client signed early")
    assert result.completed
    row = result.history[0]
    assert row.out_of_order is True
    assert row.to_node_id == end_id


def live_step(db, instance_id, key):
    return next(s for s in engine.get_active_steps(db, instance_id) if s.node.node_key == key)


REWORK_INSIDE_BRANCH = (
    [
        node("start", "start"),
        node("split", "role"),
        node("check", "approval"),
        node("legal", "role"),
        node("merge", "sync"),
        node("end", "end"),
    ],
    [
        edge("start", "split"),
        edge("split", "check"),
        edge("split", "legal"),
        edge("check", "merge", decision="approved"),
        edge("check", "split", decision="rejected"),
        edge("legal", "merge"),
        edge("merge", "end"),
    ],
)


def test_rejection_that_reforks_inside_a_branch_joins_once(db, admin_id, make_project, make_template):
    project_id = make_project()
    template_id = make_template(*REWORK_INSIDE_BRANCH)
    admin = db.get(models.User, admin_id)
    instance = engine.start_workflow(db, template_id, project_id, admin)
    engine.progress_step(db, instance.id, admin)
    engine.progress_step(db, instance.id, admin, active_step_id=live_step(db, instance.id, "split").id)

    engine.progress_step(db, instance.id, admin, active_step_id=live_step(db, instance.id, "legal").id)
    sent_back = engine.progress_step(
        db,
        instance.id,
        admin,
        active_step_id=live_step(db, instance.id, "check").id,
        decision="rejected",
    )
    assert [n.key for n in sent_back.next_nodes] == ["split"]

    engine.progress_step(db, instance.id, admin, active_step_id=live_step(db, instance.id, "split").id)
    assert keys_of(engine.get_active_steps(db, instance.id)) == ["check", "legal"]
    engine.progress_step(
        db,
        instance.id,
        admin,
        active_step_id=live_step(db, instance.id, "check").id,
        decision="approved",
    )
    assert not engine.is_workflow_complete(db, instance.id)
    finished = engine.progress_step(db, instance.id, admin, active_step_id=live_step(db, instance.id, "legal").id)

    assert finished.completed
    assert engine.get_all_active_and_waiting_steps(db, instance.id) == []
    end_steps = (
        db.query(models.WorkflowActiveStep)
        .filter(
            models.WorkflowActiveStep.instance_id == instance.id,
            models.WorkflowActiveStep.node_id == node_id(db, template_id, "end"),
        )
        .all()
    )
    assert [s.branch_id for s in end_steps] == [engine.MAIN_BRANCH]


DUAL_REVIEW = (
    [
        node("start", "start"),
        node("creative", "approval"),
        node("finance", "approval"),
        node("merge", "sync"),
        node("publish", "role"),
        node("rework", "role"),
        node("end", "end"),
    ],
    [
        edge("start", "creative"),
        edge("start", "finance"),
        edge("creative", "merge", decision="approved"),
        edge("creative", "merge", decision="rejected"),
        edge("finance", "merge", decision="approved"),
        edge("finance", "merge", decision="rejected"),
        edge("merge", "publish", condition_value="all_approved"),
        edge("merge", "rework", condition_value="any_rejected"),
        edge("publish", "end"),
        edge("rework", "end"),
    ],
)


@pytest.mark.parametrize(
    "finance_decision, expected",
    [("approved", ["publish"]), ("rejected", ["rework"])],
)
def test_sync_routes_on_merged_branch_decisions(
    db, admin_id, make_project, make_template, finance_decision, expected
):
    project_id = make_project()
    template_id = make_template(*DUAL_REVIEW)
    admin = db.get(models.User, admin_id)
    instance = engine.start_workflow(db, template_id, project_id, admin)
    engine.progress_step(db, instance.id, admin)

    engine.progress_step(
        db,
        instance.id,
        admin,
        active_step_id=live_step(db, instance.id, "creative").id,
        decision="approved",
    )
    joined = engine.progress_step(
        db,
        instance.id,
        admin,
        active_step_id=live_step(db, instance.id, "finance").id,
        decision=finance_decision,
    )

    assert [n.key for n in joined.next_nodes] == ["merge"]
    assert keys_of(engine.get_active_steps(db, instance.id)) == expected
    assert engine.get_active_steps(db, instance.id)[0].branch_id == engine.MAIN_BRANCH


def test_pending_steps_honour_preassignments_only_on_their_instance(
    db, admin_id, make_user, make_role, make_project, make_template
):
    reviewer_role = make_role()
    outsider_id, _ = make_user()
    first_project = make_project()
    second_project = make_project()
    template_id = make_template(
        [node("start", "start"), node("review", "role", required_entity_id=reviewer_role), node("end", "end")],
        [edge("start", "review"), edge("review", "end")],
    )
    admin = db.get(models.User, admin_id)
    outsider = db.get(models.User, outsider_id)

    first = engine.start_workflow(db, template_id, first_project, admin)
    second = engine.start_workflow(db, template_id, second_project, admin)
    engine.progress_step(db, first.id, admin)
    engine.progress_step(db, second.id, admin)
    engine.assign_node(db, first.id, node_id(db, template_id, "review"), outsider_id, admin)

    pending = {step.id for step in engine.get_user_pending_steps(db, outsider)}
    assert live_step(db, first.id, "review").id in pending
    assert live_step(db, second.id, "review").id not in pending


def test_siblings_finished_in_separate_sessions_join_once(
    session_factory, admin_id, make_project, make_template
):
    project_id = make_project()
    template_id = make_template(*FORK_JOIN)

    setup = session_factory()
    try:
        admin = setup.get(models.User, admin_id)
        instance = engine.start_workflow(setup, template_id, project_id, admin)
        engine.progress_step(setup, instance.id, admin)
        setup.commit()
        instance_id = instance.id
        steps = {s.node.node_key: s.id for s in engine.get_active_steps(setup, instance_id)}
    finally:
        setup.close()

    for key in ("design", "legal"):
        session = session_factory()
        try:
            actor = session.get(models.User, admin_id)
            engine.progress_step(session, instance_id, actor, active_step_id=steps[key])
            session.commit()
        finally:
            session.close()

    check = session_factory()
    try:
        merge_id = node_id(check, template_id, "merge")
        merged = (
            check.query(models.WorkflowActiveStep)
            .filter(
                models.WorkflowActiveStep.instance_id == instance_id,
                models.WorkflowActiveStep.node_id == merge_id,
                models.WorkflowActiveStep.branch_id == engine.MAIN_BRANCH,
            )
            .count()
        )
        assert merged == 1
        assert engine.is_workflow_complete(check, instance_id)
        assert check.get(models.WorkflowInstance, instance_id).status == "completed"
    finally:
        check.close()
