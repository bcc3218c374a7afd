from app import models


def node(key, node_type):
    return {"key": key, "type": node_type, "label": key.title()}


def test_workflow_lifecycle_is_audited(client, db, make_user, make_project, make_template):
    admin_id, headers = make_user(is_admin=True)
    project_id = make_project()
    template_id = make_template(
        [node("start", "start"), node("end", "end")],
        [{"source": "start", "target": "end"}],
        activate=False,
    )
    client.post(f"/api/workflows/templates/{template_id}/activate", headers=headers)
    instance = client.post(
        "/api/workflows/start",
        json={"template_id": str(template_id), "project_id": str(project_id)},
        headers=headers,
    ).json()
    client.post(f"/api/workflows/instances/{instance['id']}/cancel", headers=headers)

    actions = {
        row.action: row
        for row in db.query(models.AuditLog).filter(models.AuditLog.user_id == admin_id).all()
    }
    assert {"activate_workflow_template", "start_workflow", "cancel_workflow"} <= set(actions)
    assert str(actions["start_workflow"].target_id) == instance["id"]
    assert actions["start_workflow"].details["project_id"] == str(project_id)


def test_audit_report_counts_actions(client, make_user, make_role):
    org_role = make_role(permissions=("manage_org_structure", "manage_workflows"))
    _, headers = make_user(roles=(org_role,))
    client.post("/api/workflows/templates", json={"name": "Counted"}, headers=headers)
    client.post("/api/workflows/templates", json={"name": "Counted again"}, headers=headers)

    resp = client.get(
        "/api/org-structure/audit-report",
        params={"target_type": "workflow_template"},
        headers=headers,
    )
    assert resp.status_code == 200
    counts = {row["action"]: row["count"] for row in resp.json()}
    assert counts["create_workflow_template"] >= 2
    assert "register" not in counts


def test_audit_report_requires_org_capability(client, make_user):
    _, headers = make_user()
    assert client.get("/api/org-structure/audit-report", headers=headers).status_code == 403
