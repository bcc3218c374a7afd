def node(key, node_type):
    return {"key": key, "type": node_type, "label": key.title()}


def test_project_flow(client, make_user, make_role):
    manager_role = make_role(permissions=("manage_projects",))
    _, headers = make_user(roles=(manager_role,))
    proj = client.post(
        "/api/projects",
        json={"name": "Spring campaign", "account_name": "Acme"},
        headers=headers,
    )
    assert proj.status_code == 200
    proj_id = proj.json()["id"]
    assert proj.json()["status"] == "active"

    upd = client.put(f"/api/projects/{proj_id}", json={"description": "Print and social"}, headers=headers)
    assert upd.json()["description"] == "Print and social"

    lst = client.get("/api/projects", headers=headers)
    assert any(p["id"] == proj_id for p in lst.json())
    assert client.get(f"/api/projects/{proj_id}/workflows", headers=headers).json() == []

    del_resp = client.delete(f"/api/projects/{proj_id}", headers=headers)
    assert del_resp.status_code == 204
    assert client.get(f"/api/projects/{proj_id}", headers=headers).status_code == 404


def test_project_creation_requires_capability(client, make_user):
    _, headers = make_user()
    resp = client.post("/api/projects", json={"name": "Nope"}, headers=headers)
    assert resp.status_code == 403


def test_project_with_running_workflow_cannot_be_deleted(client, make_user, make_template):
    _, headers = make_user(is_admin=True)
    template_id = make_template(
        [node("start", "start"), node("review", "role"), node("end", "end")],
        [{"source": "start", "target": "review"}, {"source": "review", "target": "end"}],
    )
    proj_id = client.post("/api/projects", json={"name": "Annual report"}, headers=headers).json()["id"]
    started = client.post(
        "/api/workflows/start",
        json={"template_id": str(template_id), "project_id": proj_id},
        headers=headers,
    )
    assert started.status_code == 201

    workflows = client.get(f"/api/projects/{proj_id}/workflows", headers=headers).json()
    assert [w["id"] for w in workflows] == [started.json()["id"]]
    assert client.delete(f"/api/projects/{proj_id}", headers=headers).status_code == 409

    client.post(f"/api/workflows/instances/{started.json()['id']}/cancel", headers=headers)
    assert client.delete(f"/api/projects/{proj_id}", headers=headers).status_code == 204
