import pytest

from conftest import bearer, create_user, login


@pytest.fixture
def project(client, admin_headers):
    response = client.post("/api/projects", headers=admin_headers, json={"name": "מרכז", "description": "d"})
    assert response.status_code == 201
    return response.json()["project"]


@pytest.fixture
def task(client, admin_headers, project):
    response = client.post("/api/tasks", headers=admin_headers, json={
        "project_id": project["id"],
        "title": "נסיעת לילה",
        "dataco_number": "DATACO-1",
        "type": ["events"],
        "priority": 2,
    })
    assert response.status_code == 201, response.text
    return response.json()["task"]


def test_projects_are_public_to_read(client, project, task):
    listed = client.get("/api/projects").json()
    assert listed["projects"][0]["task_count"] == 1

    detail = client.get(f"/api/projects/{project['id']}").json()
    assert [t["id"] for t in detail["tasks"]] == [task["id"]]


def test_project_writes_need_permission(client):
    assert client.post("/api/projects", json={"name": "x"}).status_code == 401


def test_duplicate_project_name(client, admin_headers, project):
    response = client.post("/api/projects", headers=admin_headers, json={"name": "מרכז"})
    assert response.status_code == 400


def test_update_and_delete_project(client, admin_headers, project):
    updated = client.put(f"/api/projects/{project['id']}", headers=admin_headers, json={"name": "דרום"})
    assert updated.json()["project"]["name"] == "דרום"

    assert client.delete(f"/api/projects/{project['id']}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/projects/{project['id']}").status_code == 404


def test_data_manager_cannot_delete_projects(client, admin_headers, project):
    create_user(client, admin_headers, "manager", role="data_manager")
    headers = bearer(login(client, "manager", "user-password-123"))

    assert client.put(f"/api/projects/{project['id']}", headers=headers, json={"description": "x"}).status_code == 200
    assert client.delete(f"/api/projects/{project['id']}", headers=headers).status_code == 403


def test_task_needs_existing_project(client, admin_headers):
    response = client.post("/api/tasks", headers=admin_headers, json={
        "project_id": 42, "title": "t", "dataco_number": "D",
    })
    assert response.status_code == 400
    assert response.json()["error"] == "Project does not exist"


def test_invalid_task_type_is_400(client, admin_headers, project):
    response = client.post("/api/tasks", headers=admin_headers, json={
        "project_id": project["id"], "title": "t", "dataco_number": "D", "type": ["walking"],
    })
    assert response.status_code == 400


def test_hidden_tasks_only_for_data_managers(client, admin_headers, task):
    response = client.put(f"/api/tasks/{task['id']}/visibility", headers=admin_headers, json={"is_visible": False})
    assert response.json()["task"]["is_visible"] is False

    assert client.get("/api/tasks").json()["count"] == 0
    assert client.get(f"/api/tasks/{task['id']}").status_code == 404
    assert client.get("/api/tasks", headers=admin_headers).json()["count"] == 1


def test_task_filter_by_project(client, admin_headers, project, task):
    assert client.get("/api/tasks", params={"project_id": project["id"]}).json()["count"] == 1
    assert client.get("/api/tasks", params={"project_id": project["id"] + 1}).json()["count"] == 0


def test_update_task_and_missing_task(client, admin_headers, task):
    updated = client.put(f"/api/tasks/{task['id']}", headers=admin_headers, json={"priority": 7})
    assert updated.json()["task"]["priority"] == 7
    assert client.put("/api/tasks/999", headers=admin_headers, json={"priority": 1}).status_code == 404


def test_subtask_lifecycle(client, admin_headers, task):
    created = client.post(f"/api/tasks/{task['id']}/subtasks", headers=admin_headers, json={
        "title": "תת", "dataco_number": "S-1", "type": "hours",
    })
    assert created.status_code == 201
    subtask = created.json()["subtask"]

    detail = client.get(f"/api/tasks/{task['id']}").json()
    assert [s["id"] for s in detail["subtasks"]] == [subtask["id"]]

    updated = client.put(f"/api/subtasks/{subtask['id']}", headers=admin_headers, json={"weather": "rain"})
    assert updated.json()["subtask"]["weather"] == "rain"

    assert client.delete(f"/api/subtasks/{subtask['id']}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/subtasks/{subtask['id']}").status_code == 404


def test_subtask_for_missing_task(client, admin_headers):
    response = client.post("/api/tasks/999/subtasks", headers=admin_headers, json={
        "title": "t", "dataco_number": "S",
    })
    assert response.status_code == 404


def test_delete_task(client, admin_headers, task):
    assert client.delete(f"/api/tasks/{task['id']}", headers=admin_headers).status_code == 200
    assert client.delete(f"/api/tasks/{task['id']}", headers=admin_headers).status_code == 404


def test_analytics_reflect_writes_and_visits(client, admin_headers, task):
    summary = client.get("/api/analytics", params={"range": "7d"}, headers=admin_headers).json()["analytics"]
    assert summary["total_tasks"] == 1
    assert summary["tasks_created_this_week"] == 1

    logged = client.post("/api/analytics", json={"visitorId": "visitor_1"}).json()
    assert logged["total_visits"] == 1

    summary = client.get("/api/analytics", params={"range": "7d"}, headers=admin_headers).json()["analytics"]
    assert summary["total_visits"] == 1
    assert summary["unique_visitors"] == 1


def test_analytics_visit_without_body(client):
    response = client.post("/api/analytics")
    assert response.status_code == 200
    assert response.json()["total_visits"] == 1


def test_analytics_invalid_range(client, admin_headers):
    response = client.get("/api/analytics", params={"range": "12d"}, headers=admin_headers)
    assert response.status_code == 400


def test_analytics_requires_login(client):
    assert client.get("/api/analytics").status_code == 401
