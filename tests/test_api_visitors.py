from conftest import bearer, create_user, login


def register(client, visitor_id="abc123", name="Dana"):
    return client.post("/api/visitors", json={"visitorId": visitor_id, "name": name})


def test_register_and_fetch_profile(client):
    response = register(client)

    assert response.status_code == 200
    assert response.json()["isNew"] is True
    profile = client.get("/api/visitors", params={"visitorId": "abc123"}).json()["profile"]
    assert profile["name"] == "Dana"
    assert profile["total_visits"] == 1


def test_reregistering_renames_and_counts_visit(client):
    register(client)
    response = register(client, name="Dana K")

    assert response.json()["isNew"] is False
    assert response.json()["profile"]["name"] == "Dana K"
    assert response.json()["profile"]["total_visits"] == 2


def test_name_length_is_validated(client):
    response = register(client, name=" D ")
    assert response.status_code == 400
    assert response.json()["success"] is False


def test_unknown_visitor_is_404(client):
    response = client.get("/api/visitors", params={"visitorId": "nobody"})
    assert response.status_code == 404
    assert response.json()["error"] == "Visitor profile not found"


def test_listing_profiles_needs_dashboard_access(client, admin_headers):
    register(client)
    assert client.get("/api/visitors").status_code == 401

    listed = client.get("/api/visitors", headers=admin_headers).json()
    assert listed["count"] == 1


def test_admin_clears_name(client, admin_headers):
    register(client)

    response = client.put("/api/visitors/abc123", headers=admin_headers, json={"name": None})

    assert response.json()["message"] == "Visitor name removed"
    profile = client.get("/api/visitors", params={"visitorId": "abc123"}).json()["profile"]
    assert profile["name"] is None


def test_only_admin_edits_visitors(client, admin_headers):
    register(client)
    create_user(client, admin_headers, "manager", role="data_manager")
    headers = bearer(login(client, "manager", "user-password-123"))

    assert client.put("/api/visitors/abc123", headers=headers, json={"name": "X"}).status_code == 403
    assert client.delete("/api/visitors/abc123", headers=headers).status_code == 403
    assert client.put("/api/visitors/abc123", json={"name": "X"}).status_code == 401


def test_delete_visitor(client, admin_headers):
    register(client)

    assert client.delete("/api/visitors/abc123", headers=admin_headers).status_code == 200
    assert client.get("/api/visitors", params={"visitorId": "abc123"}).status_code == 404
    assert client.delete("/api/visitors/abc123", headers=admin_headers).status_code == 404


def test_track_and_read_activity(client):
    register(client)

    tracked = client.post("/api/visitors/abc123/activity", json={"action": "פתח משימה", "category": "task"})
    assert tracked.status_code == 200

    activity = client.get("/api/visitors/abc123/activity").json()
    actions = [a["action"] for a in activity["activities"]]
    assert "פתח משימה" in actions
    assert activity["visitor"]["total_actions"] >= 1


def test_activity_for_unknown_visitor(client):
    assert client.get("/api/visitors/nobody/activity").status_code == 404
    assert client.post("/api/visitors/nobody/activity", json={"action": "x"}).status_code == 404


def test_invalid_activity_category(client):
    register(client)
    response = client.post("/api/visitors/abc123/activity", json={"action": "x", "category": "bogus"})
    assert response.status_code == 400
