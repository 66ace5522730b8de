from pathlib import Path

from conftest import bearer, create_user, login

from core.container import container

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def test_health_is_public(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["status"] == "healthy"
    assert body["checks"] == {"database": True, "storage": True}
    assert body["cache"]["mirror_reachable"] is None
    assert body["features"]["storage_backend"] == "local"


def test_cache_stats_and_clear(client, admin_headers):
    client.get("/api/analytics", params={"range": "7d"}, headers=admin_headers)

    stats = client.get("/api/admin/cache", headers=admin_headers).json()
    assert "analytics:summary:7" in stats["keys"]
    assert stats["stats"]["namespaces"]["analytics"] == 1

    cleared = client.post("/api/cache/clear", headers=admin_headers, json={"pattern": "^analytics:"})
    assert cleared.json() == {"success": True, "removed": 1}
    assert client.get("/api/admin/cache", headers=admin_headers).json()["keys"] == []


def test_cache_clear_everything(client, admin_headers):
    container.cache().set("api:/api/tasks:abc", [])

    cleared = client.post("/api/cache/clear", headers=admin_headers)
    assert cleared.json()["removed"] == 1


def test_cache_clear_rejects_bad_pattern(client, admin_headers):
    response = client.post("/api/cache/clear", headers=admin_headers, json={"pattern": "("})
    assert response.status_code == 400


def test_cache_admin_needs_permission(client, admin_headers):
    create_user(client, admin_headers, "manager", role="data_manager")
    headers = bearer(login(client, "manager", "user-password-123"))

    assert client.get("/api/admin/cache", headers=headers).status_code == 403
    assert client.post("/api/cache/clear").status_code == 401


def test_upload_image_to_local_storage(client, admin_headers):
    response = client.post("/api/upload/image", headers=admin_headers,
                           files={"file": ("photo.png", PNG, "image/png")})

    assert response.status_code == 200
    body = response.json()
    assert body["backend"] == "local"
    assert body["size"] == len(PNG)
    stored = Path(container.settings().upload_dir) / body["url"].rsplit("/", 1)[1]
    assert stored.read_bytes() == PNG

    served = client.get(body["url"])
    assert served.status_code == 200
    assert served.content == PNG


def test_upload_rejects_non_images(client, admin_headers):
    response = client.post("/api/upload/image", headers=admin_headers,
                           files={"file": ("notes.txt", b"hello", "text/plain")})

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid file type. Only images are allowed"


def test_upload_requires_login(client):
    response = client.post("/api/upload/image", files={"file": ("photo.png", PNG, "image/png")})
    assert response.status_code == 401


def test_unknown_route_uses_envelope(client):
    response = client.get("/api/nothing-here")
    assert response.status_code == 404
    assert response.json() == {"success": False, "error": "Not Found"}


def test_request_id_is_echoed_or_generated(client):
    echoed = client.get("/api/health", headers={"X-Request-ID": "trace-42"})
    assert echoed.headers["X-Request-ID"] == "trace-42"

    generated = client.get("/api/projects")
    assert len(generated.headers["X-Request-ID"]) == 12
