from fastapi.testclient import TestClient

from core.cache import CacheManager
from core.config import Settings
from core.container import container
from core.health import check_cache_mirror, check_storage, get_health_status


class DownMirror:
    async def ping(self) -> bool:
        raise ConnectionError("redis unreachable")

    async def store(self, key, entry, ttl):
        raise ConnectionError("redis unreachable")

    async def remove(self, keys):
        pass

    async def clear(self):
        pass


def make_settings(tmp_path, **overrides):
    return Settings(jwt_secret_key="x" * 32, upload_dir=str(tmp_path), **overrides)


def test_check_storage_per_backend(tmp_path):
    assert check_storage(make_settings(tmp_path), "local") is True
    assert check_storage(make_settings(tmp_path / "missing"), "local") is False
    assert check_storage(make_settings(tmp_path, cloudinary_url=None), "cloudinary") is False
    assert check_storage(make_settings(tmp_path, cloudinary_url="cloudinary://k:s@demo"), "cloudinary") is True
    assert check_storage(make_settings(tmp_path), "base64") is True


async def test_mirror_check():
    assert await check_cache_mirror(CacheManager()) is None
    assert await check_cache_mirror(CacheManager(mirror=DownMirror())) is False


async def test_unreachable_mirror_does_not_degrade(database, tmp_path):
    cache = CacheManager(mirror=DownMirror())

    health = await get_health_status(database, cache, make_settings(tmp_path), "local")

    assert health["status"] == "healthy"
    assert health["cache"]["mirror_reachable"] is False


async def test_missing_upload_dir_degrades(database, tmp_path):
    health = await get_health_status(database, CacheManager(), make_settings(tmp_path / "gone"), "local")

    assert health["status"] == "degraded"
    assert health["checks"]["storage"] is False


def test_app_starts_with_redis_down(monkeypatch):
    # Nothing listens on port 1, so the mirror connect is refused
    monkeypatch.setenv("REDIS_ENABLED", "true")
    monkeypatch.setenv("REDIS_URL", "redis://127.0.0.1:1/0")
    container.reset_singletons()
    from main import app

    try:
        with TestClient(app) as client:
            response = client.get("/api/health")
            assert container.cache().mirror is None
    finally:
        container.reset_singletons()

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["cache"]["mirror_reachable"] is None
