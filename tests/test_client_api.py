import httpx
import pytest

from client.api_client import ApiClient, ApiError
from client.session import SessionContext
from core.cache import CacheManager


class CountingServer:
    def __init__(self):
        self.calls = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if request.url.path == "/api/missing":
            return httpx.Response(404, json={"success": False, "error": "Task not found"})
        return httpx.Response(200, json={
            "success": True,
            "call": self.calls,
            "auth": request.headers.get("Authorization"),
        })


@pytest.fixture
def server():
    return CountingServer()


@pytest.fixture
async def api(server):
    client = ApiClient(SessionContext(base_url="http://hub.test", token="abc"),
                       cache=CacheManager(), transport=httpx.MockTransport(server.handler))
    yield client
    await client.close()


async def test_session_token_is_sent(api):
    body = await api.get_json("/api/tasks", use_cache=False)
    assert body["auth"] == "Bearer abc"


async def test_reads_are_cached_per_params(api, server):
    first = await api.get_json("/api/tasks", params={"project_id": 1})
    again = await api.get_json("/api/tasks", params={"project_id": 1})
    other = await api.get_json("/api/tasks", params={"project_id": 2})

    assert first == again
    assert other["call"] == 2
    assert server.calls == 2


async def test_invalidate_by_url_prefix(api, server):
    await api.get_json("/api/tasks")
    await api.get_json("/api/projects")

    assert api.invalidate("/api/tasks") == 1
    await api.get_json("/api/tasks")
    assert server.calls == 3


async def test_error_status_raises_api_error(api):
    with pytest.raises(ApiError) as excinfo:
        await api.get_json("/api/missing")

    assert excinfo.value.status_code == 404
    assert excinfo.value.message == "Task not found"


def test_session_with_token_copies():
    session = SessionContext(base_url="http://hub.test", default_headers={"X-Client": "tests"})
    authed = session.with_token("t")

    assert session.auth_headers() == {"X-Client": "tests"}
    assert authed.auth_headers() == {"X-Client": "tests", "Authorization": "Bearer t"}
