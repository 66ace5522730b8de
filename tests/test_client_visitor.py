import json

import httpx
import pytest

from client.api_client import ApiClient
from client.local_store import LocalStore
from client.session import SessionContext
from client.visitor import NAME_MODAL_SHOWN_KEY, REGISTERED_KEY, VISITOR_ID_KEY, VisitorTracker


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FakeVisitorServer:
    """In-memory stand-in for /api/visitors."""

    def __init__(self):
        self.profiles = {}
        self.requests = []
        self.fail_with = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with
        if request.method == "POST":
            body = json.loads(request.content)
            name = body["name"].strip()
            if len(name) < 2:
                return httpx.Response(400, json={"success": False, "error": "Name too short"})
            self.profiles[body["visitorId"]] = name
            return httpx.Response(200, json={
                "success": True,
                "profile": {"visitor_id": body["visitorId"], "name": name},
                "isNew": True,
            })
        visitor_id = request.url.params["visitorId"]
        if visitor_id not in self.profiles:
            return httpx.Response(404, json={"success": False, "error": "Visitor profile not found"})
        return httpx.Response(200, json={
            "success": True,
            "profile": {"visitor_id": visitor_id, "name": self.profiles[visitor_id]},
        })


@pytest.fixture
def server():
    return FakeVisitorServer()


@pytest.fixture
async def store():
    async with LocalStore() as local_store:
        yield local_store


@pytest.fixture
async def api(server):
    client = ApiClient(SessionContext(base_url="http://hub.test"),
                       transport=httpx.MockTransport(server.handler))
    yield client
    await client.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tracker(store, api, clock):
    return VisitorTracker(store, api, clock=clock)


async def test_identity_is_generated_once_and_persisted(tracker, store):
    first = await tracker.get_or_create_visitor()
    second = await tracker.get_or_create_visitor()

    assert first.visitor_id.startswith("visitor_")
    assert first.session_id.startswith("session_")
    assert second.visitor_id == first.visitor_id
    assert await store.get(VISITOR_ID_KEY) == first.visitor_id
    assert first.is_registered is False


async def test_register_saves_locally_only_after_server_ack(tracker, server):
    assert await tracker.register_visitor("Dana") is True

    identity = await tracker.get_or_create_visitor()
    assert identity.name == "Dana"
    assert identity.is_registered is True
    assert server.profiles[identity.visitor_id] == "Dana"


async def test_rejected_registration_leaves_local_state_alone(tracker):
    assert await tracker.register_visitor("D") is False

    identity = await tracker.get_or_create_visitor()
    assert identity.name is None
    assert identity.is_registered is False


async def test_network_failure_during_registration(tracker, server):
    server.fail_with = httpx.ConnectError("offline")

    assert await tracker.register_visitor("Dana") is False
    assert (await tracker.get_or_create_visitor()).is_registered is False


async def test_server_cleared_name_revokes_local_registration(tracker, server, store, clock):
    """Register Dana, admin clears the name, the next reconcile drops local state."""
    await store.set(VISITOR_ID_KEY, "abc123")
    assert await tracker.register_visitor("Dana") is True
    assert (await tracker.get_or_create_visitor()).is_registered is True

    del server.profiles["abc123"]
    clock.now += 11
    assert await tracker.reconcile() is True

    identity = await tracker.get_or_create_visitor()
    assert identity.visitor_id == "abc123"
    assert identity.is_registered is False
    assert identity.name is None
    assert await store.get(REGISTERED_KEY) is None
    assert await store.get(NAME_MODAL_SHOWN_KEY) is None


async def test_empty_server_name_also_revokes(tracker, server, clock):
    await tracker.register_visitor("Dana")
    visitor_id = (await tracker.get_or_create_visitor()).visitor_id
    server.profiles[visitor_id] = ""

    clock.now += 11
    await tracker.reconcile()
    assert (await tracker.get_or_create_visitor()).is_registered is False


async def test_server_name_overwrites_local(tracker, server, clock):
    await tracker.register_visitor("Xavier")
    visitor_id = (await tracker.get_or_create_visitor()).visitor_id
    server.profiles[visitor_id] = "Yael"

    clock.now += 11
    await tracker.reconcile()

    identity = await tracker.get_or_create_visitor()
    assert identity.name == "Yael"
    assert identity.is_registered is True


async def test_reconcile_is_throttled(tracker, server, clock):
    await tracker.get_or_create_visitor()
    assert await tracker.reconcile() is True
    calls = len(server.requests)

    clock.now += 5
    assert await tracker.reconcile() is False
    assert len(server.requests) == calls

    assert await tracker.reconcile(force=True) is True
    clock.now += 10
    assert await tracker.reconcile() is True


async def test_network_error_during_reconcile_keeps_local_state(tracker, server, clock):
    await tracker.register_visitor("Dana")
    server.fail_with = httpx.ConnectError("offline")

    clock.now += 11
    assert await tracker.reconcile() is False

    identity = await tracker.get_or_create_visitor()
    assert identity.name == "Dana"
    assert identity.is_registered is True
