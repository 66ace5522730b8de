from datetime import datetime, timedelta, timezone

import pytest

from conftest import bearer, create_user, login
from services.activity import ActivityLogger
from services.daily_updates import DailyUpdateService, compute_expiry

START = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)


class MovableNow:
    def __init__(self, value: datetime):
        self.value = value

    def __call__(self) -> datetime:
        return self.value


@pytest.fixture
def now():
    return MovableNow(START)


@pytest.fixture
def service(database, now):
    return DailyUpdateService(database, ActivityLogger(database), now=now)


def test_compute_expiry():
    assert compute_expiry("hours", 3, START) == START + timedelta(hours=3)
    assert compute_expiry("days", 2, START) == START + timedelta(days=2)
    assert compute_expiry("permanent", 5, START) is None
    with pytest.raises(ValueError):
        compute_expiry("weeks", 1, START)


async def test_defaults_expire_after_a_day(service, now):
    update = await service.create_update({"title": " שלום ", "content": "תוכן"})

    assert update.title == "שלום"
    assert (update.type, update.priority, update.duration_type) == ("info", 5, "hours")
    assert [u.id for u in await service.list_updates()] == [update.id]

    now.value = START + timedelta(hours=25)
    assert await service.list_updates() == []
    assert len(await service.list_updates(include_all=True)) == 1


async def test_permanent_update_never_expires(service, now):
    update = await service.create_update({
        "title": "t", "content": "c", "duration_type": "permanent", "duration_value": 3,
    })

    assert update.expires_at is None
    assert update.duration_value is None
    now.value = START + timedelta(days=365)
    assert len(await service.list_updates()) == 1


async def test_hidden_updates_only_for_managers(service):
    update = await service.create_update({"title": "t", "content": "c", "is_hidden": True})

    assert await service.list_updates() == []
    assert await service.get_update(update.id) is None
    assert (await service.get_update(update.id, include_hidden=True)).id == update.id


async def test_validation(service):
    with pytest.raises(ValueError):
        await service.create_update({"title": "t", "content": "c", "type": "bogus"})
    with pytest.raises(ValueError):
        await service.create_update({"title": "t", "content": "c", "priority": 11})
    with pytest.raises(ValueError):
        await service.create_update({"title": "t"})


async def test_update_recomputes_expiry(service, now):
    update = await service.create_update({"title": "t", "content": "c"})
    now.value = START + timedelta(hours=10)

    changed = await service.update_update(update.id, {"duration_type": "days", "duration_value": 2})

    expected = START + timedelta(hours=10, days=2)
    assert changed.expires_at.replace(tzinfo=timezone.utc) == expected
    assert await service.update_update(999, {"title": "x"}) is None


async def test_updates_sorted_by_priority(service):
    await service.create_update({"title": "low", "content": "c", "priority": 9})
    await service.create_update({"title": "high", "content": "c", "priority": 1})

    assert [u.title for u in await service.list_updates()] == ["high", "low"]


async def test_delete(service):
    update = await service.create_update({"title": "t", "content": "c"})
    assert await service.delete_update(update.id) is True
    assert await service.delete_update(update.id) is False


def test_daily_update_routes(client, admin_headers):
    created = client.post("/api/daily-updates", headers=admin_headers, json={
        "title": "כביש סגור", "content": "עוקפים דרך צפון", "type": "warning", "priority": 2,
    })
    assert created.status_code == 201
    update_id = created.json()["update"]["id"]

    assert client.get("/api/daily-updates").json()["count"] == 1
    assert client.get(f"/api/daily-updates/{update_id}").status_code == 200

    hidden = client.put(f"/api/daily-updates/{update_id}", headers=admin_headers, json={"is_hidden": True})
    assert hidden.json()["update"]["is_hidden"] is True
    assert client.get("/api/daily-updates").json()["count"] == 0
    assert client.get(f"/api/daily-updates/{update_id}").status_code == 404
    assert client.get("/api/daily-updates", headers=admin_headers).json()["count"] == 1

    assert client.delete(f"/api/daily-updates/{update_id}", headers=admin_headers).status_code == 200
    assert client.delete(f"/api/daily-updates/{update_id}", headers=admin_headers).status_code == 404


def test_daily_update_route_validation_and_gate(client, admin_headers):
    bad = client.post("/api/daily-updates", headers=admin_headers, json={
        "title": "t", "content": "c", "type": "bogus",
    })
    assert bad.status_code == 400

    assert client.post("/api/daily-updates", json={"title": "t", "content": "c"}).status_code == 401

    create_user(client, admin_headers, "driver", role="driver_manager")
    driver = bearer(login(client, "driver", "user-password-123"))
    assert client.post("/api/daily-updates", headers=driver, json={"title": "t", "content": "c"}).status_code == 201


async def test_settings(service):
    assert await service.get_setting("fallback_message") is None

    await service.set_setting("fallback_message", "  אין עדכונים היום ")
    saved = await service.set_setting("fallback_message", "אין עדכונים")

    assert saved.value == "אין עדכונים"
    assert (await service.get_setting("fallback_message")).value == "אין עדכונים"
    with pytest.raises(ValueError):
        await service.set_setting("fallback_message", "   ")
    with pytest.raises(ValueError):
        await service.set_setting("fallback_message", 5)


def test_setting_routes(client, admin_headers):
    url = "/api/daily-updates/settings/fallback_message"
    assert client.get(url).status_code == 404
    assert client.put(url, json={"value": "x"}).status_code == 401
    assert client.put(url, headers=admin_headers, json={"value": " "}).status_code == 400

    saved = client.put(url, headers=admin_headers, json={"value": " No updates today "})
    assert saved.status_code == 200
    assert client.get(url).json() == {"success": True, "key": "fallback_message", "value": "No updates today"}
