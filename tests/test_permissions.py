import asyncio

import pytest

from constants import (
    ACCESS_ADMIN_DASHBOARD, ACCESS_ANALYTICS, CREATE_TASKS, EDIT_TASKS, EDIT_USERS, ROLE_ADMIN, ROLE_DRIVER_MANAGER,
)
from models.auth import AppUser
from services.activity import ActivityLogger
from services.permissions import SOURCE_ROLE, SOURCE_USER, PermissionResolver, UserNotFoundError


@pytest.fixture
def resolver(database):
    return PermissionResolver(database, ActivityLogger(database))


@pytest.fixture
async def driver(database):
    return await database.create_user(AppUser.create(
        username="driver", email="driver@example.com", password="driver-pass-123", role=ROLE_DRIVER_MANAGER,
    ))


async def test_role_defaults_seed_the_map(resolver, driver):
    effective = await resolver.get_effective_permissions(driver.id)

    assert effective[ACCESS_ADMIN_DASHBOARD].value is True
    assert effective[ACCESS_ADMIN_DASHBOARD].source == SOURCE_ROLE
    assert effective[ACCESS_ANALYTICS].value is False


async def test_override_wins_over_role_default(resolver, database, driver):
    await database.upsert_user_permissions(driver.id, {ACCESS_ANALYTICS: True})

    effective = await resolver.get_effective_permissions(driver.id)
    assert effective[ACCESS_ANALYTICS].value is True
    assert effective[ACCESS_ANALYTICS].source == SOURCE_USER
    assert effective[ACCESS_ADMIN_DASHBOARD].source == SOURCE_ROLE


async def test_update_writes_only_the_delta(resolver, database, driver):
    changed = await resolver.update_permissions(driver.id, {
        ACCESS_ADMIN_DASHBOARD: True,   # already true via role
        ACCESS_ANALYTICS: True,
    })

    assert changed == [ACCESS_ANALYTICS]
    overrides = await database.get_user_permissions(driver.id)
    assert [(o.permission_key, o.permission_value) for o in overrides] == [(ACCESS_ANALYTICS, True)]


async def test_update_never_touches_role_rows(resolver, database, driver):
    before = {r.permission_key: r.permission_value
              for r in await database.get_role_permissions(ROLE_DRIVER_MANAGER)}

    await resolver.update_permissions(driver.id, {EDIT_TASKS: True, ACCESS_ADMIN_DASHBOARD: False})

    after = {r.permission_key: r.permission_value
             for r in await database.get_role_permissions(ROLE_DRIVER_MANAGER)}
    assert before == after


async def test_returning_to_role_value_removes_override(resolver, database, driver):
    await resolver.update_permissions(driver.id, {ACCESS_ANALYTICS: True})
    changed = await resolver.update_permissions(driver.id, {ACCESS_ANALYTICS: False})

    assert changed == [ACCESS_ANALYTICS]
    assert await database.get_user_permissions(driver.id) == []
    effective = await resolver.get_effective_permissions(driver.id)
    assert effective[ACCESS_ANALYTICS].source == SOURCE_ROLE


async def test_update_invalidates_cached_map(resolver, driver):
    assert await resolver.has_permission(driver.id, driver.role, ACCESS_ANALYTICS) is False

    await resolver.update_permissions(driver.id, {ACCESS_ANALYTICS: True})

    assert await resolver.has_permission(driver.id, driver.role, ACCESS_ANALYTICS) is True


async def test_unknown_user_fails_before_any_write(resolver, database):
    with pytest.raises(UserNotFoundError):
        await resolver.update_permissions(9999, {ACCESS_ANALYTICS: True})
    assert await database.get_user_permissions(9999) == []


async def test_unknown_key_and_non_bool_rejected(resolver, driver):
    with pytest.raises(ValueError):
        await resolver.update_permissions(driver.id, {"access.nothing": True})
    with pytest.raises(ValueError):
        await resolver.update_permissions(driver.id, {ACCESS_ANALYTICS: "yes"})


async def test_update_is_audited(resolver, database, driver):
    await resolver.update_permissions(driver.id, {ACCESS_ANALYTICS: True}, actor={"id": 1})

    rows = await database.get_activities_for_user("1")
    assert len(rows) == 1
    assert rows[0].target_id == str(driver.id)
    assert rows[0].details == {"changed": {ACCESS_ANALYTICS: True}}


async def test_admin_passes_every_check(resolver, database):
    admin = await database.create_user(AppUser.create(
        username="root", email="root@example.com", password="root-pass-123", role=ROLE_ADMIN,
    ))
    assert await resolver.has_permission(admin.id, admin.role, EDIT_USERS) is True
    effective = await resolver.get_effective_permissions(admin.id)
    assert all(p.value for p in effective.values())


async def test_reset_override(resolver, driver):
    await resolver.update_permissions(driver.id, {EDIT_TASKS: True})

    assert await resolver.reset_override(driver.id, EDIT_TASKS) is True
    assert await resolver.has_permission(driver.id, driver.role, EDIT_TASKS) is False
    assert await resolver.reset_override(driver.id, EDIT_TASKS) is False


async def test_clearing_override_without_role_row_deletes_it(resolver, database, driver):
    # driver_manager has no role row for create.tasks, so its default is False
    await resolver.update_permissions(driver.id, {CREATE_TASKS: True})

    changed = await resolver.update_permissions(driver.id, {CREATE_TASKS: False})

    assert changed == [CREATE_TASKS]
    assert await database.get_user_permissions(driver.id) == []
    assert CREATE_TASKS not in await resolver.get_effective_permissions(driver.id)


async def test_read_in_flight_during_update_is_not_cached(resolver, database, driver, monkeypatch):
    read_started = asyncio.Event()
    release_read = asyncio.Event()
    original = database.get_user_permissions
    calls = 0

    async def slow_first_read(user_id):
        nonlocal calls
        calls += 1
        rows = await original(user_id)
        if calls == 1:
            read_started.set()
            await release_read.wait()
        return rows

    monkeypatch.setattr(database, "get_user_permissions", slow_first_read)

    check = asyncio.create_task(resolver.has_permission(driver.id, driver.role, ACCESS_ANALYTICS))
    await read_started.wait()
    await resolver.update_permissions(driver.id, {ACCESS_ANALYTICS: True})
    release_read.set()

    # The check that started first still answers from what it read
    assert await check is False
    assert await resolver.has_permission(driver.id, driver.role, ACCESS_ANALYTICS) is True


async def test_invalidate_all_discards_in_flight_reads(resolver, database, driver, monkeypatch):
    read_started = asyncio.Event()
    release_read = asyncio.Event()
    original = database.get_user_permissions

    async def blocked_read(user_id):
        rows = await original(user_id)
        read_started.set()
        await release_read.wait()
        return rows

    monkeypatch.setattr(database, "get_user_permissions", blocked_read)
    pending = asyncio.create_task(resolver.get_effective_permissions(driver.id))
    await read_started.wait()

    resolver.invalidate()
    release_read.set()
    await pending

    assert resolver._cache == {}
