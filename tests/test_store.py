from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from service_watchdog.errors import PersistenceFailure
from service_watchdog.models import OFFLINE, ONLINE, StatusLogEntry
from service_watchdog.store import SqliteStore

from conftest import add_service


T0 = datetime(2026, 4, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_create_find_and_save_round_trip(store) -> None:
    svc = await add_service(
        store,
        name="billing",
        url="https://billing.example.com/health",
        check_interval_ms=60_000,
        discord_webhook="https://discord.example/hook",
        coolify_webhook="https://coolify.example/deploy",
        coolify_token="tok",
        user_id="user-1",
    )
    assert svc.id
    assert svc.created_at is not None

    fresh = await store.find_by_id(svc.id)
    assert fresh.name == "billing"
    assert fresh.check_interval_ms == 60_000
    assert fresh.status == ONLINE
    assert fresh.is_deploying is False
    assert fresh.last_fail_at is None
    assert fresh.coolify_token == "tok"
    assert fresh.user_id == "user-1"

    fresh.status = OFFLINE
    fresh.is_deploying = True
    fresh.last_fail_at = T0
    assert await store.save(fresh) is True

    again = await store.find_by_id(svc.id)
    assert again.status == OFFLINE
    assert again.is_deploying is True
    assert again.last_fail_at == T0
    assert [s.id for s in await store.find()] == [svc.id]


@pytest.mark.asyncio
async def test_save_does_not_resurrect_deleted_service(store) -> None:
    svc = await add_service(store)
    assert await store.delete_service(svc.id) is True
    assert await store.save(svc) is False
    assert await store.find_by_id(svc.id) is None
    assert await store.delete_service(svc.id) is False


@pytest.mark.asyncio
async def test_update_many_resets_every_deploy_flag(store) -> None:
    a = await add_service(store, "a", is_deploying=True, status=OFFLINE)
    b = await add_service(store, "b", is_deploying=True)
    c = await add_service(store, "c")

    assert await store.update_many({"is_deploying": False}) == 3
    for svc in (a, b, c):
        assert (await store.find_by_id(svc.id)).is_deploying is False
    # Other fields are untouched.
    assert (await store.find_by_id(a.id)).status == OFFLINE


@pytest.mark.asyncio
async def test_update_many_ignores_unknown_fields(store) -> None:
    await add_service(store)
    assert await store.update_many({"url": "http://elsewhere"}) == 0


@pytest.mark.asyncio
async def test_logs_are_sorted_and_range_filtered(store) -> None:
    await store.insert_many(
        [
            StatusLogEntry("s1", ONLINE, T0 + timedelta(hours=2)),
            StatusLogEntry("s1", OFFLINE, T0),
            StatusLogEntry("s2", OFFLINE, T0 + timedelta(hours=1)),
        ]
    )
    await store.create(StatusLogEntry("s1", ONLINE, T0 - timedelta(days=3)))

    logs = await store.logs_between("s1", T0 - timedelta(hours=1))
    assert [(e.status, e.checked_at) for e in logs] == [(OFFLINE, T0), (ONLINE, T0 + timedelta(hours=2))]

    bounded = await store.logs_between("s1", T0 - timedelta(days=7), T0)
    assert [e.checked_at for e in bounded] == [T0 - timedelta(days=3)]


@pytest.mark.asyncio
async def test_insert_many_empty_is_noop(store) -> None:
    assert await store.insert_many([]) == 0


@pytest.mark.asyncio
async def test_storage_errors_surface_as_persistence_failure(tmp_path) -> None:
    db = tmp_path / "broken.db"
    db.write_bytes(b"this is not a sqlite database" * 100)
    with pytest.raises(PersistenceFailure):
        await SqliteStore(str(db)).find()


def test_schema_is_versioned(store) -> None:
    conn = sqlite3.connect(store.db_path)
    try:
        row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    finally:
        conn.close()
    assert row == ("1",)


@pytest.mark.asyncio
async def test_update_state_writes_only_watchdog_fields(store) -> None:
    svc = await add_service(store, url="http://old.invalid/health", coolify_token="old")

    edited = await store.find_by_id(svc.id)
    edited.url = "http://new.invalid/health"
    edited.coolify_token = "new"
    await store.save(edited)

    svc.status = OFFLINE
    svc.is_deploying = True
    svc.last_fail_at = T0
    assert await store.update_state(svc) is True

    fresh = await store.find_by_id(svc.id)
    assert (fresh.status, fresh.is_deploying, fresh.last_fail_at) == (OFFLINE, True, T0)
    assert fresh.url == "http://new.invalid/health"
    assert fresh.coolify_token == "new"

    await store.delete_service(svc.id)
    assert await store.update_state(svc) is False
