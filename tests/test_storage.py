import sqlite3

import pytest

from heic_relay.relay.adapters import JsonFileStore, SqliteRecordStore
from heic_relay.relay.errors import StorageQuotaExceeded, StorageUnavailable


@pytest.fixture(params=["signal", "bulk"])
def store(request, signal_store, bulk_store):
    return signal_store if request.param == "signal" else bulk_store


@pytest.mark.asyncio
async def test_get_returns_last_value_set(store):
    await store.set("request_1", {"data": "data:image/heic;base64,AAAA", "fileName": "a.heic"})
    await store.set("request_1", {"data": "data:image/heic;base64,BBBB", "fileName": "b.heic"})

    assert await store.get("request_1") == {"data": "data:image/heic;base64,BBBB", "fileName": "b.heic"}


@pytest.mark.asyncio
async def test_get_missing_key_is_none(store):
    assert await store.get("result_404") is None


@pytest.mark.asyncio
async def test_remove_is_idempotent_and_accepts_lists(store):
    await store.set("request_1", {"data": "x"})
    await store.set("result_1", {"success": True})

    await store.remove(["request_1", "result_1", "never_written"])
    await store.remove("request_1")

    assert await store.get("request_1") is None
    assert await store.get("result_1") is None


@pytest.mark.asyncio
async def test_clear_and_keys(store):
    await store.set("request_2", {"data": "x"})
    await store.set("convert_old", {"data": "y"})

    assert sorted(await store.keys()) == ["convert_old", "request_2"]

    await store.clear()

    assert await store.keys() == []


@pytest.mark.asyncio
async def test_invalidated_context_fails_every_operation(store, runtime_context):
    await store.set("request_1", {"data": "x"})
    runtime_context.invalidate()

    with pytest.raises(StorageUnavailable):
        await store.get("request_1")
    with pytest.raises(StorageUnavailable):
        await store.set("request_1", {"data": "y"})
    with pytest.raises(StorageUnavailable):
        await store.remove("request_1")


@pytest.mark.asyncio
async def test_signal_store_enforces_quota(tmp_path, runtime_context):
    store = JsonFileStore(tmp_path / "signal", runtime_context, quota_bytes=200)
    await store.set("request_1", {"data": "a" * 100})

    with pytest.raises(StorageQuotaExceeded):
        await store.set("request_2", {"data": "b" * 150})

    # Overwriting a key only counts its new size
    await store.set("request_1", {"data": "c" * 150})
    assert (await store.get("request_1"))["data"] == "c" * 150


@pytest.mark.asyncio
async def test_signal_store_rejects_path_like_keys(signal_store):
    with pytest.raises(ValueError):
        await signal_store.set("../escape", {"data": "x"})


@pytest.mark.asyncio
async def test_bulk_store_survives_reopen(tmp_path, runtime_context):
    path = tmp_path / "bulk.sqlite3"
    first = SqliteRecordStore(path, runtime_context)
    await first.set("request_9", {"data": "x" * 10_000, "fileName": "big.heic"})

    second = SqliteRecordStore(path, runtime_context)

    assert (await second.get("request_9"))["fileName"] == "big.heic"


def test_bulk_store_retries_transient_lock(tmp_path, runtime_context, monkeypatch):
    store = SqliteRecordStore(tmp_path / "bulk.sqlite3", runtime_context)
    attempts = []

    def flaky(conn):
        attempts.append(1)
        if len(attempts) < 3:
            raise sqlite3.OperationalError("database is locked")
        return "done"

    monkeypatch.setattr("heic_relay.relay.adapters.time.sleep", lambda _s: None)

    assert store._execute(flaky) == "done"
    assert len(attempts) == 3


def test_bulk_store_gives_up_after_retries(tmp_path, runtime_context, monkeypatch):
    store = SqliteRecordStore(tmp_path / "bulk.sqlite3", runtime_context, retries=2)
    monkeypatch.setattr("heic_relay.relay.adapters.time.sleep", lambda _s: None)

    def locked(conn):
        raise sqlite3.OperationalError("database is locked")

    with pytest.raises(sqlite3.OperationalError):
        store._execute(locked)


@pytest.mark.asyncio
async def test_signal_store_without_quota_accepts_large_records(tmp_path, runtime_context):
    store = JsonFileStore(tmp_path / "signal", runtime_context)
    await store.set("request_1", {"data": "a" * (12 * 1024 * 1024)})
    await store.set("result_1", {"data": "b" * (6 * 1024 * 1024)})

    assert len((await store.get("request_1"))["data"]) == 12 * 1024 * 1024
