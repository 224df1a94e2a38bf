"""Shared test fixtures for the HEIC relay."""

import asyncio
import threading
import time
from typing import Any

import pytest

from heic_relay.config import RelaySettings
from heic_relay.relay.adapters import JsonFileStore, SqliteRecordStore
from heic_relay.relay.context import RuntimeContext
from heic_relay.relay.models import Action, to_data_uri

JPEG_BYTES = b"\xff\xd8\xff\xe0fake-jpeg\xff\xd9"


class FakeEngine:
    """Stand-in for libvips: records calls and returns canned output."""

    def __init__(self, output: Any = JPEG_BYTES, fail_on: dict[bytes, Exception] | None = None, delay: float = 0.0):
        self.output = output
        self.fail_on = fail_on or {}
        self.delay = delay
        self.calls: list[bytes] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def convert(self, data: bytes, *, to_type: str, quality: float):
        with self._lock:
            self.calls.append(data)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if data in self.fail_on:
                raise self.fail_on[data]
            return self.output
        finally:
            with self._lock:
                self.active -= 1


class SilentCell:
    """Converter cell double that never sends READY.

    With `reply` set it answers every conversion with a fixed JPEG, otherwise
    it never answers at all.
    """

    instances: list["SilentCell"] = []

    def __init__(self, engine_factory, post_to_parent, settings, reply: bool = True):
        self._post = post_to_parent
        self.reply = reply
        self.received: list[dict[str, Any]] = []
        self.closed = False
        SilentCell.instances.append(self)

    @property
    def busy(self) -> bool:
        return False

    def start(self) -> None:
        pass

    def post_message(self, message: dict[str, Any]) -> None:
        self.received.append(message)
        if self.reply:
            self._post({
                "action": Action.CONVERT_RESULT,
                "requestId": message["requestId"],
                "success": True,
                "payload": to_data_uri(JPEG_BYTES, "image/jpeg"),
                "fileName": "silent.jpg",
            })

    async def close(self) -> None:
        self.closed = True


class MuteCell(SilentCell):
    def __init__(self, engine_factory, post_to_parent, settings):
        super().__init__(engine_factory, post_to_parent, settings, reply=False)


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01):
    """Poll an (optionally async) predicate until it returns something truthy."""
    deadline = time.monotonic() + timeout
    while True:
        value = predicate()
        if asyncio.iscoroutine(value):
            value = await value
        if value:
            return value
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


def heic_uri(data: bytes = b"heic-bytes") -> str:
    return to_data_uri(data, "image/heic")


@pytest.fixture
def fast_settings():
    return RelaySettings(
        page_poll_interval=0.01,
        page_timeout=3.0,
        dispatcher_poll_interval=0.01,
        dispatcher_timeout=3.0,
        relay_warmup=0.0,
        dispatcher_restart_delay=0.05,
        handshake_timeout=0.5,
        item_timeout=2.0,
        large_item_timeout=2.0,
        engine_timeout=1.0,
        large_engine_timeout=1.0,
    )


@pytest.fixture
def runtime_context():
    return RuntimeContext()


@pytest.fixture
def signal_store(tmp_path, runtime_context, fast_settings):
    return JsonFileStore(tmp_path / "signal", runtime_context, quota_bytes=fast_settings.signal_quota_bytes)


@pytest.fixture
def bulk_store(tmp_path, runtime_context, fast_settings):
    return SqliteRecordStore(
        tmp_path / "bulk.sqlite3", runtime_context, busy_timeout_ms=fast_settings.sqlite_busy_timeout_ms
    )


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture(autouse=True)
def _reset_cell_doubles():
    SilentCell.instances.clear()
    yield
    SilentCell.instances.clear()
