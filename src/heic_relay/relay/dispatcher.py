import asyncio
import time
from typing import TYPE_CHECKING, Any

from heic_relay.config import RelaySettings
from heic_relay.logger import get_logger

from .context import ContextType
from .errors import ConversionTimeout, RecordNotFound, RelayHostExists, error_message
from .interfaces import RecordStore
from .models import (
    RELAY_TARGET,
    REQUEST_PREFIX,
    SWEPT_PREFIXES,
    Action,
    ConversionRequest,
    ConversionResult,
    request_key,
    result_key,
)

if TYPE_CHECKING:
    from .runtime import ExtensionRuntime

_logger = get_logger("dispatcher")


class Dispatcher:
    """Ephemeral orchestrator woken by the runtime for each notification.

    Nothing here outlives the instance: every conversion is rebuilt from the
    request id and what the record stores hold, so a replacement dispatcher
    given the same id picks up where a terminated one stopped. A dispatcher
    started after a termination finds that id itself through
    `resume_pending`.
    """

    def __init__(self, runtime: "ExtensionRuntime", signal: RecordStore, bulk: RecordStore, settings: RelaySettings) -> None:
        self._runtime = runtime
        self._signal = signal
        self._bulk = bulk
        self._settings = settings
        # Only guards creation within this instance; lost on restart
        self._creating: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._in_flight: set[str] = set()

    @property
    def active(self) -> int:
        return len(self._tasks)

    def on_message(self, message: dict[str, Any]) -> None:
        if message.get("target") == RELAY_TARGET:
            return
        if message.get("action") == Action.CONVERT and message.get("requestId"):
            request_id = str(message["requestId"])
            _logger.info("received %s request for %s", Action.CONVERT, request_id)
            self._start(request_id)

    def _start(self, request_id: str) -> bool:
        if request_id in self._in_flight:
            _logger.debug("request %s already in flight", request_id)
            return False
        self._in_flight.add(request_id)
        task = asyncio.create_task(self._run(request_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(lambda _t: self._in_flight.discard(request_id))
        return True

    def resume_pending(self) -> None:
        """Pick up a request left unresolved by a terminated predecessor."""
        task = asyncio.create_task(self._resume())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _resume(self) -> None:
        try:
            pending = await self.unresolved_requests()
        except Exception:
            _logger.error("could not scan for unresolved requests", exc_info=True)
            return
        if not pending:
            _logger.info("no unresolved requests to resume")
            return
        # Only one request is active at a time; anything older is swept by it
        newest = max(pending, key=lambda i: (len(i), i))
        if self._start(newest):
            _logger.info("resuming unresolved request %s", newest)

    async def unresolved_requests(self) -> list[str]:
        """Ids with a staged request in either tier and no published result."""
        ids: set[str] = set()
        for store in (self._bulk, self._signal):
            ids.update(k[len(REQUEST_PREFIX):] for k in await store.keys() if k.startswith(REQUEST_PREFIX))
        pending = []
        for request_id in sorted(ids):
            if await self._signal.get(result_key(request_id)) is None:
                pending.append(request_id)
        return pending

    async def _run(self, request_id: str) -> None:
        try:
            await self.perform_conversion(request_id)
            _logger.info("conversion completed for %s", request_id)
        except Exception as e:
            msg = error_message(e)
            _logger.error("conversion error for %s: %s", request_id, msg)
            try:
                await self._signal.set(result_key(request_id), ConversionResult.failed(request_id, msg).to_record())
            except Exception:
                _logger.error("could not publish failure for %s", request_id, exc_info=True)

    async def terminate(self) -> None:
        tasks = list(self._tasks)
        if self._creating is not None:
            tasks.append(self._creating)
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._in_flight.clear()
        self._creating = None

    async def cleanup_stale(self, current_request_id: str) -> None:
        """Drop request/result records in both tiers that belong to other ids."""
        keep = {request_key(current_request_id), result_key(current_request_id)}
        for tier, store in (("signal", self._signal), ("bulk", self._bulk)):
            try:
                stale = [k for k in await store.keys() if k not in keep and k.startswith(SWEPT_PREFIXES)]
                if stale:
                    await store.remove(stale)
                    _logger.info("cleaned up %d old %s keys", len(stale), tier)
            except Exception:
                _logger.error("cleanup error in %s store", tier, exc_info=True)

    async def perform_conversion(self, request_id: str) -> None:
        req_key = request_key(request_id)
        res_key = result_key(request_id)

        await self.cleanup_stale(request_id)

        _logger.info("reading request data for %s", request_id)
        record = await self._signal.get(req_key)
        if record is None:
            if await self._bulk.get(req_key) is None:
                raise RecordNotFound(f"No data found for request {request_id}")
            _logger.info("request %s already staged in bulk store", request_id)
        else:
            ConversionRequest.from_record(request_id, record)
            if await self._bulk.get(req_key) is None:
                await self._bulk.set(req_key, record)

        await self.ensure_relay_host()
        if self._settings.relay_warmup > 0:
            await asyncio.sleep(self._settings.relay_warmup)

        if await self._bulk.get(res_key) is None:
            self._runtime.send_message(
                {"target": RELAY_TARGET, "action": Action.CONVERT, "requestId": request_id},
                sender=ContextType.DISPATCHER,
            )
        else:
            _logger.info("result for %s already available, not notifying relay host", request_id)

        result = await self._wait_for_result(request_id)
        await self._signal.set(res_key, result)
        await self._bulk.remove([req_key, res_key])

    async def _wait_for_result(self, request_id: str) -> dict[str, Any]:
        res_key = result_key(request_id)
        deadline = time.monotonic() + self._settings.dispatcher_timeout
        while time.monotonic() < deadline:
            result = await self._bulk.get(res_key)
            if result is not None:
                _logger.info("got result from bulk store for %s", request_id)
                return result
            await asyncio.sleep(self._settings.dispatcher_poll_interval)
        raise ConversionTimeout("Conversion timeout")

    async def ensure_relay_host(self) -> None:
        existing = await self._runtime.get_contexts(ContextType.RELAY_HOST)
        if existing:
            _logger.debug("relay host already exists")
            return

        if self._creating is not None:
            await self._creating
            return
        self._creating = asyncio.create_task(self._create_relay_host())
        try:
            await self._creating
        finally:
            self._creating = None

    async def _create_relay_host(self) -> None:
        try:
            await self._runtime.create_relay_host()
            _logger.info("relay host created")
        except RelayHostExists:
            # Another dispatcher instance won the race
            _logger.info("relay host created concurrently, reusing it")
