import asyncio
import enum
import time
from collections import deque
from typing import Any

from heic_relay.config import RelaySettings
from heic_relay.logger import format_bytes, get_logger

from .cell import ConverterCell
from .errors import ConversionTimeout, EngineFailure, RecordNotFound, error_message
from .interfaces import EngineFactory, RecordStore
from .models import RELAY_TARGET, Action, ConversionRequest, ConversionResult, request_key, result_key

_logger = get_logger("relay_host")


class CellState(str, enum.Enum):
    ABSENT = "absent"
    INITIALIZING = "initializing"
    READY = "ready"


class RelayHost:
    """Singleton coordinator that owns the converter cell and its queue.

    Requests arrive as fire-and-forget notifications and are drained one at a
    time; the `processing` flag guarantees a single drain loop so the cell is
    never asked to convert two payloads at once. Every dequeued request ends
    with a result record in the bulk store, success or failure.
    """

    def __init__(self, bulk: RecordStore, engine_factory: EngineFactory, settings: RelaySettings) -> None:
        self._bulk = bulk
        self._engine_factory = engine_factory
        self._settings = settings
        self._queue: deque[str] = deque()
        self._processing = False
        self._drain_task: asyncio.Task | None = None
        self._cell: ConverterCell | None = None
        self._cell_state = CellState.ABSENT
        self._ready = asyncio.Event()
        self._pending: dict[str, asyncio.Future] = {}
        self._conversions_on_cell = 0
        self._current: str | None = None

    @property
    def cell_state(self) -> CellState:
        return self._cell_state

    @property
    def processing(self) -> bool:
        return self._processing

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    def on_message(self, message: dict[str, Any]) -> None:
        if message.get("target") != RELAY_TARGET:
            return
        if message.get("action") == Action.CONVERT and message.get("requestId"):
            self.enqueue(str(message["requestId"]))

    def enqueue(self, request_id: str) -> None:
        if request_id == self._current or request_id in self._queue:
            _logger.info("%s already queued, ignoring repeat notification", request_id)
            return
        _logger.info("queuing conversion for %s", request_id)
        self._queue.append(request_id)
        if not self._processing and (self._drain_task is None or self._drain_task.done()):
            self._drain_task = asyncio.create_task(self._process_queue())

    async def idle(self) -> None:
        """Wait until the queue is drained."""
        while self._processing or self._queue:
            task = self._drain_task
            if task is not None and not task.done():
                await asyncio.shield(task)
            else:
                await asyncio.sleep(0)

    async def _process_queue(self) -> None:
        if self._processing:
            _logger.debug("queue already processing, skipping")
            return
        self._processing = True
        try:
            while self._queue:
                request_id = self._queue.popleft()
                self._current = request_id
                _logger.info("processing %s, %d remaining", request_id, len(self._queue))
                try:
                    await self._process_conversion(request_id)
                except Exception as e:
                    msg = error_message(e)
                    expected = isinstance(e, (RecordNotFound, ConversionTimeout, EngineFailure))
                    _logger.error("[%s] FAILED - %s", request_id, msg, exc_info=not expected)
                    try:
                        await self._bulk.set(result_key(request_id), ConversionResult.failed(request_id, msg).to_record())
                    except Exception:
                        _logger.error("[%s] could not store failure result", request_id, exc_info=True)
                finally:
                    self._current = None
        finally:
            self._processing = False
        _logger.info("queue empty, processing complete")

    async def _process_conversion(self, request_id: str) -> None:
        started = time.perf_counter()

        def log(msg: str) -> None:
            _logger.info("[%s] (%.0fms) %s", request_id, (time.perf_counter() - started) * 1000, msg)

        if await self._bulk.get(result_key(request_id)) is not None:
            log("result already stored, skipping duplicate")
            return

        record = await self._bulk.get(request_key(request_id))
        if not isinstance(record, dict) or not record.get("data"):
            raise RecordNotFound("No image data found in bulk store - data may have been cleared")
        request = ConversionRequest.from_record(request_id, record)
        log(f"data loaded: {request.file_name}, size {format_bytes(len(request.data))}")

        await self._setup_cell()
        log("cell ready")

        reply = await self._round_trip(request)
        if not reply.get("success"):
            await self.reset_cell()
            raise EngineFailure(error_message(reply.get("error") or "Conversion failed in converter cell (unknown error)"))

        result = ConversionResult.ok(request_id, str(reply.get("payload") or ""), str(reply.get("fileName") or ""))
        await self._bulk.set(result_key(request_id), result.to_record())
        log(f"SUCCESS, output {format_bytes(len(result.data or ''))}")

        self._conversions_on_cell += 1
        if self._settings.cell_recycle_after and self._conversions_on_cell >= self._settings.cell_recycle_after:
            log(f"recycling cell after {self._conversions_on_cell} conversions")
            await self.reset_cell()

    async def _round_trip(self, request: ConversionRequest) -> dict[str, Any]:
        if self._cell is None:
            raise EngineFailure("converter cell is not running")
        timeout = self._settings.item_deadline(len(request.data))
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request.request_id] = fut
        self._cell.post_message({
            "action": Action.CONVERT_HEIC,
            "requestId": request.request_id,
            "payload": request.data,
            "fileName": request.file_name,
        })
        try:
            return await asyncio.wait_for(fut, timeout=timeout)
        except asyncio.TimeoutError:
            await self.reset_cell()
            raise ConversionTimeout(
                f"Converter cell timeout (limit: {int(timeout * 1000)}ms) - "
                f"File: {request.file_name}, Size: {format_bytes(len(request.data))}"
            ) from None
        finally:
            self._pending.pop(request.request_id, None)

    async def _setup_cell(self) -> None:
        if self._cell is not None and self._cell_state is CellState.READY:
            return
        if self._cell is not None:
            _logger.info("resetting cell that never became ready")
            await self.reset_cell()

        self._cell_state = CellState.INITIALIZING
        self._ready = asyncio.Event()
        self._cell = ConverterCell(self._engine_factory, self._on_cell_message, self._settings)
        self._cell.start()
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=self._settings.handshake_timeout)
        except asyncio.TimeoutError:
            # A missing handshake does not mean the cell is unusable
            _logger.info("cell ready timeout, proceeding anyway")
        self._cell_state = CellState.READY

    def _on_cell_message(self, message: dict[str, Any]) -> None:
        # Cell replies are delivered asynchronously, like a posted message
        asyncio.get_running_loop().call_soon(self._handle_cell_message, message)

    def _handle_cell_message(self, message: dict[str, Any]) -> None:
        action = message.get("action")
        if action == Action.READY:
            self._ready.set()
        elif action == Action.LOG:
            level = {"error": 40, "warn": 30}.get(str(message.get("level")), 20)
            _logger.getChild("cell").log(level, "%s", message.get("message"))
        elif action == Action.CONVERT_RESULT:
            fut = self._pending.pop(str(message.get("requestId")), None)
            if fut is not None and not fut.done():
                fut.set_result(message)

    async def reset_cell(self) -> None:
        """Tear the cell down; the next item builds a fresh one."""
        cell, self._cell = self._cell, None
        self._cell_state = CellState.ABSENT
        self._conversions_on_cell = 0
        if cell is not None:
            await cell.close()

    async def close(self) -> None:
        self._queue.clear()
        task = self._drain_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._processing = False
        await self.reset_cell()
