"""Converter cell: the isolated context holding the only conversion engine.

The cell is reachable only through `post_message`. It answers every accepted
CONVERT_HEIC message with exactly one CONVERT_RESULT posted back through the
parent sink, success or not, since an unanswered request can only end as a
timeout upstream.
"""

import asyncio
import time
from typing import Any

from heic_relay.config import RelaySettings
from heic_relay.logger import format_bytes, get_logger

from .errors import EngineFailure, error_message
from .interfaces import ConversionEngine, EngineFactory, MessageSink
from .models import OUTPUT_MIME, Action, converted_name, from_data_uri, to_data_uri

_logger = get_logger("cell")


class ConverterCell:
    def __init__(self, engine_factory: EngineFactory, post_to_parent: MessageSink, settings: RelaySettings) -> None:
        self._engine_factory = engine_factory
        self._post = post_to_parent
        self._settings = settings
        self._engine: ConversionEngine | None = None
        self._inbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._main_task: asyncio.Task | None = None
        self._handlers: set[asyncio.Task] = set()
        self._converting = False

    @property
    def busy(self) -> bool:
        return self._converting

    def start(self) -> None:
        if self._main_task is None:
            self._main_task = asyncio.create_task(self._main())

    def post_message(self, message: dict[str, Any]) -> None:
        self._inbox.put_nowait(message)

    async def close(self) -> None:
        tasks = [t for t in (self._main_task, *self._handlers) if t is not None]
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._main_task = None
        self._handlers.clear()
        self._engine = None

    def _log(self, level: str, message: str) -> None:
        self._post({"action": Action.LOG, "level": level, "message": message})

    async def _main(self) -> None:
        try:
            self._engine = self._engine_factory()
        except Exception as e:
            # Stay up so requests get a failure reply instead of silence
            self._log("error", f"failed to load conversion engine: {error_message(e)}")
        self._post({"action": Action.READY})

        while True:
            message = await self._inbox.get()
            if message.get("action") != Action.CONVERT_HEIC:
                continue
            task = asyncio.create_task(self._handle(message))
            self._handlers.add(task)
            task.add_done_callback(self._handlers.discard)

    async def _handle(self, message: dict[str, Any]) -> None:
        request_id = str(message.get("requestId"))
        file_name = str(message.get("fileName") or "unknown")

        if self._converting:
            self._log("warn", f"[{request_id}] already converting, rejecting request")
            self._reply_failure(request_id, "converter cell busy")
            return

        self._converting = True
        started = time.perf_counter()
        size = 0
        try:
            _, blob = from_data_uri(str(message.get("payload") or ""))
            size = len(blob)
            if size == 0:
                raise EngineFailure("[Step 1] Empty blob received - base64 data may be corrupted")

            if self._engine is None:
                raise EngineFailure("[Step 2] conversion engine not loaded")

            deadline = self._settings.engine_deadline(size)
            _logger.debug("[%s] converting %s (%s, %.0fs limit)", request_id, file_name, format_bytes(size), deadline)
            try:
                output = await asyncio.wait_for(
                    asyncio.to_thread(
                        self._engine.convert, blob, to_type=OUTPUT_MIME, quality=self._settings.output_quality
                    ),
                    timeout=deadline,
                )
            except asyncio.TimeoutError:
                raise EngineFailure(
                    f"conversion timed out after {int(deadline * 1000)}ms (input: {format_bytes(size)})"
                ) from None

            if isinstance(output, (list, tuple)):
                output = output[0] if output else b""
            if not isinstance(output, (bytes, bytearray)) or not output:
                raise EngineFailure("conversion engine returned no image data")

            self._post({
                "action": Action.CONVERT_RESULT,
                "requestId": request_id,
                "success": True,
                "payload": to_data_uri(bytes(output), OUTPUT_MIME),
                "fileName": converted_name(file_name),
            })
            elapsed = (time.perf_counter() - started) * 1000
            self._log(
                "info",
                f"[{request_id}] SUCCESS in {elapsed:.0f}ms, input {format_bytes(size)}, output {format_bytes(len(output))}",
            )
        except Exception as e:
            elapsed = (time.perf_counter() - started) * 1000
            msg = error_message(e)
            self._log("error", f"[{request_id}] FAILED after {elapsed:.0f}ms ({file_name}, {format_bytes(size)}): {msg}")
            self._reply_failure(request_id, msg)
        finally:
            self._converting = False

    def _reply_failure(self, request_id: str, error: str) -> None:
        self._post({
            "action": Action.CONVERT_RESULT,
            "requestId": request_id,
            "success": False,
            "error": error,
        })
