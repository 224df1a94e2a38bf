"""Page agent: turns paste/drop events carrying HEIC files into JPEG uploads.

The agent lives in the host page. It owns no conversion logic; it writes a
request record, nudges the dispatcher and polls the signal tier until a
result shows up, keeping a visible placeholder in the text buffer meanwhile.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from heic_relay.config import RelaySettings
from heic_relay.logger import get_logger

from .context import ContextType, RuntimeContext
from .errors import ContextInvalidated, ConversionTimeout, EngineFailure, StorageUnavailable, error_message
from .interfaces import Notifier, RecordStore
from .models import (
    OUTPUT_MIME,
    SOURCE_MIME,
    Action,
    ConversionRequest,
    ConversionResult,
    from_data_uri,
    placeholder_text,
    request_key,
    result_key,
    to_data_uri,
)

_logger = get_logger("page_agent")

BANNER_PREFIX = "HEIC Relay"
CONTEXT_LOST_MESSAGE = (
    f"{BANNER_PREFIX}: Extension context lost. Please REFRESH this page to restore functionality."
)
CONTEXT_INVALID_MESSAGE = (
    f"{BANNER_PREFIX}: Extension context invalidated. Please REFRESH this page to restore functionality."
)


@dataclass
class TextBuffer:
    """Editable text with a selection, standing in for the page's textarea."""

    value: str = ""
    selection_start: int = 0
    selection_end: int = 0
    listeners: list[Callable[[str], None]] = field(default_factory=list)

    def set_cursor(self, start: int, end: int | None = None) -> None:
        size = len(self.value)
        self.selection_start = max(0, min(start, size))
        self.selection_end = max(self.selection_start, min(size, start if end is None else end))

    def notify_input(self) -> None:
        # The host page re-reads the buffer on input, as it would for typing
        for listener in list(self.listeners):
            listener(self.value)


def insert_placeholder(buffer: TextBuffer, text: str) -> int:
    """Replace the current selection with `text`; return where it starts."""
    start = buffer.selection_start
    end = buffer.selection_end
    buffer.value = buffer.value[:start] + text + buffer.value[end:]
    buffer.selection_start = buffer.selection_end = start + len(text)
    buffer.notify_input()
    return start


def remove_placeholder(buffer: TextBuffer, placeholder: str, position: int) -> bool:
    """Remove the first `placeholder` at or after `position`."""
    index = buffer.value.find(placeholder, position)
    if index == -1:
        return False
    buffer.value = buffer.value[:index] + buffer.value[index + len(placeholder):]
    buffer.selection_start = buffer.selection_end = index
    buffer.notify_input()
    return True


@dataclass(frozen=True)
class TransferItem:
    name: str
    data: bytes
    mime_type: str = ""


@dataclass
class PageEvent:
    kind: str
    items: list[TransferItem]
    target: TextBuffer | None = None
    client_x: int = 0
    client_y: int = 0
    screen_x: int = 0
    screen_y: int = 0
    synthetic: bool = False
    default_prevented: bool = False
    propagation_stopped: bool = False

    def prevent_default(self) -> None:
        self.default_prevented = True

    def stop_propagation(self) -> None:
        self.propagation_stopped = True


class RequestIdSource:
    """Millisecond timestamps, bumped so successive ids never repeat."""

    def __init__(self) -> None:
        self._last = 0

    def next(self) -> str:
        now = int(time.time() * 1000)
        if now <= self._last:
            now = self._last + 1
        self._last = now
        return str(now)


def is_qualifying(item: TransferItem) -> bool:
    return item.mime_type.lower() == SOURCE_MIME or item.name.lower().endswith(".heic")


class PageAgent:
    def __init__(
        self,
        context: RuntimeContext,
        signal: RecordStore,
        send_message: Callable[[dict[str, Any]], None],
        settings: RelaySettings,
        *,
        notifier: Notifier,
        dispatch: Callable[[PageEvent], None],
        ids: RequestIdSource | None = None,
    ) -> None:
        self._context = context
        self._signal = signal
        self._send = send_message
        self._settings = settings
        self._notifier = notifier
        self._dispatch = dispatch
        self._ids = ids or RequestIdSource()

    @classmethod
    def attach(
        cls,
        runtime: Any,
        *,
        notifier: Notifier,
        dispatch: Callable[[PageEvent], None],
        ids: RequestIdSource | None = None,
    ) -> "PageAgent":
        """Build an agent talking to `runtime` the way a page script would."""

        def send(message: dict[str, Any]) -> None:
            runtime.send_message(message, sender=ContextType.PAGE)

        return cls(
            runtime.context, runtime.signal, send, runtime.settings, notifier=notifier, dispatch=dispatch, ids=ids
        )

    def next_request_id(self) -> str:
        return self._ids.next()

    async def handle_event(self, event: PageEvent) -> list[TransferItem]:
        """Convert every HEIC item of a paste/drop and re-dispatch the result.

        Returns the converted files. Items are processed one after another so
        placeholder offsets stay valid in the shared buffer.
        """
        if not event.items or event.synthetic:
            return []
        if not self._context.valid:
            self._notifier.show_error(CONTEXT_INVALID_MESSAGE)
            return []

        heic_items = [i for i in event.items if is_qualifying(i)]
        if not heic_items:
            return []
        passthrough = [i for i in event.items if not is_qualifying(i)]

        event.prevent_default()
        event.stop_propagation()

        converted: list[TransferItem] = []
        for item in heic_items:
            try:
                converted.append(await self.convert_file(item, event.target))
                _logger.info("converted %s to %s", item.name, converted[-1].name)
            except ContextInvalidated:
                _logger.warning("context lost while converting %s", item.name)
                self._notifier.show_error(CONTEXT_LOST_MESSAGE)
                break
            except Exception as e:
                _logger.error("conversion failed for %s: %s", item.name, error_message(e))
                self._notifier.show_error(f"{BANNER_PREFIX}: Failed to convert {item.name}. Error: {error_message(e)}")

        if converted or passthrough:
            synthetic = PageEvent(kind=event.kind, items=converted + passthrough, target=event.target, synthetic=True)
            if event.kind == "drop":
                synthetic.client_x, synthetic.client_y = event.client_x, event.client_y
                synthetic.screen_x, synthetic.screen_y = event.screen_x, event.screen_y
            self._dispatch(synthetic)
        return converted

    async def convert_file(self, item: TransferItem, buffer: TextBuffer | None = None) -> TransferItem:
        placeholder = placeholder_text(item.name)
        position = insert_placeholder(buffer, placeholder) if buffer is not None else -1
        try:
            request_id = self.next_request_id()
            request = ConversionRequest(request_id, to_data_uri(item.data, item.mime_type or SOURCE_MIME), item.name)
            try:
                await self._signal.set(request_key(request_id), request.to_record())
            except StorageUnavailable as e:
                raise ContextInvalidated("Extension context invalidated during conversion") from e
            self._send({"action": Action.CONVERT, "requestId": request_id})

            _logger.info("waiting for conversion result for %s", request_id)
            result = await self.wait_for_result(request_id)
        finally:
            if buffer is not None and position != -1:
                remove_placeholder(buffer, placeholder, position)

        try:
            await self._signal.remove([request_key(request_id), result_key(request_id)])
        except StorageUnavailable as e:
            raise ContextInvalidated("Extension context invalidated during cleanup") from e

        if not result.success or not result.data:
            raise EngineFailure(result.error or "Conversion failed")
        _, data = from_data_uri(result.data)
        return TransferItem(result.file_name or item.name, data, OUTPUT_MIME)

    async def wait_for_result(self, request_id: str) -> ConversionResult:
        key = result_key(request_id)
        deadline = time.monotonic() + self._settings.page_timeout
        while True:
            if not self._context.valid:
                raise ContextInvalidated("Extension context invalidated during conversion. Please refresh the page.")
            try:
                record = await self._signal.get(key)
            except StorageUnavailable as e:
                raise ContextInvalidated("Extension context invalidated during conversion. Please refresh the page.") from e
            if record is not None:
                return ConversionResult.from_record(request_id, record)
            if time.monotonic() > deadline:
                raise ConversionTimeout("Conversion timeout")
            await asyncio.sleep(self._settings.page_poll_interval)
