from typing import Any, Callable, Protocol


class ConversionEngine(Protocol):
    def convert(self, data: bytes, *, to_type: str, quality: float) -> bytes | list[bytes]:
        """Convert encoded image bytes into the requested type synchronously.

        This is a blocking call; the converter cell runs it in a worker thread.
        Multi-image containers may come back as a list, one entry per image.
        """


class RecordStore(Protocol):
    async def set(self, key: str, value: Any) -> None:
        ...

    async def get(self, key: str) -> Any | None:
        ...

    async def remove(self, keys: str | list[str]) -> None:
        ...

    async def clear(self) -> None:
        ...

    async def keys(self) -> list[str]:
        ...


class Notifier(Protocol):
    def show_error(self, message: str) -> None:
        ...


EngineFactory = Callable[[], ConversionEngine]
MessageSink = Callable[[dict[str, Any]], None]
