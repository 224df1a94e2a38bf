import enum
import uuid

from .errors import StorageUnavailable


class RuntimeContext:
    """Liveness handle shared by everything hosted in one runtime.

    Once invalidated (an update or reload tore the runtime down) the id reads
    as None and storage access fails with StorageUnavailable.
    """

    def __init__(self) -> None:
        self._id: str | None = uuid.uuid4().hex

    @property
    def id(self) -> str | None:
        return self._id

    @property
    def valid(self) -> bool:
        return self._id is not None

    def invalidate(self) -> None:
        self._id = None

    def ensure_valid(self) -> None:
        if self._id is None:
            raise StorageUnavailable("runtime context invalidated")


class ContextType(str, enum.Enum):
    PAGE = "page"
    DISPATCHER = "dispatcher"
    RELAY_HOST = "relay_host"
