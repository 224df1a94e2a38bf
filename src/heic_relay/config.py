import os
from dataclasses import dataclass
from pathlib import Path

MIB = 1024 * 1024


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@dataclass(frozen=True)
class RelaySettings:
    """Intervals, deadlines and limits shared by every relay context.

    All durations are seconds. Polling is the only completion signal between
    contexts, so each poll interval is paired with its own deadline.
    """

    # Page agent: result polling on the signal tier
    page_poll_interval: float = 0.5
    page_timeout: float = 60.0

    # Dispatcher: result polling on the bulk tier
    dispatcher_poll_interval: float = 0.3
    dispatcher_timeout: float = 60.0
    relay_warmup: float = 0.5
    # Platform restarts a terminated dispatcher after this long
    dispatcher_restart_delay: float = 1.0

    # Relay host: converter cell handshake and per-item deadlines
    handshake_timeout: float = 3.0
    item_timeout: float = 60.0
    large_item_timeout: float = 90.0
    cell_recycle_after: int = 50

    # Converter cell: engine race timer
    engine_timeout: float = 30.0
    large_engine_timeout: float = 60.0
    large_payload_threshold: int = 10 * MIB
    output_quality: float = 0.8

    # Durable record store; a signal quota of 0 means unbounded
    signal_quota_bytes: int = 0
    sqlite_busy_timeout_ms: int = 5000

    def item_deadline(self, payload_length: int) -> float:
        if payload_length > self.large_payload_threshold:
            return self.large_item_timeout
        return self.item_timeout

    def engine_deadline(self, input_size: int) -> float:
        if input_size > self.large_payload_threshold:
            return self.large_engine_timeout
        return self.engine_timeout

    @classmethod
    def from_env(cls) -> "RelaySettings":
        d = cls()
        return cls(
            page_poll_interval=_env_float("HEIC_RELAY_PAGE_POLL_INTERVAL", d.page_poll_interval),
            page_timeout=_env_float("HEIC_RELAY_PAGE_TIMEOUT", d.page_timeout),
            dispatcher_poll_interval=_env_float("HEIC_RELAY_DISPATCHER_POLL_INTERVAL", d.dispatcher_poll_interval),
            dispatcher_timeout=_env_float("HEIC_RELAY_DISPATCHER_TIMEOUT", d.dispatcher_timeout),
            relay_warmup=_env_float("HEIC_RELAY_RELAY_WARMUP", d.relay_warmup),
            dispatcher_restart_delay=_env_float("HEIC_RELAY_DISPATCHER_RESTART_DELAY", d.dispatcher_restart_delay),
            handshake_timeout=_env_float("HEIC_RELAY_HANDSHAKE_TIMEOUT", d.handshake_timeout),
            item_timeout=_env_float("HEIC_RELAY_ITEM_TIMEOUT", d.item_timeout),
            large_item_timeout=_env_float("HEIC_RELAY_LARGE_ITEM_TIMEOUT", d.large_item_timeout),
            cell_recycle_after=_env_int("HEIC_RELAY_CELL_RECYCLE_AFTER", d.cell_recycle_after),
            engine_timeout=_env_float("HEIC_RELAY_ENGINE_TIMEOUT", d.engine_timeout),
            large_engine_timeout=_env_float("HEIC_RELAY_LARGE_ENGINE_TIMEOUT", d.large_engine_timeout),
            large_payload_threshold=_env_int("HEIC_RELAY_LARGE_PAYLOAD_BYTES", d.large_payload_threshold),
            output_quality=_env_float("HEIC_RELAY_OUTPUT_QUALITY", d.output_quality),
            signal_quota_bytes=_env_int("HEIC_RELAY_SIGNAL_QUOTA_BYTES", d.signal_quota_bytes),
            sqlite_busy_timeout_ms=_env_int("HEIC_RELAY_SQLITE_BUSY_TIMEOUT_MS", d.sqlite_busy_timeout_ms),
        )


def data_dir() -> Path:
    return Path(os.getenv("DATA_DIR", "./data")).resolve()
