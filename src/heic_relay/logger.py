import logging
import os
import sys

BASE_LOGGER = "heic_relay"
_LEVELS = {"debug", "info", "warning", "error", "critical"}


class ContextFilter(logging.Filter):
    """Only let through records from the named relay contexts.

    Matches on the last segment of the logger name, so "cell" admits
    `heic_relay.relay_host.cell` as well as `heic_relay.cell`.
    """

    def __init__(self, contexts: set[str]) -> None:
        super().__init__()
        self.contexts = contexts

    def filter(self, record: logging.LogRecord) -> bool:
        return record.name.rsplit(".", 1)[-1] in self.contexts


def setup_logger(level: int = logging.INFO) -> logging.Logger:
    """Configure the `heic_relay` logger from HEIC_RELAY_LOG_LEVEL / HEIC_RELAY_LOG_CATS.

    Safe to call repeatedly: the single stderr handler is reused and its
    filter rebuilt from the current environment.
    """
    logger = logging.getLogger(BASE_LOGGER)
    env_level = os.getenv("HEIC_RELAY_LOG_LEVEL", "").strip().lower()
    logger.setLevel(env_level.upper() if env_level in _LEVELS else level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s", "%H:%M:%S"))
        logger.addHandler(handler)
    logger.propagate = False

    handler = logger.handlers[0]
    handler.filters.clear()
    contexts = {c.strip() for c in os.getenv("HEIC_RELAY_LOG_CATS", "").split(",") if c.strip()}
    if contexts:
        handler.addFilter(ContextFilter(contexts))
    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    base = setup_logger()
    return base.getChild(name) if name else base


def format_bytes(size: int | None) -> str:
    if not size:
        return "0 B"
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.2f} MB"
