import logging

import pytest

from heic_relay.logger import BASE_LOGGER, ContextFilter, get_logger, setup_logger


@pytest.fixture(autouse=True)
def _restore_logger(monkeypatch):
    yield
    monkeypatch.delenv("HEIC_RELAY_LOG_LEVEL", raising=False)
    monkeypatch.delenv("HEIC_RELAY_LOG_CATS", raising=False)
    setup_logger()


def _record(name: str) -> logging.LogRecord:
    return logging.LogRecord(name, logging.INFO, __file__, 1, "msg", None, None)


def test_context_filter_matches_last_name_segment():
    flt = ContextFilter({"cell", "dispatcher"})

    assert flt.filter(_record("heic_relay.relay_host.cell"))
    assert flt.filter(_record("heic_relay.dispatcher"))
    assert not flt.filter(_record("heic_relay.page_agent"))


def test_setup_logger_reads_level_and_contexts(monkeypatch):
    monkeypatch.setenv("HEIC_RELAY_LOG_LEVEL", "debug")
    monkeypatch.setenv("HEIC_RELAY_LOG_CATS", "cell, relay_host")

    logger = setup_logger()

    assert logger.name == BASE_LOGGER
    assert logger.level == logging.DEBUG
    assert not logger.propagate
    [handler] = logger.handlers
    [flt] = handler.filters
    assert flt.contexts == {"cell", "relay_host"}


def test_setup_logger_is_idempotent(monkeypatch):
    monkeypatch.delenv("HEIC_RELAY_LOG_LEVEL", raising=False)
    monkeypatch.delenv("HEIC_RELAY_LOG_CATS", raising=False)

    setup_logger()
    logger = setup_logger(logging.WARNING)

    assert len(logger.handlers) == 1
    assert logger.handlers[0].filters == []
    assert logger.level == logging.WARNING
    assert get_logger("dispatcher").name == f"{BASE_LOGGER}.dispatcher"
