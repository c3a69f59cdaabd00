"""Tests for memtier.logging_config."""

import logging
from datetime import date

import pytest

from memtier.logging_config import (
    EVENT_LOGGER,
    get_log_dir,
    log_memory_event,
    setup_memtier_logging,
)


@pytest.fixture
def memtier_logger():
    logger = logging.getLogger("memtier")
    before = list(logger.handlers)
    level = logger.level
    yield logger
    for handler in logger.handlers:
        if handler not in before:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)


def test_setup_creates_daily_file(tmp_path, memtier_logger):
    path = setup_memtier_logging("DEBUG", tmp_path / "logs")
    assert path == tmp_path / "logs" / f"local-{date.today().isoformat()}.log"
    assert path.exists()
    assert memtier_logger.level == logging.DEBUG

    logging.getLogger("memtier.engine").info("hello from test")
    for handler in memtier_logger.handlers:
        handler.flush()
    assert "hello from test" in path.read_text()


def test_setup_is_idempotent(tmp_path, memtier_logger):
    before = len(memtier_logger.handlers)
    setup_memtier_logging("INFO", tmp_path)
    setup_memtier_logging("WARNING", tmp_path)
    assert len(memtier_logger.handlers) == before + 1
    assert memtier_logger.level == logging.WARNING


def test_setup_rejects_unknown_level(tmp_path, memtier_logger):
    with pytest.raises(ValueError, match="Unknown log level"):
        setup_memtier_logging("CHATTY", tmp_path)


def test_default_log_dir_under_data_dir(monkeypatch, tmp_path):
    monkeypatch.setenv("MEMTIER_DATA_DIR", str(tmp_path))
    assert get_log_dir() == tmp_path / "logs"


def test_log_memory_event_format(caplog):
    caplog.set_level(logging.INFO, logger=EVENT_LOGGER)
    log_memory_event("store", "acme", "u1", "m-1", importance=0.56789, tier="short-term", skip=None)
    record = caplog.records[-1]
    assert record.name == EVENT_LOGGER
    assert record.getMessage() == (
        "store | tenant=acme user=u1 memory=m-1 | importance=0.568 tier=short-term"
    )


def test_log_memory_event_without_ids(caplog):
    caplog.set_level(logging.INFO, logger=EVENT_LOGGER)
    log_memory_event("consolidate", "acme")
    assert caplog.records[-1].getMessage() == "consolidate | tenant=acme"
