"""
Logging setup tests
===================
JSON line rendering through the structlog formatter and the optional file
handler.
"""

import json
import logging

import pytest

from likeme.config import settings
from likeme.logging_config import setup_logging


@pytest.fixture
def restore_root_logger():
    """Put back the root handlers that setup_logging replaces."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in list(root.handlers):
        root.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def test_json_lines_to_file(tmp_path, monkeypatch, restore_root_logger):
    log_file = tmp_path / "app.log"
    monkeypatch.setattr(settings.logging, "format", "json")
    monkeypatch.setattr(settings.logging, "file", str(log_file))
    monkeypatch.setattr(settings.logging, "level", "info")

    setup_logging(force=True)
    logger = logging.getLogger("likeme.tests.logging")
    try:
        raise ValueError("broken row")
    except ValueError:
        logger.error("Import failed", exc_info=True)
    for handler in restore_root_logger.handlers:
        handler.flush()

    (line,) = log_file.read_text(encoding="utf-8").splitlines()
    record = json.loads(line)
    assert record["event"] == "Import failed"
    assert record["level"] == "error"
    assert record["logger"] == "likeme.tests.logging"
    assert "timestamp" in record
    assert "ValueError: broken row" in record["exception"]


def test_level_filters_records(tmp_path, monkeypatch, restore_root_logger):
    log_file = tmp_path / "app.log"
    monkeypatch.setattr(settings.logging, "format", "json")
    monkeypatch.setattr(settings.logging, "file", str(log_file))
    monkeypatch.setattr(settings.logging, "level", "warning")

    setup_logging(force=True)
    logger = logging.getLogger("likeme.tests.logging")
    logger.info("hidden")
    logger.warning("shown")
    for handler in restore_root_logger.handlers:
        handler.flush()

    events = [json.loads(line)["event"] for line in log_file.read_text(encoding="utf-8").splitlines()]
    assert events == ["shown"]


def test_uvicorn_loggers_propagate_to_root(monkeypatch, restore_root_logger):
    monkeypatch.setattr(settings.logging, "file", None)
    uvicorn_logger = logging.getLogger("uvicorn.access")
    uvicorn_logger.addHandler(logging.NullHandler())
    uvicorn_logger.propagate = False

    setup_logging(force=True)

    assert uvicorn_logger.handlers == []
    assert uvicorn_logger.propagate is True
    assert len(restore_root_logger.handlers) == 1
