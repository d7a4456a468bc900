"""Unit tests for log formatting."""

import json
import logging

import pytest

from cellforge.utils.logging import JSONFormatter, PrettyFormatter, get_logger, log_generation

pytestmark = pytest.mark.unit


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("cellforge.test", logging.INFO, __file__, 10, "Cell done", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_context_fields():
    data = json.loads(JSONFormatter().format(_record(column_id="c1", row=4, cached=True)))

    assert data["message"] == "Cell done"
    assert data["level"] == "INFO"
    assert data["column_id"] == "c1"
    assert data["row"] == 4
    assert data["cached"] is True


def test_pretty_formatter_appends_extras():
    line = PrettyFormatter().format(_record(model="m1"))
    assert "cellforge.test: Cell done" in line
    assert "model=m1" in line


def test_context_adapter_merges_context(caplog):
    logger = get_logger("cellforge.test.adapter", column_id="c9")
    with caplog.at_level(logging.INFO, logger="cellforge.test.adapter"):
        logger.info("hello", extra={"row": 1})

    record = caplog.records[-1]
    assert record.column_id == "c9"
    assert record.row == 1


def test_log_generation_levels(caplog):
    with caplog.at_level(logging.INFO, logger="cellforge.generation"):
        log_generation("c1", 0, 12.5, success=True)
        log_generation("c1", 1, 5.0, success=False, error="boom")

    ok, failed = caplog.records[-2:]
    assert ok.levelno == logging.INFO and ok.duration_ms == 12.5
    assert failed.levelno == logging.WARNING and "boom" in failed.getMessage()
