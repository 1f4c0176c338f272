"""
Tests for structured log formatting and run context injection.
"""
import json
import logging

import pytest

from rebalance_engine.context import RunContext, clear_current_run, set_current_run
from rebalance_engine.logger import AppLogger, StructuredFormatter


@pytest.fixture(autouse=True)
def no_run_context():
    clear_current_run()
    yield
    clear_current_run()


def _record(**extra):
    record = logging.LogRecord("rebalance_engine.engine", logging.INFO, __file__, 1, "Rebalance complete", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_format_includes_run_fields():
    output = StructuredFormatter('json').format(_record(rebalance_request_id="rb-1", attempt=2, user_id="u"))

    data = json.loads(output)
    assert data["message"] == "Rebalance complete"
    assert data["level"] == "INFO"
    assert data["rebalance_request_id"] == "rb-1"
    assert data["attempt"] == 2


def test_text_format_appends_request_id():
    output = StructuredFormatter('text').format(_record(rebalance_request_id="rb-1", attempt=1))

    assert output.endswith("Rebalance complete [rebalance_request_id=rb-1] [attempt=1]")


def test_app_logger_injects_current_run(caplog):
    app_logger = AppLogger("rebalance_engine.tests")
    set_current_run(RunContext("rb-9", "user-9", 3))

    with caplog.at_level(logging.INFO, logger="rebalance_engine.tests"):
        app_logger.log_info("Processing")

    record = caplog.records[-1]
    assert record.rebalance_request_id == "rb-9"
    assert record.user_id == "user-9"
    assert record.attempt == 3


def test_app_logger_without_run_adds_nothing(caplog):
    app_logger = AppLogger("rebalance_engine.tests")

    with caplog.at_level(logging.INFO, logger="rebalance_engine.tests"):
        app_logger.log_info("Idle")

    assert not hasattr(caplog.records[-1], "rebalance_request_id")
