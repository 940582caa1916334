"""
Tests for structured logging.
"""
import io
import json
import logging

import pytest

from ensemble_engine.core.config import Settings
from ensemble_engine.core.logging import (
    AgentLogger,
    EnsembleLogger,
    ExecutionIDContext,
    LogContext,
    get_execution_id,
    get_logger,
    setup_logging,
)


@pytest.fixture
def json_stream():
    stream = io.StringIO()
    setup_logging(Settings(log_level="debug", log_format="json"), stream=stream)
    yield stream
    setup_logging(Settings(log_format="text"))


def _lines(stream: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line]


class TestJSONLogging:
    """Test JSON output and context propagation."""

    def test_extra_fields_and_context(self, json_stream):
        logger = get_logger("test")
        with ExecutionIDContext("exec-123"), LogContext(ensemble_name="demo"):
            assert get_execution_id() == "exec-123"
            logger.info("hello", extra={"extra_fields": {"step_id": "a"}})
        assert get_execution_id() is None

        [record] = _lines(json_stream)
        assert record["message"] == "hello"
        assert record["logger"] == "ensemble_engine.test"
        assert record["service"] == "ensemble-engine"
        assert record["execution_id"] == "exec-123"
        assert record["ensemble_name"] == "demo"
        assert record["step_id"] == "a"
        assert "timestamp" in record

    def test_exception_details(self, json_stream):
        try:
            raise ValueError("bad value")
        except ValueError:
            get_logger("test").exception("failed")

        [record] = _lines(json_stream)
        assert record["exception"]["type"] == "ValueError"
        assert record["exception"]["message"] == "bad value"

    def test_event_loggers(self, json_stream):
        EnsembleLogger().log_ensemble_end("exec-1", "demo", "completed", 12.5)
        AgentLogger().log_agent_end("step", "writer", success=False, duration_ms=3.0)
        first, second = _lines(json_stream)
        assert first["event"] == "ensemble_completed"
        assert first["status"] == "completed"
        assert first["level"] == "INFO"
        assert second["event"] == "agent_completed"
        assert second["level"] == "WARNING"
        assert second["cached"] is False

    def test_debug_events_respect_level(self):
        stream = io.StringIO()
        setup_logging(Settings(log_level="INFO", log_format="json"), stream=stream)
        EnsembleLogger().log_step_execution("a", "agent", "running")
        assert stream.getvalue() == ""


class TestTextLogging:
    """Test text output."""

    def test_execution_id_prefix(self):
        stream = io.StringIO()
        setup_logging(Settings(log_format="text", log_include_timestamp=False), stream=stream)
        with ExecutionIDContext("abcdefgh-1234"):
            get_logger("test").info("plain")
        assert stream.getvalue().startswith("[abcdefgh] INFO - ensemble_engine.test - plain")
        assert logging.getLogger("ensemble_engine").propagate is False

    def test_reconfiguring_replaces_handler(self):
        setup_logging(Settings(log_format="text"))
        setup_logging(Settings(log_format="text"))
        assert len(logging.getLogger("ensemble_engine").handlers) == 1
