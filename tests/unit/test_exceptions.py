"""
Tests for engine exceptions.
"""
from fastapi import HTTPException

from ensemble_engine.core.exceptions import (
    AgentExecutionError,
    AgentResolutionError,
    ConfigurationError,
    EngineException,
    LoopLimitExceeded,
    ScoringThresholdError,
    StateAccessViolationError,
    SuspensionExpiredError,
    SuspensionNotFoundError,
    SuspensionRequested,
    SuspensionStateError,
)


class TestEngineException:
    """Test the base exception."""

    def test_message_and_details(self):
        """Test message, details and defaults."""
        error = EngineException("Something failed", {"key": "value"})
        assert str(error) == "Something failed"
        assert error.details == {"key": "value"}
        assert error.status_code == 500
        assert error.partial_metrics is None

    def test_to_dict(self):
        """Test serialization."""
        data = ConfigurationError("bad flow", {"step": "a"}).to_dict()
        assert data["error_code"] == "CONFIGURATION_ERROR"
        assert data["type"] == "ConfigurationError"
        assert data["details"] == {"step": "a"}

    def test_to_http_exception(self):
        """Test conversion to a FastAPI HTTPException."""
        http = SuspensionNotFoundError("resume_x").to_http_exception()
        assert isinstance(http, HTTPException)
        assert http.status_code == 404
        assert http.detail["error_code"] == "SUSPENSION_NOT_FOUND"


class TestDomainExceptions:
    """Test domain-specific exceptions."""

    def test_agent_resolution_error(self):
        error = AgentResolutionError("missing@1.0", "not registered")
        assert error.reference == "missing@1.0"
        assert "missing@1.0" in str(error)
        assert "not registered" in str(error)
        assert error.status_code == 404

    def test_agent_execution_error(self):
        error = AgentExecutionError("writer", "timed out", timed_out=True)
        assert error.agent_name == "writer"
        assert error.timed_out is True
        assert "writer" in str(error)

    def test_state_access_violation(self):
        error = StateAccessViolationError("step1", "secret", "read")
        assert error.step_id == "step1"
        assert error.field == "secret"
        assert error.mode == "read"
        assert error.status_code == 403

    def test_scoring_threshold_error(self):
        error = ScoringThresholdError("draft", 0.4, 0.7, 3)
        assert error.fatal is False
        assert error.details["attempts"] == 3
        assert ScoringThresholdError("draft", 0.4, 0.7, 1, fatal=True).fatal is True

    def test_suspension_errors(self):
        assert SuspensionExpiredError("t").status_code == 410
        error = SuspensionStateError("t", "cancelled", "resume")
        assert error.status_code == 409
        assert "cancelled" in str(error)

    def test_loop_limit_exceeded(self):
        error = LoopLimitExceeded("while_0", 10)
        assert error.max_iterations == 10
        assert error.path == "while_0"

    def test_suspension_requested_is_not_an_engine_error(self):
        """Test the suspension signal is not caught as an engine error."""
        signal = SuspensionRequested("approve", "hitl", reason="review")
        assert not isinstance(signal, EngineException)
        assert signal.resume_from_step is None
