"""
Custom exceptions for the ensemble engine.
Provides domain-specific error handling with HTTP status codes for hosts that
expose the engine over an API.
"""
from typing import Any

from fastapi import HTTPException


class EngineException(Exception):
    """Base exception for all engine errors."""

    status_code: int = 500
    error_code: str = "ENGINE_ERROR"

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.details = details
        # Filled in by the orchestrator when the error surfaces from a run
        self.partial_metrics: Any = None
        super().__init__(message)

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "message": self.message,
            "error_code": self.error_code,
            "type": type(self).__name__,
        }
        if self.details:
            data["details"] = self.details
        return data

    def to_http_exception(self) -> HTTPException:
        """Convert to FastAPI HTTPException."""
        detail = {
            "message": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            detail["details"] = self.details
        return HTTPException(status_code=self.status_code, detail=detail)


# ============== Agent Exceptions ==============


class AgentResolutionError(EngineException):
    """Raised when an agent reference cannot be resolved."""

    status_code = 404
    error_code = "AGENT_NOT_FOUND"

    def __init__(self, reference: str, reason: str | None = None, details: dict[str, Any] | None = None):
        message = f"Agent not found: {reference}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, details)
        self.reference = reference


class AgentExecutionError(EngineException):
    """Raised when an agent fails or times out."""

    status_code = 502
    error_code = "AGENT_EXECUTION_ERROR"

    def __init__(
        self,
        agent_name: str,
        message: str,
        details: dict[str, Any] | None = None,
        timed_out: bool = False,
    ):
        super().__init__(f"Agent '{agent_name}' failed: {message}", details)
        self.agent_name = agent_name
        self.timed_out = timed_out


# ============== State Exceptions ==============


class StateAccessViolationError(EngineException):
    """Raised when a step touches a state field it did not declare."""

    status_code = 403
    error_code = "STATE_ACCESS_VIOLATION"

    def __init__(self, step_id: str, field: str, mode: str):
        super().__init__(
            f"Step '{step_id}' attempted undeclared {mode} of state field '{field}'",
            {"step_id": step_id, "field": field, "mode": mode},
        )
        self.step_id = step_id
        self.field = field
        self.mode = mode


# ============== Scoring Exceptions ==============


class ScoringThresholdError(EngineException):
    """Raised when a scored step cannot reach its minimum score."""

    status_code = 422
    error_code = "SCORING_THRESHOLD_NOT_MET"

    def __init__(
        self,
        step_id: str,
        score: float | None,
        minimum: float,
        attempts: int,
        fatal: bool = False,
    ):
        super().__init__(
            f"Step '{step_id}' scored {score} below minimum {minimum} after {attempts} attempt(s)",
            {"step_id": step_id, "score": score, "minimum": minimum, "attempts": attempts},
        )
        self.step_id = step_id
        self.score = score
        self.minimum = minimum
        self.attempts = attempts
        # onFailure=abort: not recoverable by try/catch
        self.fatal = fatal


# ============== Suspension Exceptions ==============


class SuspensionNotFoundError(EngineException):
    """Raised when a resumption token does not exist."""

    status_code = 404
    error_code = "SUSPENSION_NOT_FOUND"

    def __init__(self, token: str):
        super().__init__(f"Suspended execution not found: {token}", {"token": token})
        self.token = token


class SuspensionExpiredError(EngineException):
    """Raised when a resumption token outlived its TTL."""

    status_code = 410
    error_code = "SUSPENSION_EXPIRED"

    def __init__(self, token: str, expires_at: str | None = None):
        super().__init__(
            f"Suspended execution expired: {token}",
            {"token": token, "expires_at": expires_at},
        )
        self.token = token


class SuspensionStateError(EngineException):
    """Raised when a suspension lifecycle transition is not allowed."""

    status_code = 409
    error_code = "SUSPENSION_INVALID_STATE"

    def __init__(self, token: str, status: str, action: str):
        super().__init__(
            f"Cannot {action} suspended execution {token} in status '{status}'",
            {"token": token, "status": status, "action": action},
        )
        self.token = token
        self.status = status
        self.action = action


# ============== Flow Exceptions ==============


class LoopLimitExceeded(EngineException):
    """Raised when a while loop opts into failing at its iteration cap."""

    status_code = 500
    error_code = "LOOP_LIMIT_EXCEEDED"

    def __init__(self, path: str, max_iterations: int):
        super().__init__(
            f"While loop '{path}' reached maxIterations={max_iterations}",
            {"path": path, "max_iterations": max_iterations},
        )
        self.path = path
        self.max_iterations = max_iterations


class ConfigurationError(EngineException):
    """Raised when an ensemble definition or flow graph is malformed."""

    status_code = 400
    error_code = "CONFIGURATION_ERROR"


# ============== Control Signals ==============


class SuspensionRequested(Exception):
    """
    Raised by a leaf step whose agent asked the run to suspend.

    Not an error: the orchestrator turns it into a persisted suspension.
    """

    def __init__(
        self,
        step_id: str,
        agent_name: str,
        reason: str | None = None,
        ttl_seconds: int | None = None,
        require_approval: bool = False,
    ):
        super().__init__(f"Suspension requested by step '{step_id}'")
        self.step_id = step_id
        self.agent_name = agent_name
        self.reason = reason
        self.ttl_seconds = ttl_seconds
        self.require_approval = require_approval
        # Set by the top-level executor: index of the step to resume from
        self.resume_from_step: int | None = None
