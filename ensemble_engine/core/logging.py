"""
Structured logging for the ensemble engine.

Every record emitted under the ``ensemble_engine`` logger carries the id of
the run it belongs to, taken from a context variable so that concurrent
branches of one run (and concurrent runs) stay attributable.

Call ``setup_logging(settings)`` once from the host application; ``json``
output is meant for log shippers, ``text`` for local development.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import IO, Any
from uuid import uuid4

from ensemble_engine.core.config import Settings, get_settings

ROOT_LOGGER_NAME = "ensemble_engine"

_execution_id: ContextVar[str | None] = ContextVar("execution_id", default=None)
_log_context: ContextVar[dict[str, Any]] = ContextVar("log_context", default={})

_handler: logging.Handler | None = None


def _run_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Run-scoped fields: execution id, bound context, then per-call extras."""
    fields: dict[str, Any] = {}
    execution_id = _execution_id.get()
    if execution_id:
        fields["execution_id"] = execution_id
    fields.update(_log_context.get())
    fields.update(getattr(record, "extra_fields", None) or {})
    return fields


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def __init__(self, include_timestamp: bool = True, service_name: str = "ensemble-engine"):
        super().__init__()
        self.include_timestamp = include_timestamp
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }
        if self.include_timestamp:
            payload["timestamp"] = datetime.fromtimestamp(record.created, timezone.utc).isoformat()
        payload.update(_run_fields(record))

        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "stacktrace": self.formatException(record.exc_info),
            }
        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    """``[exec-id] LEVEL - logger - message`` with the short execution id."""

    def __init__(self, include_timestamp: bool = True):
        fmt = "%(levelname)s - %(name)s - %(message)s"
        if include_timestamp:
            fmt = "%(asctime)s - " + fmt
        super().__init__(fmt, datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        execution_id = _execution_id.get()
        return f"[{execution_id[:8]}] {line}" if execution_id else line


def setup_logging(
    settings: Settings | None = None,
    stream: IO[str] | None = None,
    service_name: str | None = None,
) -> None:
    """
    Attach a single console handler to the ``ensemble_engine`` logger.

    Calling it again replaces the previous handler, so tests and hosts can
    reconfigure without duplicating output.
    """
    global _handler
    settings = settings or get_settings()
    root = logging.getLogger(ROOT_LOGGER_NAME)
    if _handler is not None:
        root.removeHandler(_handler)

    formatter: logging.Formatter
    if settings.log_format == "json":
        formatter = JSONFormatter(settings.log_include_timestamp, service_name or settings.app_name)
    else:
        formatter = TextFormatter(settings.log_include_timestamp)

    _handler = logging.StreamHandler(stream or sys.stdout)
    _handler.setFormatter(formatter)
    root.addHandler(_handler)
    root.setLevel(settings.log_level)
    root.propagate = False


def get_logger(name: str = "") -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}" if name else ROOT_LOGGER_NAME)


def generate_execution_id() -> str:
    return str(uuid4())


def get_execution_id() -> str | None:
    return _execution_id.get()


class LogContext:
    """Bind extra fields to every record logged inside the block."""

    def __init__(self, **fields: Any):
        self.fields = fields
        self._token = None

    def __enter__(self) -> "LogContext":
        self._token = _log_context.set({**_log_context.get(), **self.fields})
        return self

    def __exit__(self, *args: Any) -> None:
        if self._token is not None:
            _log_context.reset(self._token)


class ExecutionIDContext:
    """Bind a run's execution id for the duration of the block."""

    def __init__(self, execution_id: str | None = None):
        self.execution_id = execution_id or generate_execution_id()
        self._token = None

    def __enter__(self) -> str:
        self._token = _execution_id.set(self.execution_id)
        return self.execution_id

    def __exit__(self, *args: Any) -> None:
        if self._token is not None:
            _execution_id.reset(self._token)


# ============== Event loggers ==============


class _EventLogger:
    """Emits records tagged with an ``event`` name plus structured fields."""

    channel = ""

    def __init__(self):
        self.logger = get_logger(self.channel)

    def emit(self, level: int, message: str, event: str, **fields: Any) -> None:
        self.logger.log(level, message, extra={"extra_fields": {"event": event, **fields}})


class EnsembleLogger(_EventLogger):
    """Run lifecycle, step transitions, suspensions and loop caps."""

    channel = "ensemble"

    def log_ensemble_start(self, execution_id: str, ensemble_name: str, **extra: Any) -> None:
        self.emit(
            logging.INFO,
            f"Ensemble {ensemble_name} started",
            "ensemble_started",
            execution_id=execution_id,
            ensemble_name=ensemble_name,
            **extra,
        )

    def log_ensemble_end(
        self,
        execution_id: str,
        ensemble_name: str,
        status: str,
        duration_ms: float,
        **extra: Any,
    ) -> None:
        level = logging.WARNING if status == "failed" else logging.INFO
        self.emit(
            level,
            f"Ensemble {ensemble_name} finished with status {status}",
            "ensemble_completed",
            execution_id=execution_id,
            ensemble_name=ensemble_name,
            status=status,
            duration_ms=duration_ms,
            **extra,
        )

    def log_step_execution(self, step_id: str, step_kind: str, status: str, **extra: Any) -> None:
        self.emit(
            logging.DEBUG,
            f"Step {step_id} ({step_kind}) {status}",
            "step_executed",
            step_id=step_id,
            step_kind=step_kind,
            status=status,
            **extra,
        )

    def log_suspension(self, token: str, ensemble_name: str, resume_from_step: int, suspended_by: str) -> None:
        self.emit(
            logging.INFO,
            f"Ensemble {ensemble_name} suspended by {suspended_by}",
            "ensemble_suspended",
            token=token,
            ensemble_name=ensemble_name,
            resume_from_step=resume_from_step,
            suspended_by=suspended_by,
        )

    def log_loop_limit(self, path: str, max_iterations: int) -> None:
        self.emit(
            logging.WARNING,
            f"While loop {path} reached maxIterations={max_iterations}",
            "loop_limit_reached",
            path=path,
            max_iterations=max_iterations,
        )


class AgentLogger(_EventLogger):
    """Agent invocations."""

    channel = "agent"

    def log_agent_start(self, step_id: str, agent_name: str) -> None:
        self.emit(logging.DEBUG, f"Agent {agent_name} started", "agent_started", step_id=step_id, agent_name=agent_name)

    def log_agent_end(
        self,
        step_id: str,
        agent_name: str,
        success: bool,
        duration_ms: float,
        cached: bool = False,
    ) -> None:
        outcome = "succeeded" if success else "failed"
        self.emit(
            logging.INFO if success else logging.WARNING,
            f"Agent {agent_name} {outcome}" + (" (cached)" if cached else ""),
            "agent_completed",
            step_id=step_id,
            agent_name=agent_name,
            success=success,
            cached=cached,
            duration_ms=duration_ms,
        )
