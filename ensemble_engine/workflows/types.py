"""
Workflow type definitions.

Contains enums and basic data classes used throughout the execution engine.
"""
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class StepKind(str, Enum):
    """Flow step variants."""
    AGENT = "agent"
    PARALLEL = "parallel"
    BRANCH = "branch"
    FOREACH = "foreach"
    TRY = "try"
    SWITCH = "switch"
    WHILE = "while"
    MAP_REDUCE = "map-reduce"


class StepStatus(str, Enum):
    """Per-step execution status."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionStatus(str, Enum):
    """Outcome of a run that did not error."""
    COMPLETED = "completed"
    SUSPENDED = "suspended"


class WaitFor(str, Enum):
    """Parallel completion policy."""
    ALL = "all"
    ANY = "any"
    FIRST = "first"


class OnFailure(str, Enum):
    """What to do when a scored output falls below the minimum."""
    RETRY = "retry"
    CONTINUE = "continue"
    ABORT = "abort"


class OnLimit(str, Enum):
    """What a while loop does when it hits maxIterations."""
    CONTINUE = "continue"
    FAIL = "fail"


class AccessMode(str, Enum):
    READ = "read"
    WRITE = "write"


class SuspensionStatus(str, Enum):
    """Resumption lifecycle."""
    PENDING = "pending"
    READY = "ready"
    RESUMED = "resumed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


@dataclass(frozen=True)
class AgentMetric:
    """One agent invocation."""
    name: str
    duration_ms: float
    cached: bool
    success: bool
    step_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentMetric":
        return cls(
            name=data["name"],
            duration_ms=data["duration_ms"],
            cached=data["cached"],
            success=data["success"],
            step_id=data.get("step_id"),
        )


@dataclass(frozen=True)
class AccessLogEntry:
    """One shared-state access."""
    step_id: str
    field: str
    mode: AccessMode
    violation: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "field": self.field,
            "mode": self.mode.value,
            "violation": self.violation,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AccessLogEntry":
        return cls(
            step_id=data["step_id"],
            field=data["field"],
            mode=AccessMode(data["mode"]),
            violation=data.get("violation", False),
        )


@dataclass
class AccessReport:
    """Audit of shared-state access during a run."""
    entries: list[AccessLogEntry] = field(default_factory=list)
    unused_keys: list[str] = field(default_factory=list)

    @property
    def violations(self) -> list[AccessLogEntry]:
        return [e for e in self.entries if e.violation]

    def to_dict(self) -> dict[str, Any]:
        return {
            "entries": [e.to_dict() for e in self.entries],
            "violations": [e.to_dict() for e in self.violations],
            "unused_keys": list(self.unused_keys),
        }
