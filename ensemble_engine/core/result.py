"""
Explicit success/error results for engine operations.
"""
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from ensemble_engine.core.exceptions import EngineException

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of an engine operation: either a value or an engine error."""

    success: bool
    value: T | None = None
    error: EngineException | None = None

    @classmethod
    def ok(cls, value: T) -> "Result[T]":
        return cls(success=True, value=value)

    @classmethod
    def err(cls, error: EngineException) -> "Result[T]":
        return cls(success=False, error=error)

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if not self.success:
            assert self.error is not None
            raise self.error
        return self.value  # type: ignore[return-value]

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            value = self.value.to_dict() if hasattr(self.value, "to_dict") else self.value
            return {"success": True, "value": value}
        assert self.error is not None
        return {"success": False, "error": self.error.to_dict()}
