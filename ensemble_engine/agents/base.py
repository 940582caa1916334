"""
Agent invocation contract.

Every unit of work a flow step invokes implements ``Agent.execute(input, context)``
and returns an ``AgentResponse``. Concrete agents (LLM calls, HTTP calls, SQL)
live outside the engine; this module only defines the seam.
"""
import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable


@dataclass
class SuspendRequest:
    """An agent's request to suspend the run after its step completes."""
    reason: str | None = None
    ttl_seconds: int | None = None
    require_approval: bool = False


@dataclass
class AgentResponse:
    """Result of one agent invocation."""
    success: bool
    data: Any = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    suspend: SuspendRequest | None = None

    @classmethod
    def ok(cls, data: Any = None, **metadata: Any) -> "AgentResponse":
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def fail(cls, error: str, **metadata: Any) -> "AgentResponse":
        return cls(success=False, error=error, metadata=metadata)

    @classmethod
    def suspended(
        cls,
        data: Any = None,
        reason: str | None = None,
        ttl_seconds: int | None = None,
        require_approval: bool = False,
    ) -> "AgentResponse":
        return cls(
            success=True,
            data=data,
            suspend=SuspendRequest(
                reason=reason,
                ttl_seconds=ttl_seconds,
                require_approval=require_approval,
            ),
        )


def _reject_writes(updates: Mapping[str, Any]) -> None:
    if updates:
        raise PermissionError("This context does not grant state writes")


@dataclass
class AgentContext:
    """
    Everything an agent may see during one invocation.

    ``state`` only exposes the fields the step declared in ``state.use``;
    ``set_state`` only accepts fields declared in ``state.set``. Writes are
    buffered and committed by the engine after the step succeeds.
    """
    input: Any
    step_id: str
    execution_id: str
    state: Mapping[str, Any] = field(default_factory=dict)
    config: dict[str, Any] = field(default_factory=dict)
    previous_outputs: Mapping[str, Any] = field(default_factory=dict)
    resume_input: Any = None
    auth: Any = None
    logger: logging.Logger | None = None
    agents: Any = None
    ensembles: Mapping[str, Any] | None = None
    state_writer: Callable[[Mapping[str, Any]], None] = field(default=_reject_writes, repr=False)

    def set_state(self, updates: Mapping[str, Any] | None = None, **fields: Any) -> None:
        """Stage writes to shared state."""
        self.state_writer({**(updates or {}), **fields})


class Agent(ABC):
    """Base class for executable agents."""

    name: str = ""
    version: str | None = None

    @abstractmethod
    async def execute(self, input: Any, context: AgentContext) -> AgentResponse:
        """Run the agent against its resolved input."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class FunctionAgent(Agent):
    """
    Agent backed by a plain callable.

    The callable receives ``(input, context)`` and may be sync or async. A
    returned ``AgentResponse`` is passed through; any other value becomes a
    successful response carrying that value.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[Any, AgentContext], Any],
        version: str | None = None,
        config: dict[str, Any] | None = None,
    ):
        self.name = name
        self.func = func
        self.version = version
        self.config = config or {}

    async def execute(self, input: Any, context: AgentContext) -> AgentResponse:
        if self.config and not context.config:
            context.config = self.config
        result = self.func(input, context)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, AgentResponse):
            return result
        return AgentResponse.ok(result)
