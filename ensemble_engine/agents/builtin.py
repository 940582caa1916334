"""
Built-in agent catalog.

Built-ins are created from factories so each step gets a fresh instance
configured from its own ``config`` block. Built-ins take precedence over
user-registered agents of the same name.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from ensemble_engine.agents.base import Agent, AgentContext, AgentResponse
from ensemble_engine.core.interpolation import interpolate

logger = logging.getLogger(__name__)

AgentFactory = Callable[[dict[str, Any]], Agent]

HITL_DEFAULT_TTL_SECONDS = 24 * 60 * 60


class HITLAgent(Agent):
    """
    Human-in-the-loop gate.

    Completes its step with the approval payload and asks the engine to
    suspend until an external actor approves or rejects the run.
    """

    name = "hitl"

    def __init__(self, config: dict[str, Any] | None = None):
        self.config = config or {}

    async def execute(self, input: Any, context: AgentContext) -> AgentResponse:
        config = {**self.config, **(context.config or {})}
        reason = config.get("reason") or config.get("message") or "Awaiting approval"
        ttl = int(config.get("ttl", HITL_DEFAULT_TTL_SECONDS))
        return AgentResponse.suspended(
            data={
                "status": "awaiting_approval",
                "approvalData": input,
                "reason": reason,
            },
            reason=reason,
            ttl_seconds=ttl,
            require_approval=bool(config.get("requireApproval", True)),
        )


class TransformAgent(Agent):
    """Reshapes data: returns ``config.value`` interpolated against the input, or the input."""

    name = "transform"

    def __init__(self, config: dict[str, Any] | None = None):
        self.config = config or {}

    async def execute(self, input: Any, context: AgentContext) -> AgentResponse:
        config = {**self.config, **(context.config or {})}
        if "value" not in config:
            return AgentResponse.ok(input)
        scope = {
            "input": input,
            "state": context.state,
            "resumeInput": context.resume_input,
        }
        return AgentResponse.ok(interpolate(config["value"], scope))


@dataclass
class BuiltInMetadata:
    """Metadata about a built-in agent."""
    name: str
    description: str = ""
    tags: list[str] = field(default_factory=list)


class BuiltInRegistry:
    """Factory catalog of built-in agents."""

    def __init__(self):
        self._factories: dict[str, AgentFactory] = {}
        self._metadata: dict[str, BuiltInMetadata] = {}

    def register_factory(
        self,
        name: str,
        factory: AgentFactory,
        description: str = "",
        tags: list[str] | None = None,
    ) -> None:
        """Register a factory function for lazy instantiation."""
        self._factories[name] = factory
        self._metadata[name] = BuiltInMetadata(name=name, description=description, tags=tags or [])
        logger.debug(f"Registered built-in agent: {name}")

    def is_builtin(self, name: str) -> bool:
        return name in self._factories

    def create(self, name: str, config: dict[str, Any] | None = None) -> Agent:
        """
        Instantiate a built-in agent.

        Raises:
            KeyError: If no built-in has this name.
        """
        if name not in self._factories:
            raise KeyError(f"Built-in agent not found: {name}")
        return self._factories[name](config or {})

    def names(self) -> list[str]:
        return sorted(self._factories)

    def metadata(self, name: str) -> BuiltInMetadata | None:
        return self._metadata.get(name)


def default_builtins() -> BuiltInRegistry:
    """Create a catalog with the engine's standard built-ins."""
    registry = BuiltInRegistry()
    registry.register_factory(
        "hitl",
        HITLAgent,
        description="Suspend the run until it is approved or rejected",
        tags=["control"],
    )
    registry.register_factory(
        "transform",
        TransformAgent,
        description="Return a templated value built from the step input",
        tags=["data"],
    )
    return registry
