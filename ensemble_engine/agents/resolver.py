"""
Agent resolution.

Turns a step's agent reference (``name`` or ``name@version``) into an
executable ``Agent``. Resolution order:

1. built-in catalog by exact name
2. user-registered agents by exact name (version selection is delegated to
   a pluggable strategy)
3. dynamic instantiation from the ensemble's inline agent definitions
"""
import importlib
import logging
from dataclasses import dataclass
from typing import Any, Callable

from ensemble_engine.agents.base import Agent, FunctionAgent
from ensemble_engine.agents.builtin import BuiltInRegistry, TransformAgent
from ensemble_engine.agents.registry import AgentRegistry
from ensemble_engine.core.exceptions import AgentResolutionError
from ensemble_engine.core.result import Result

logger = logging.getLogger(__name__)

# (name, config) -> Agent, keyed by inline ``operation``
OperationFactory = Callable[[str, dict[str, Any]], Agent]


@dataclass(frozen=True)
class AgentReference:
    """Parsed ``name@version`` reference."""
    name: str
    version: str | None = None

    def __str__(self) -> str:
        return f"{self.name}@{self.version}" if self.version else self.name


def parse_agent_reference(reference: str) -> AgentReference:
    """
    Split an agent reference into name and version.

    Raises:
        AgentResolutionError: For empty references or more than one ``@``.
    """
    if not isinstance(reference, str) or not reference.strip():
        raise AgentResolutionError(str(reference), "empty agent reference")
    parts = reference.strip().split("@")
    if len(parts) > 2:
        raise AgentResolutionError(reference, "expected 'name' or 'name@version'")
    name = parts[0].strip()
    version = parts[1].strip() if len(parts) == 2 else None
    if not name or (len(parts) == 2 and not version):
        raise AgentResolutionError(reference, "expected 'name' or 'name@version'")
    return AgentReference(name=name, version=version)


VersionStrategy = Callable[[AgentReference, AgentRegistry], Agent | None]


def registry_version_strategy(reference: AgentReference, registry: AgentRegistry) -> Agent | None:
    """Exact ``name@version`` match; ``latest`` maps to the unversioned entry."""
    agent = registry.get(reference.name, reference.version)
    if agent is None and reference.version == "latest":
        agent = registry.get(reference.name)
    return agent


def import_handler(path: str) -> Callable[..., Any]:
    """Import ``package.module:callable`` (or ``package.module.callable``)."""
    if ":" in path:
        module_name, _, attr = path.partition(":")
    else:
        module_name, _, attr = path.rpartition(".")
    if not module_name or not attr:
        raise ValueError(f"Invalid handler path: {path}")
    module = importlib.import_module(module_name)
    target: Any = module
    for part in attr.split("."):
        target = getattr(target, part)
    if not callable(target):
        raise ValueError(f"Handler is not callable: {path}")
    return target


def _function_factory(name: str, config: dict[str, Any]) -> Agent:
    handler = config.get("handler")
    if callable(handler):
        return FunctionAgent(name, handler, config=config)
    if not isinstance(handler, str):
        raise ValueError("function agents need a 'handler' import path")
    return FunctionAgent(name, import_handler(handler), config=config)


def _transform_factory(name: str, config: dict[str, Any]) -> Agent:
    agent = TransformAgent(config)
    agent.name = name
    return agent


DEFAULT_OPERATION_FACTORIES: dict[str, OperationFactory] = {
    "function": _function_factory,
    "code": _function_factory,
    "transform": _transform_factory,
}


class AgentResolver:
    """Resolves agent references against injected registries."""

    def __init__(
        self,
        builtins: BuiltInRegistry,
        registry: AgentRegistry,
        operation_factories: dict[str, OperationFactory] | None = None,
        version_strategy: VersionStrategy | None = None,
    ):
        self.builtins = builtins
        self.registry = registry
        self.operation_factories = {**DEFAULT_OPERATION_FACTORIES, **(operation_factories or {})}
        self.version_strategy = version_strategy or registry_version_strategy

        for name in registry.names():
            if builtins.is_builtin(name):
                logger.warning(
                    f"User agent '{name}' shadows a built-in agent; the built-in takes precedence"
                )

    def resolve(
        self,
        reference: str,
        inline_defs: dict[str, Any] | None = None,
        config: dict[str, Any] | None = None,
    ) -> Result[Agent]:
        """
        Resolve a reference to an agent.

        Args:
            reference: ``name`` or ``name@version``.
            inline_defs: Inline definitions by name (objects with
                ``operation`` and ``config`` attributes).
            config: Step-level config passed to built-in factories.
        """
        try:
            ref = parse_agent_reference(reference)
        except AgentResolutionError as e:
            return Result.err(e)

        if self.builtins.is_builtin(ref.name):
            return Result.ok(self.builtins.create(ref.name, config))

        if ref.version:
            agent = self.version_strategy(ref, self.registry)
        else:
            agent = self.registry.get(ref.name)
        if agent is not None:
            return Result.ok(agent)

        inline = (inline_defs or {}).get(ref.name)
        if inline is not None:
            return self._instantiate(ref, inline)

        return Result.err(AgentResolutionError(str(ref)))

    def _instantiate(self, ref: AgentReference, inline: Any) -> Result[Agent]:
        factory = self.operation_factories.get(inline.operation)
        if factory is None:
            return Result.err(
                AgentResolutionError(str(ref), f"no factory for operation '{inline.operation}'")
            )
        try:
            agent = factory(ref.name, dict(inline.config))
        except (ImportError, AttributeError, ValueError, TypeError) as e:
            return Result.err(AgentResolutionError(str(ref), str(e)))
        if ref.version:
            agent.version = ref.version
        return Result.ok(agent)
