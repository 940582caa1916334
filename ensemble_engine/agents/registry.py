"""
User agent registry.

Holds agents registered by the host application, optionally per version.
An instance is injected into the engine; there is no module-level registry.
"""
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from ensemble_engine.agents.base import Agent

logger = logging.getLogger(__name__)


@dataclass
class AgentMetadata:
    """Metadata about a registered agent."""

    name: str
    description: str = ""
    version: str | None = None
    tags: list[str] = field(default_factory=list)


class AgentRegistry:
    """
    Registry of user agents, keyed by ``name`` or ``name@version``.

    Usage:
        registry = AgentRegistry()
        registry.register(MyAgent())
        registry.register(MyAgentV2(), version="2.0.0")
    """

    def __init__(self, agents: Iterable[Agent] = ()):
        self._agents: dict[str, Agent] = {}
        self._metadata: dict[str, AgentMetadata] = {}
        for agent in agents:
            self.register(agent)

    @staticmethod
    def key(name: str, version: str | None = None) -> str:
        return f"{name}@{version}" if version else name

    def register(
        self,
        agent: Agent,
        name: str | None = None,
        version: str | None = None,
        description: str = "",
        tags: list[str] | None = None,
    ) -> None:
        """Register an agent instance under its name and optional version."""
        name = name or agent.name
        if not name:
            raise ValueError("Agent must have a name to be registered")
        version = version or agent.version
        key = self.key(name, version)
        self._agents[key] = agent
        self._metadata[key] = AgentMetadata(
            name=name,
            description=description,
            version=version,
            tags=tags or [],
        )
        # Unversioned lookups fall back to the first registered version
        if version and name not in self._agents:
            self._agents[name] = agent
            self._metadata[name] = self._metadata[key]
        logger.debug(f"Registered agent: {key}")

    def unregister(self, name: str, version: str | None = None) -> bool:
        key = self.key(name, version)
        self._metadata.pop(key, None)
        return self._agents.pop(key, None) is not None

    def get(self, name: str, version: str | None = None) -> Agent | None:
        return self._agents.get(self.key(name, version))

    def __contains__(self, name: str) -> bool:
        return name in self._agents

    def names(self) -> list[str]:
        """Names of registered agents, without version suffixes."""
        return sorted({meta.name for meta in self._metadata.values()})

    def versions(self, name: str) -> list[str]:
        return sorted(
            {
                meta.version
                for meta in self._metadata.values()
                if meta.name == name and meta.version
            }
        )

    def metadata(self, name: str, version: str | None = None) -> AgentMetadata | None:
        return self._metadata.get(self.key(name, version))

    def discovery(self) -> "RegistryView":
        """Read-only view handed to agents at execution time."""
        return RegistryView(self)


class RegistryView:
    """Read-only discovery view over an ``AgentRegistry``."""

    def __init__(self, registry: AgentRegistry):
        self._registry = registry

    def names(self) -> list[str]:
        return self._registry.names()

    def has(self, name: str) -> bool:
        return name in self._registry

    def metadata(self, name: str, version: str | None = None) -> dict[str, Any] | None:
        meta = self._registry.metadata(name, version)
        if meta is None:
            return None
        return {
            "name": meta.name,
            "description": meta.description,
            "version": meta.version,
            "tags": list(meta.tags),
        }
