"""
Pytest configuration and shared fixtures for ensemble engine tests.
"""
import asyncio
from typing import Any, Callable

import pytest

from ensemble_engine.agents.base import AgentContext, AgentResponse, FunctionAgent
from ensemble_engine.core.config import Settings
from ensemble_engine.core.store import InMemoryStore
from ensemble_engine.workflows.engine import EnsembleEngine


@pytest.fixture
def settings() -> Settings:
    """Settings with short timeouts and no scoring backoff."""
    return Settings(
        default_agent_timeout_ms=2000,
        scoring_initial_delay_ms=0,
        scoring_max_delay_ms=0,
        log_format="text",
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def make_engine(settings: Settings, store: InMemoryStore) -> Callable[..., EnsembleEngine]:
    """Build an engine over the shared in-memory store."""

    def factory(*agents: Any, **kwargs: Any) -> EnsembleEngine:
        kwargs.setdefault("settings", settings)
        kwargs.setdefault("store", store)
        return EnsembleEngine(agents=list(agents), **kwargs)

    return factory


def make_agent(name: str, func: Callable[[Any, AgentContext], Any]) -> FunctionAgent:
    return FunctionAgent(name, func)


def echo_agent(name: str, transform: Callable[[Any], Any] | None = None) -> FunctionAgent:
    """Agent returning its input, optionally transformed."""
    return FunctionAgent(name, lambda input, ctx: transform(input) if transform else input)


def delayed_agent(name: str, delay: float, value: Any = None, calls: list | None = None) -> FunctionAgent:
    """Agent that sleeps before returning ``value`` (or its name)."""

    async def run(input: Any, ctx: AgentContext) -> Any:
        if calls is not None:
            calls.append(name)
        await asyncio.sleep(delay)
        return value if value is not None else name

    return FunctionAgent(name, run)


def failing_agent(name: str, message: str = "boom", delay: float = 0) -> FunctionAgent:
    async def run(input: Any, ctx: AgentContext) -> AgentResponse:
        if delay:
            await asyncio.sleep(delay)
        return AgentResponse.fail(message)

    return FunctionAgent(name, run)


def counting_agent(name: str, calls: list, value: Any = None) -> FunctionAgent:
    """Agent recording each input it receives."""

    def run(input: Any, ctx: AgentContext) -> Any:
        calls.append(input)
        return value if value is not None else input

    return FunctionAgent(name, run)
