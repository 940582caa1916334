"""
Agent contract, registries and resolution.
"""
from ensemble_engine.agents.base import Agent, AgentContext, AgentResponse, FunctionAgent
from ensemble_engine.agents.builtin import BuiltInRegistry, default_builtins
from ensemble_engine.agents.registry import AgentRegistry
from ensemble_engine.agents.resolver import AgentResolver, parse_agent_reference

__all__ = [
    "Agent",
    "AgentContext",
    "AgentRegistry",
    "AgentResolver",
    "AgentResponse",
    "BuiltInRegistry",
    "FunctionAgent",
    "default_builtins",
    "parse_agent_reference",
]
