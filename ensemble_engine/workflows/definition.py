"""
Ensemble definition.

Already-parsed, immutable description of one ensemble: its flow, shared
state, scoring policy, inline agents and output mapping.
"""
from typing import Any

from pydantic import Field, ValidationError

from ensemble_engine.core.exceptions import ConfigurationError
from ensemble_engine.workflows.steps import (
    EnsembleScoringPolicy,
    FlowModel,
    FlowStep,
    validate_flow,
)


class InlineAgentDef(FlowModel):
    """Agent defined inside the ensemble and instantiated per run."""
    name: str = Field(min_length=1)
    operation: str
    config: dict[str, Any] = Field(default_factory=dict)


class StateConfig(FlowModel):
    fields_schema: dict[str, Any] = Field(default_factory=dict, alias="schema")
    initial: dict[str, Any] = Field(default_factory=dict)


class EnsembleDefinition(FlowModel):
    """Declarative workflow composed of flow steps."""
    name: str = Field(min_length=1)
    description: str | None = None
    flow: list[FlowStep] = Field(min_length=1)
    agents: list[InlineAgentDef] = Field(default_factory=list)
    state: StateConfig | None = None
    scoring: EnsembleScoringPolicy | None = None
    inputs: dict[str, Any] | None = None
    output: Any = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EnsembleDefinition":
        """
        Build and validate a definition.

        Raises:
            ConfigurationError: If the data is malformed or a ``dependsOn``
                reference cannot be satisfied.
        """
        try:
            ensemble = cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid ensemble definition: {e.error_count()} error(s)",
                {"errors": e.errors(include_url=False, include_context=False)},
            ) from e
        validate_flow(ensemble.flow)
        return ensemble

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def inline_agents(self) -> dict[str, InlineAgentDef]:
        return {agent.name: agent for agent in self.agents}

    @property
    def initial_state(self) -> dict[str, Any]:
        return dict(self.state.initial) if self.state else {}
