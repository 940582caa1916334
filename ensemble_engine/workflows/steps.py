"""
Flow step model.

A flow is an ordered list of steps. Each step is one variant of a closed
tagged union discriminated by ``type``; a step without ``type`` is an agent
step. Control-flow variants hold child step lists of the same union.
"""
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    PositiveInt,
    Tag,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from ensemble_engine.core.exceptions import ConfigurationError
from ensemble_engine.core.retry import BackoffStrategy
from ensemble_engine.workflows.types import OnFailure, OnLimit, StepKind, WaitFor


class FlowModel(BaseModel):
    """Base for immutable flow data."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


# ============== Agent step options ==============


class StepStateConfig(FlowModel):
    """Declared shared-state contract of one step."""
    use: list[str] = Field(default_factory=list)
    set: list[str] = Field(default_factory=list)


class StepCacheConfig(FlowModel):
    enabled: bool = True
    ttl: PositiveInt | None = None


class StepRetryConfig(FlowModel):
    """Transient-failure retry for one step."""
    attempts: PositiveInt = 3
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    initial_delay: float = Field(default=1000, ge=0, alias="initialDelay")
    max_delay: float = Field(default=30000, ge=0, alias="maxDelay")


class OnTimeoutConfig(FlowModel):
    fallback: Any = None


class ScoringThresholds(FlowModel):
    minimum: float = 0.7
    target: float | None = None
    excellent: float | None = None


class AgentScoringConfig(FlowModel):
    """Per-step scoring override."""
    evaluator: str
    thresholds: ScoringThresholds | None = None
    criteria: Any = None
    on_failure: OnFailure = Field(default=OnFailure.RETRY, alias="onFailure")
    retry_limit: PositiveInt | None = Field(default=None, alias="retryLimit")
    require_improvement: bool = Field(default=False, alias="requireImprovement")
    min_improvement: float | None = Field(default=None, alias="minImprovement")
    backoff_strategy: BackoffStrategy | None = Field(default=None, alias="backoffStrategy")
    initial_delay: float | None = Field(default=None, ge=0, alias="initialDelay")
    max_delay: float | None = Field(default=None, ge=0, alias="maxDelay")
    weight: float = Field(default=1.0, gt=0)


class EnsembleScoringPolicy(FlowModel):
    """Ensemble-wide scoring defaults."""
    enabled: bool = True
    default_thresholds: ScoringThresholds | None = Field(default=None, alias="defaultThresholds")
    retry_limit: PositiveInt | None = Field(default=None, alias="retryLimit")
    backoff_strategy: BackoffStrategy = Field(default=BackoffStrategy.EXPONENTIAL, alias="backoffStrategy")
    initial_delay: float | None = Field(default=None, ge=0, alias="initialDelay")
    max_delay: float | None = Field(default=None, ge=0, alias="maxDelay")
    criteria: Any = None
    track_in_state: bool = Field(default=True, alias="trackInState")


# ============== Step variants ==============


class AgentStep(FlowModel):
    """Leaf step invoking one agent."""
    kind: Literal["agent"] = Field(default="agent", alias="type")
    agent: str = Field(min_length=1)
    id: str | None = None
    input: Any = None
    config: dict[str, Any] = Field(default_factory=dict)
    state: StepStateConfig | None = None
    cache: StepCacheConfig | None = None
    scoring: AgentScoringConfig | None = None
    condition: Any = None
    when: Any = None
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    retry: StepRetryConfig | None = None
    timeout: float | None = Field(default=None, gt=0)
    on_timeout: OnTimeoutConfig | None = Field(default=None, alias="onTimeout")

    @field_validator("cache", mode="before")
    @classmethod
    def _coerce_cache(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return {"enabled": value}
        return value

    @field_validator("retry", mode="before")
    @classmethod
    def _coerce_retry(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return {"attempts": value}
        return value

    @property
    def key(self) -> str:
        """Key under which this step's output is recorded."""
        return self.id or self.agent

    @property
    def guard(self) -> Any:
        return self.condition if self.condition is not None else self.when


class ParallelStep(FlowModel):
    kind: Literal["parallel"] = Field(default="parallel", alias="type")
    steps: list["FlowStep"] = Field(min_length=1)
    wait_for: WaitFor = Field(default=WaitFor.ALL, alias="waitFor")


class BranchStep(FlowModel):
    kind: Literal["branch"] = Field(default="branch", alias="type")
    condition: Any
    then: list["FlowStep"] = Field(default_factory=list)
    else_: list["FlowStep"] | None = Field(default=None, alias="else")


class ForeachStep(FlowModel):
    kind: Literal["foreach"] = Field(default="foreach", alias="type")
    items: Any
    step: "FlowStep"
    max_concurrency: PositiveInt | None = Field(default=None, alias="maxConcurrency")
    break_when: Any = Field(default=None, alias="breakWhen")


class TryStep(FlowModel):
    kind: Literal["try"] = Field(default="try", alias="type")
    steps: list["FlowStep"] = Field(default_factory=list)
    catch: list["FlowStep"] | None = None
    finally_: list["FlowStep"] | None = Field(default=None, alias="finally")


class SwitchStep(FlowModel):
    kind: Literal["switch"] = Field(default="switch", alias="type")
    value: Any
    cases: dict[str, list["FlowStep"]] = Field(default_factory=dict)
    default: list["FlowStep"] | None = None


class WhileStep(FlowModel):
    kind: Literal["while"] = Field(default="while", alias="type")
    condition: Any
    steps: list["FlowStep"] = Field(default_factory=list)
    max_iterations: PositiveInt | None = Field(default=None, alias="maxIterations")
    on_limit: OnLimit = Field(default=OnLimit.CONTINUE, alias="onLimit")


class MapReduceStep(FlowModel):
    kind: Literal["map-reduce"] = Field(default="map-reduce", alias="type")
    items: Any
    map: "FlowStep"
    reduce: "FlowStep"
    max_concurrency: PositiveInt | None = Field(default=None, alias="maxConcurrency")


def _step_discriminator(value: Any) -> str:
    if isinstance(value, dict):
        return value.get("type", value.get("kind", StepKind.AGENT.value))
    return getattr(value, "kind", StepKind.AGENT.value)


FlowStep = Annotated[
    Union[
        Annotated[AgentStep, Tag("agent")],
        Annotated[ParallelStep, Tag("parallel")],
        Annotated[BranchStep, Tag("branch")],
        Annotated[ForeachStep, Tag("foreach")],
        Annotated[TryStep, Tag("try")],
        Annotated[SwitchStep, Tag("switch")],
        Annotated[WhileStep, Tag("while")],
        Annotated[MapReduceStep, Tag("map-reduce")],
    ],
    Discriminator(_step_discriminator),
]

ControlStep = Union[
    ParallelStep, BranchStep, ForeachStep, TryStep, SwitchStep, WhileStep, MapReduceStep
]

for _model in (ParallelStep, BranchStep, ForeachStep, TryStep, SwitchStep, WhileStep, MapReduceStep):
    _model.model_rebuild()


_flow_adapter: TypeAdapter[list[FlowStep]] = TypeAdapter(list[FlowStep])


def parse_flow(data: list[Any]) -> list[FlowStep]:
    """
    Validate raw step data into typed steps.

    Raises:
        ConfigurationError: If any step is malformed.
    """
    try:
        return _flow_adapter.validate_python(data)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid flow definition: {e.error_count()} error(s)",
            {"errors": e.errors(include_url=False, include_context=False)},
        ) from e


def is_control_step(step: FlowStep) -> bool:
    return not isinstance(step, AgentStep)


def has_control_flow(flow: list[FlowStep]) -> bool:
    """Whether any top-level step is a control-flow construct."""
    return any(is_control_step(step) for step in flow)


def step_key(step: FlowStep, index: int) -> str:
    """Output key of a top-level step: agent key, or ``<type>_<index>``."""
    if isinstance(step, AgentStep):
        return step.key
    return f"{step.kind}_{index}"


def child_sequences(step: FlowStep) -> list[list[FlowStep]]:
    """Child step lists of a control-flow step, in document order."""
    if isinstance(step, ParallelStep):
        return [step.steps]
    if isinstance(step, BranchStep):
        return [step.then, step.else_ or []]
    if isinstance(step, ForeachStep):
        return [[step.step]]
    if isinstance(step, TryStep):
        return [step.steps, step.catch or [], step.finally_ or []]
    if isinstance(step, SwitchStep):
        return [*step.cases.values(), step.default or []]
    if isinstance(step, WhileStep):
        return [step.steps]
    if isinstance(step, MapReduceStep):
        return [[step.map], [step.reduce]]
    return []


def iter_agent_steps(flow: list[FlowStep]):
    """Yield every agent step in document order, at any depth."""
    for step in flow:
        if isinstance(step, AgentStep):
            yield step
        else:
            for sequence in child_sequences(step):
                yield from iter_agent_steps(sequence)


def validate_flow(flow: list[FlowStep]) -> None:
    """
    Check cross-step references before execution.

    Every ``dependsOn`` entry must name an agent step declared earlier in
    document order.

    Raises:
        ConfigurationError: On an unmet dependency.
    """
    seen: set[str] = set()
    for step in iter_agent_steps(flow):
        missing = [dep for dep in step.depends_on if dep not in seen]
        if missing:
            raise ConfigurationError(
                f"Step '{step.key}' depends on undeclared or later step(s): {', '.join(missing)}",
                {"step": step.key, "missing": missing},
            )
        seen.add(step.key)
