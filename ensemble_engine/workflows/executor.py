"""
Agent step execution and the linear executor.

``AgentStepRunner`` runs one leaf agent step through its full lifecycle:
dependency and condition checks, agent resolution, input resolution, cache
lookup, guarded state access, timeout, transient retry, scoring and metrics.
Both the linear and the graph executor delegate every agent step to it, which
is what keeps their observable behavior identical.
"""
import asyncio
import hashlib
import json
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from ensemble_engine.agents.base import Agent, AgentContext, AgentResponse
from ensemble_engine.agents.resolver import AgentResolver
from ensemble_engine.core.config import Settings
from ensemble_engine.core.exceptions import (
    AgentExecutionError,
    EngineException,
    StateAccessViolationError,
    SuspensionRequested,
)
from ensemble_engine.core.interpolation import interpolate
from ensemble_engine.core.logging import AgentLogger, EnsembleLogger, get_logger
from ensemble_engine.core.retry import BackoffPolicy, retry_async
from ensemble_engine.core.safe_eval import evaluate_condition
from ensemble_engine.core.store import DurableStore
from ensemble_engine.workflows.context import ExecutionContext, Scope
from ensemble_engine.workflows.definition import EnsembleDefinition
from ensemble_engine.workflows.inputs import NO_PREVIOUS, InputResolver
from ensemble_engine.workflows.metrics import MetricsCollector
from ensemble_engine.workflows.scoring import ScoringExecutor
from ensemble_engine.workflows.state import StateView
from ensemble_engine.workflows.steps import AgentStep, FlowStep, step_key
from ensemble_engine.workflows.types import AgentMetric, StepStatus

logger = get_logger("executor")


@dataclass
class StepOutcome:
    """Terminal status of one agent step and, if it succeeded, its output."""
    status: StepStatus
    output: Any = None


def cache_key(agent_ref: str, input: Any) -> str:
    """Deterministic cache key for an agent invocation."""
    content = json.dumps({"agent": agent_ref, "input": input}, sort_keys=True, default=str)
    return f"step-cache:{hashlib.sha256(content.encode()).hexdigest()}"


def previous_output(flow: list[FlowStep], start: int, context: ExecutionContext) -> Any:
    """Output of the last succeeded top-level step before ``start``."""
    for index in range(start - 1, -1, -1):
        key = step_key(flow[index], index)
        if context.status_of(key) == StepStatus.SUCCEEDED and key in context.outputs:
            return context.outputs[key]
    return NO_PREVIOUS


def resolve_final_output(ensemble: EnsembleDefinition, context: ExecutionContext) -> Any:
    """Run output: the ``output`` mapping if declared, else the last succeeded top-level step."""
    if ensemble.output is not None:
        return interpolate(ensemble.output, Scope(context).resolution_context())
    for index in range(len(ensemble.flow) - 1, -1, -1):
        key = step_key(ensemble.flow[index], index)
        if context.status_of(key) == StepStatus.SUCCEEDED:
            return context.outputs.get(key)
    return None


class AgentStepRunner:
    """Executes leaf agent steps for one run."""

    def __init__(
        self,
        ensemble: EnsembleDefinition,
        context: ExecutionContext,
        resolver: AgentResolver,
        settings: Settings,
        scoring_executor: ScoringExecutor,
        cache_store: DurableStore | None = None,
        collector: MetricsCollector | None = None,
        discovery: Any = None,
        ensembles: Any = None,
    ):
        self.ensemble = ensemble
        self.context = context
        self.resolver = resolver
        self.settings = settings
        self.scoring_executor = scoring_executor
        self.cache_store = cache_store
        self.collector = collector
        self.discovery = discovery
        self.ensembles = ensembles
        self.inputs = InputResolver()
        self.ensemble_logger = EnsembleLogger()
        self.agent_logger = AgentLogger()
        self._inline_defs = ensemble.inline_agents()
        if collector is not None:
            context.metrics.subscribe(self._count_agent)

    # ============== Lifecycle ==============

    def _set_status(self, step: AgentStep, scope: Scope, status: StepStatus, **extra: Any) -> None:
        if scope.discarded:
            return
        self.context.step_status[step.key] = status
        self.ensemble_logger.log_step_execution(step.key, "agent", status.value, **extra)

    def _dependencies_met(self, step: AgentStep) -> list[str]:
        unmet = []
        for dependency in step.depends_on:
            status = self.context.status_of(dependency)
            if status == StepStatus.SUCCEEDED:
                continue
            if status == StepStatus.SKIPPED and self.settings.allow_skipped_dependencies:
                continue
            unmet.append(dependency)
        return unmet

    async def run(self, step: AgentStep, scope: Scope, previous: Any = NO_PREVIOUS) -> StepOutcome:
        """
        Run one agent step.

        Returns:
            The step outcome (succeeded or skipped).

        Raises:
            EngineException: The step failed.
            SuspensionRequested: The step succeeded and asked to suspend.
        """
        unmet = self._dependencies_met(step)
        if unmet:
            self._set_status(step, scope, StepStatus.SKIPPED, reason="unmet_dependencies", unmet=unmet)
            return StepOutcome(StepStatus.SKIPPED)

        if step.guard is not None and not evaluate_condition(step.guard, scope.resolution_context()):
            self._set_status(step, scope, StepStatus.SKIPPED, reason="condition_false")
            return StepOutcome(StepStatus.SKIPPED)

        self._set_status(step, scope, StepStatus.RUNNING)
        try:
            output, response = await self._execute(step, scope, previous)
        except EngineException:
            self._set_status(step, scope, StepStatus.FAILED)
            raise

        self._set_status(step, scope, StepStatus.SUCCEEDED)
        scope.record(step.key, output)

        if response is not None and response.suspend is not None and not scope.discarded:
            raise SuspensionRequested(
                step_id=step.key,
                agent_name=step.agent,
                reason=response.suspend.reason,
                ttl_seconds=response.suspend.ttl_seconds,
                require_approval=response.suspend.require_approval,
            )
        return StepOutcome(StepStatus.SUCCEEDED, output)

    async def _execute(
        self,
        step: AgentStep,
        scope: Scope,
        previous: Any,
    ) -> tuple[Any, AgentResponse | None]:
        agent = self._resolve(step.agent, step.config)
        mapping_view = self.context.state.view_for(step.key, step.state, scope.state_overlay())
        input = self.inputs.resolve(step, scope, previous, state=mapping_view)
        if mapping_view.violation:
            raise mapping_view.violation

        key = None
        if step.cache and step.cache.enabled and self.cache_store is not None:
            key = cache_key(step.agent, input)
            hit = await self.cache_store.get(key)
            if hit is not None:
                self._record_metric(agent.name or step.agent, step.key, 0.0, cached=True, success=True, scope=scope)
                return hit["output"], None

        outcome: dict[str, Any] = {}

        async def attempt() -> Any:
            response, view = await self._invoke_with_retry(agent, step, scope, input)
            outcome["response"], outcome["view"] = response, view
            return response.data

        if step.scoring is not None:
            scored = await self.scoring_executor.execute_with_scoring(
                step_id=step.key,
                run_attempt=lambda _attempt: attempt(),
                evaluate=lambda payload: self._evaluate(step, scope, payload),
                config=step.scoring,
                policy=self.ensemble.scoring,
                state=self.context.scoring,
            )
            output = scored.output
        else:
            output = await attempt()

        committed = scope.commit_state(outcome["view"].pending)
        if committed:
            logger.debug(f"Step {step.key} committed state fields {sorted(committed)}")

        if key is not None:
            ttl = step.cache.ttl or self.settings.cache_default_ttl_seconds
            await self.cache_store.put(key, {"output": output}, ttl)

        return output, outcome["response"]

    # ============== Resolution ==============

    def _resolve(self, reference: str, config: dict[str, Any] | None = None) -> Agent:
        return self.resolver.resolve(reference, self._inline_defs, config).unwrap()

    # ============== Invocation ==============

    async def _invoke_with_retry(
        self,
        agent: Agent,
        step: AgentStep,
        scope: Scope,
        input: Any,
    ) -> tuple[AgentResponse, StateView]:
        if step.retry is None:
            return await self._invoke(agent, step, scope, input)
        policy = BackoffPolicy(
            strategy=step.retry.backoff,
            initial_delay_ms=step.retry.initial_delay,
            max_delay_ms=step.retry.max_delay,
        )
        return await retry_async(
            lambda: self._invoke(agent, step, scope, input),
            attempts=step.retry.attempts,
            policy=policy,
        )

    async def _invoke(
        self,
        agent: Agent,
        step: AgentStep,
        scope: Scope,
        input: Any,
    ) -> tuple[AgentResponse, StateView]:
        view = self.context.state.view_for(step.key, step.state, scope.state_overlay())
        agent_context = AgentContext(
            input=input,
            step_id=step.key,
            execution_id=self.context.execution_id,
            state=view,
            config=dict(step.config),
            previous_outputs=MappingProxyType(scope.outputs()),
            resume_input=self.context.resume_input,
            auth=self.context.auth,
            logger=get_logger(f"agent.{agent.name or step.agent}"),
            agents=self.discovery,
            ensembles=self.ensembles,
            state_writer=view.stage,
        )
        name = agent.name or step.agent
        timeout_ms = step.timeout or self.settings.default_agent_timeout_ms
        self.agent_logger.log_agent_start(step.key, name)
        started = time.perf_counter()

        try:
            response = await asyncio.wait_for(agent.execute(input, agent_context), timeout_ms / 1000)
        except asyncio.TimeoutError:
            self._record_metric(name, step.key, self._elapsed(started), cached=False, success=False, scope=scope)
            if step.on_timeout is not None:
                logger.warning(f"Step {step.key} timed out after {timeout_ms}ms; using fallback")
                # The timed-out view is dropped so none of its writes commit
                return AgentResponse.ok(step.on_timeout.fallback, timed_out=True), self.context.state.view_for(
                    step.key, None
                )
            raise AgentExecutionError(name, f"timed out after {timeout_ms}ms", timed_out=True)
        except StateAccessViolationError:
            self._record_metric(name, step.key, self._elapsed(started), cached=False, success=False, scope=scope)
            raise
        except EngineException:
            self._record_metric(name, step.key, self._elapsed(started), cached=False, success=False, scope=scope)
            raise
        except Exception as e:
            self._record_metric(name, step.key, self._elapsed(started), cached=False, success=False, scope=scope)
            if view.violation:
                raise view.violation from e
            raise AgentExecutionError(name, str(e), {"exception": type(e).__name__}) from e

        duration = self._elapsed(started)
        if view.violation:
            # Recorded even when the agent swallowed the error
            self._record_metric(name, step.key, duration, cached=False, success=False, scope=scope)
            raise view.violation
        if not isinstance(response, AgentResponse):
            response = AgentResponse.ok(response)
        if not response.success:
            self._record_metric(name, step.key, duration, cached=False, success=False, scope=scope)
            raise AgentExecutionError(name, response.error or "agent reported failure")

        self._record_metric(name, step.key, duration, cached=False, success=True, scope=scope)
        return response, view

    async def _evaluate(self, step: AgentStep, scope: Scope, payload: dict[str, Any]) -> Any:
        """Invoke the step's evaluator agent on one attempt's output."""
        evaluator_ref = step.scoring.evaluator
        evaluator = self._resolve(evaluator_ref)
        evaluator_step = AgentStep(agent=evaluator_ref, id=f"{step.key}:evaluator", timeout=step.timeout)
        response, _ = await self._invoke(evaluator, evaluator_step, scope, payload)
        return response.data

    # ============== Metrics ==============

    @staticmethod
    def _elapsed(started: float) -> float:
        return round((time.perf_counter() - started) * 1000, 3)

    def _record_metric(
        self,
        name: str,
        step_id: str,
        duration_ms: float,
        cached: bool,
        success: bool,
        scope: Scope,
    ) -> None:
        self.agent_logger.log_agent_end(step_id, name, success, duration_ms, cached=cached)
        scope.record_metric(
            AgentMetric(name=name, duration_ms=duration_ms, cached=cached, success=success, step_id=step_id)
        )

    def _count_agent(self, metric: AgentMetric) -> None:
        """Engine-wide counters for metrics that reached the run."""
        labels = {"agent": metric.name, "success": str(metric.success).lower()}
        self.collector.increment("agent_invocations_total", labels=labels)
        self.collector.record_histogram("agent_duration_ms", metric.duration_ms, labels={"agent": metric.name})
        if metric.cached:
            self.collector.increment("agent_cache_hits_total", labels={"agent": metric.name})


class LinearExecutor:
    """Runs a flat list of agent steps strictly in order."""

    def __init__(self, runner: AgentStepRunner):
        self.runner = runner

    async def execute(self, flow: list[AgentStep], scope: Scope, start: int = 0) -> None:
        """
        Execute ``flow[start:]``.

        Raises:
            EngineException: A step failed; later steps do not run.
            SuspensionRequested: A step asked to suspend; ``resume_from_step``
                is set to the index after it.
        """
        context = self.runner.context
        for step in flow[start:]:
            context.step_status.setdefault(step.key, StepStatus.PENDING)

        previous = previous_output(flow, start, context)
        for index in range(start, len(flow)):
            step = flow[index]
            try:
                outcome = await self.runner.run(step, scope, previous)
            except SuspensionRequested as signal:
                signal.resume_from_step = index + 1
                raise
            if outcome.status == StepStatus.SUCCEEDED:
                previous = outcome.output
