"""
Ensemble execution engine.

Entry point for running ensembles. Wires the agent resolver, the linear and
graph executors, scoring, shared state, metrics and the resumption manager
into ``execute_ensemble`` / ``resume_execution``.

Every operation returns a ``Result``; errors carry the metrics accumulated up
to the failure in ``error.partial_metrics``.
"""
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ensemble_engine.agents.base import Agent
from ensemble_engine.agents.builtin import BuiltInRegistry, default_builtins
from ensemble_engine.agents.registry import AgentRegistry
from ensemble_engine.agents.resolver import AgentResolver, OperationFactory, VersionStrategy
from ensemble_engine.core.config import Settings, get_settings
from ensemble_engine.core.exceptions import (
    ConfigurationError,
    EngineException,
    SuspensionRequested,
)
from ensemble_engine.core.logging import EnsembleLogger, ExecutionIDContext, LogContext, get_logger
from ensemble_engine.core.result import Result
from ensemble_engine.core.store import DurableStore, InMemoryStore
from ensemble_engine.workflows.context import ExecutionContext, Scope
from ensemble_engine.workflows.definition import EnsembleDefinition
from ensemble_engine.workflows.executor import AgentStepRunner, LinearExecutor, resolve_final_output
from ensemble_engine.workflows.graph import GraphExecutor
from ensemble_engine.workflows.metrics import ExecutionMetrics, MetricsCollector, MetricsRecorder
from ensemble_engine.workflows.resumption import (
    ResumptionManager,
    SuspendedExecutionState,
    SuspendOptions,
)
from ensemble_engine.workflows.scoring import EnsembleScorer, ScoringExecutor, ScoringState
from ensemble_engine.workflows.state import StateManager
from ensemble_engine.workflows.steps import has_control_flow
from ensemble_engine.workflows.types import AccessReport, ExecutionStatus

logger = get_logger("engine")


@dataclass
class SuspensionInfo:
    """Where and why a run paused."""
    token: str
    resume_from_step: int
    suspended_by: str
    reason: str | None
    expires_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "resume_from_step": self.resume_from_step,
            "suspended_by": self.suspended_by,
            "reason": self.reason,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass
class ExecutionOutput:
    """Successful (completed or suspended) run."""
    status: ExecutionStatus
    output: Any
    metrics: ExecutionMetrics
    state_report: AccessReport
    scoring: ScoringState | None
    state: dict[str, Any]
    execution_id: str
    suspension: SuspensionInfo | None = None

    @property
    def suspended(self) -> bool:
        return self.status == ExecutionStatus.SUSPENDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "output": self.output,
            "metrics": self.metrics.to_dict(),
            "state_report": self.state_report.to_dict(),
            "scoring": self.scoring.to_dict() if self.scoring else None,
            "state": self.state,
            "execution_id": self.execution_id,
            "suspension": self.suspension.to_dict() if self.suspension else None,
        }


class EnsembleEngine:
    """
    Executes ensembles.

    Usage:
        engine = EnsembleEngine(agents=[summarize, review])
        result = await engine.execute_ensemble(definition, {"text": "..."})
        if result.success and result.value.suspended:
            result = await engine.resume(result.value.suspension.token, {"approved": True})
    """

    def __init__(
        self,
        agents: AgentRegistry | Iterable[Agent] | None = None,
        builtins: BuiltInRegistry | None = None,
        store: DurableStore | None = None,
        settings: Settings | None = None,
        operation_factories: dict[str, OperationFactory] | None = None,
        version_strategy: VersionStrategy | None = None,
        ensembles: Mapping[str, Any] | None = None,
        collector: MetricsCollector | None = None,
        cache_store: DurableStore | None = None,
    ):
        self.settings = settings or get_settings()
        if isinstance(agents, AgentRegistry):
            self.registry = agents
        else:
            self.registry = AgentRegistry(agents or ())
        self.builtins = builtins or default_builtins()
        self.store = store or InMemoryStore()
        self.cache_store = cache_store or self.store
        self.resolver = AgentResolver(
            self.builtins,
            self.registry,
            operation_factories=operation_factories,
            version_strategy=version_strategy,
        )
        self.resumption = ResumptionManager(self.store, self.settings)
        self.scoring_executor = ScoringExecutor(self.settings)
        self.scorer = EnsembleScorer(minimum=self.settings.scoring_minimum)
        self.ensembles = ensembles
        self.collector = collector or MetricsCollector()
        self.ensemble_logger = EnsembleLogger()

    # ============== Public API ==============

    async def execute_ensemble(
        self,
        ensemble: EnsembleDefinition | dict[str, Any],
        input: Any = None,
        auth: Any = None,
    ) -> Result[ExecutionOutput]:
        """
        Run an ensemble from its first step.

        Args:
            ensemble: Parsed definition, or raw definition data.
            input: Ensemble input.
            auth: Opaque caller identity handed to agents.

        Returns:
            Result with the run output, metrics, state report and scoring.
        """
        try:
            definition = self._definition(ensemble)
        except ConfigurationError as e:
            return Result.err(e)

        context = ExecutionContext.start(definition.name, input, definition.initial_state, auth=auth)
        return await self._run(definition, context, start=0)

    async def resume_execution(
        self,
        suspended_state: SuspendedExecutionState,
        resume_input: Any = None,
        auth: Any = None,
    ) -> Result[ExecutionOutput]:
        """
        Continue a suspended run from ``resume_from_step``.

        Steps before that index are not re-invoked; their outputs, statuses,
        state and metrics come from the snapshot.
        """
        try:
            definition = EnsembleDefinition.from_dict(suspended_state.ensemble)
        except ConfigurationError as e:
            return Result.err(e)

        context = ExecutionContext.from_dict(
            suspended_state.context,
            state=StateManager.from_dict(suspended_state.state),
            scoring=ScoringState.from_dict(suspended_state.scoring),
            metrics=MetricsRecorder.from_dict(suspended_state.metrics),
            auth=auth,
        )
        if resume_input is None:
            resume_input = suspended_state.metadata.approval_data
        context.resume_input = resume_input

        logger.info(
            f"Resuming {definition.name} at step {suspended_state.resume_from_step}",
            extra={
                "extra_fields": {
                    "event": "ensemble_resumed",
                    "token": suspended_state.token,
                    "resume_from_step": suspended_state.resume_from_step,
                }
            },
        )
        return await self._run(definition, context, start=suspended_state.resume_from_step)

    async def resume(self, token: str, resume_input: Any = None, auth: Any = None) -> Result[ExecutionOutput]:
        """Consume a resumption token and continue its run."""
        loaded = await self.resumption.resume(token)
        if not loaded.success:
            return Result.err(loaded.error)
        return await self.resume_execution(loaded.value, resume_input, auth=auth)

    # ============== Execution ==============

    @staticmethod
    def _definition(ensemble: EnsembleDefinition | dict[str, Any]) -> EnsembleDefinition:
        if isinstance(ensemble, EnsembleDefinition):
            return ensemble
        return EnsembleDefinition.from_dict(ensemble)

    async def _run(
        self,
        ensemble: EnsembleDefinition,
        context: ExecutionContext,
        start: int,
    ) -> Result[ExecutionOutput]:
        runner = AgentStepRunner(
            ensemble,
            context,
            self.resolver,
            self.settings,
            self.scoring_executor,
            cache_store=self.cache_store,
            collector=self.collector,
            discovery=self.registry.discovery(),
            ensembles=self.ensembles,
        )
        if has_control_flow(ensemble.flow):
            executor: LinearExecutor | GraphExecutor = GraphExecutor(runner, self.settings, self.collector)
        else:
            executor = LinearExecutor(runner)

        with ExecutionIDContext(context.execution_id), LogContext(ensemble_name=ensemble.name):
            self.ensemble_logger.log_ensemble_start(context.execution_id, ensemble.name, start_step=start)
            try:
                await executor.execute(ensemble.flow, Scope(context), start=start)
            except SuspensionRequested as signal:
                return await self._suspend(ensemble, context, signal)
            except EngineException as e:
                context.seal()
                e.partial_metrics = context.metrics.snapshot(context.state.report())
                self._finish(ensemble, context, "failed", error=type(e).__name__)
                return Result.err(e)

            try:
                output = resolve_final_output(ensemble, context)
            except EngineException as e:
                context.seal()
                e.partial_metrics = context.metrics.snapshot(context.state.report())
                self._finish(ensemble, context, "failed", error=type(e).__name__)
                return Result.err(e)

            context.seal()
            self._finish(ensemble, context, ExecutionStatus.COMPLETED.value)
            return Result.ok(self._output(ExecutionStatus.COMPLETED, output, context))

    async def _suspend(
        self,
        ensemble: EnsembleDefinition,
        context: ExecutionContext,
        signal: SuspensionRequested,
    ) -> Result[ExecutionOutput]:
        resume_from = signal.resume_from_step
        if resume_from is None or resume_from >= len(ensemble.flow):
            context.seal()
            error = ConfigurationError(
                f"Step '{signal.step_id}' requested suspension but no step follows it",
                {"step": signal.step_id},
            )
            error.partial_metrics = context.metrics.snapshot(context.state.report())
            self._finish(ensemble, context, "failed", error=type(error).__name__)
            return Result.err(error)

        context.seal()
        saved = await self.resumption.suspend(
            ensemble,
            context,
            resume_from,
            suspended_by=signal.step_id,
            metrics=context.metrics,
            options=SuspendOptions(
                ttl_seconds=signal.ttl_seconds,
                reason=signal.reason,
                require_approval=signal.require_approval,
            ),
        )
        if not saved.success:
            saved.error.partial_metrics = context.metrics.snapshot(context.state.report())
            self._finish(ensemble, context, "failed", error=type(saved.error).__name__)
            return Result.err(saved.error)

        token = saved.value
        metadata = await self.resumption.get_metadata(token)
        self.ensemble_logger.log_suspension(token, ensemble.name, resume_from, signal.step_id)
        self._finish(ensemble, context, ExecutionStatus.SUSPENDED.value)
        return Result.ok(
            self._output(
                ExecutionStatus.SUSPENDED,
                context.outputs.get(signal.step_id),
                context,
                suspension=SuspensionInfo(
                    token=token,
                    resume_from_step=resume_from,
                    suspended_by=signal.step_id,
                    reason=signal.reason,
                    expires_at=metadata.value.expires_at if metadata.success else None,
                ),
            )
        )

    def _output(
        self,
        status: ExecutionStatus,
        output: Any,
        context: ExecutionContext,
        suspension: SuspensionInfo | None = None,
    ) -> ExecutionOutput:
        scoring = None if context.scoring.is_empty else self.scorer.finalize(context.scoring)
        return ExecutionOutput(
            status=status,
            output=output,
            metrics=context.metrics.snapshot(context.state.report()),
            state_report=context.state.report(),
            scoring=scoring,
            state=context.state.snapshot(),
            execution_id=context.execution_id,
            suspension=suspension,
        )

    def _finish(self, ensemble: EnsembleDefinition, context: ExecutionContext, status: str, **extra: Any) -> None:
        self.collector.increment("ensemble_runs_total", labels={"ensemble": ensemble.name, "status": status})
        self.ensemble_logger.log_ensemble_end(
            context.execution_id,
            ensemble.name,
            status,
            round(context.metrics.elapsed_ms, 3),
            **extra,
        )
