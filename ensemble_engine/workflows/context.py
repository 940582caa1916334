"""
Per-run execution context.

``ExecutionContext`` owns everything one in-flight run accumulates: step
outputs, step statuses, shared state, scoring state and metrics. It is never
shared between runs. ``Scope`` layers loop variables and buffered outputs
(for discarded parallel branches) on top of it.
"""
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ensemble_engine.core.logging import generate_execution_id
from ensemble_engine.workflows.metrics import MetricsRecorder
from ensemble_engine.workflows.scoring import ScoringState
from ensemble_engine.workflows.state import StateManager
from ensemble_engine.workflows.types import AgentMetric, StepStatus

_UNSET = object()


@dataclass
class ExecutionContext:
    """Mutable record of one run."""
    ensemble_name: str
    input: Any
    state: StateManager
    scoring: ScoringState
    metrics: MetricsRecorder
    execution_id: str = field(default_factory=generate_execution_id)
    outputs: dict[str, Any] = field(default_factory=dict)
    step_status: dict[str, StepStatus] = field(default_factory=dict)
    resume_input: Any = None
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    auth: Any = None
    sealed: bool = False

    @classmethod
    def start(
        cls,
        ensemble_name: str,
        input: Any,
        initial_state: Mapping[str, Any] | None = None,
        auth: Any = None,
    ) -> "ExecutionContext":
        return cls(
            ensemble_name=ensemble_name,
            input=input,
            state=StateManager(initial_state),
            scoring=ScoringState(),
            metrics=MetricsRecorder(ensemble_name),
            auth=auth,
        )

    def seal(self) -> None:
        """Stop accepting outputs, state commits and metrics."""
        self.sealed = True
        self.metrics.seal()

    def status_of(self, key: str) -> StepStatus | None:
        return self.step_status.get(key)

    def to_dict(self) -> dict[str, Any]:
        """Serializable snapshot (state, scoring and metrics are serialized separately)."""
        return {
            "ensemble_name": self.ensemble_name,
            "execution_id": self.execution_id,
            "input": self.input,
            "outputs": dict(self.outputs),
            "step_status": {k: v.value for k, v in self.step_status.items()},
            "resume_input": self.resume_input,
            "started_at": self.started_at,
        }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        state: StateManager,
        scoring: ScoringState,
        metrics: MetricsRecorder,
        auth: Any = None,
    ) -> "ExecutionContext":
        return cls(
            ensemble_name=data["ensemble_name"],
            input=data.get("input"),
            state=state,
            scoring=scoring,
            metrics=metrics,
            execution_id=data["execution_id"],
            outputs=dict(data.get("outputs", {})),
            step_status={k: StepStatus(v) for k, v in data.get("step_status", {}).items()},
            resume_input=data.get("resume_input"),
            started_at=data.get("started_at") or datetime.now(timezone.utc).isoformat(),
            auth=auth,
        )


class Scope:
    """
    Visibility layer for one part of a flow.

    Non-isolated scopes write outputs, state updates and agent metrics
    straight through to the nearest isolated ancestor (or the context).
    Isolated scopes buffer all three until ``commit()``; a discarded scope
    drops them. Steps inside an isolated scope read its buffered state.
    """

    def __init__(
        self,
        context: ExecutionContext,
        parent: "Scope | None" = None,
        variables: dict[str, Any] | None = None,
        isolated: bool = False,
        default_input: Any = _UNSET,
    ):
        self.context = context
        self.parent = parent
        self.variables = variables or {}
        self.isolated = isolated
        self._default_input = default_input
        self._buffer: dict[str, Any] = {}
        self._state_buffer: dict[str, Any] = {}
        self._metric_buffer: list[AgentMetric] = []
        self._discarded = False

    def child(
        self,
        isolated: bool = False,
        default_input: Any = _UNSET,
        **variables: Any,
    ) -> "Scope":
        return Scope(
            self.context,
            parent=self,
            variables=variables,
            isolated=isolated,
            default_input=default_input,
        )

    @property
    def discarded(self) -> bool:
        scope: Scope | None = self
        while scope is not None:
            if scope._discarded:
                return True
            scope = scope.parent
        return self.context.sealed

    def discard(self) -> None:
        self._discarded = True
        self._buffer.clear()
        self._state_buffer.clear()
        self._metric_buffer.clear()

    def _isolating_scope(self) -> "Scope | None":
        scope: Scope | None = self
        while scope is not None and not scope.isolated:
            scope = scope.parent
        return scope

    def record(self, key: str, value: Any) -> None:
        if self.discarded:
            return
        scope = self._isolating_scope()
        if scope is None:
            self.context.outputs[key] = value
        else:
            scope._buffer[key] = value

    def commit_state(self, updates: Mapping[str, Any]) -> dict[str, Any]:
        """Apply (or buffer) a step's state writes; returns the accepted updates."""
        if self.discarded or not updates:
            return {}
        scope = self._isolating_scope()
        if scope is None:
            return self.context.state.apply(updates)
        scope._state_buffer.update(updates)
        return dict(updates)

    def record_metric(self, metric: AgentMetric) -> bool:
        if self.discarded:
            return False
        scope = self._isolating_scope()
        if scope is None:
            self.context.metrics.record_agent(metric)
        else:
            scope._metric_buffer.append(metric)
        return True

    def state_overlay(self) -> dict[str, Any]:
        """State written inside enclosing isolated scopes and not yet committed."""
        overlay: dict[str, Any] = {}
        for scope in self._chain():
            overlay.update(scope._state_buffer)
        return overlay

    def commit(self) -> None:
        """Push buffered outputs, state and metrics to the enclosing scope."""
        if self.discarded:
            return
        target = self.parent
        for key, value in self._buffer.items():
            if target is None:
                self.context.outputs[key] = value
            else:
                target.record(key, value)
        if target is None:
            self.context.state.apply(self._state_buffer)
            for metric in self._metric_buffer:
                self.context.metrics.record_agent(metric)
        else:
            target.commit_state(self._state_buffer)
            for metric in self._metric_buffer:
                target.record_metric(metric)
        self._buffer.clear()
        self._state_buffer.clear()
        self._metric_buffer.clear()

    def _chain(self) -> list["Scope"]:
        chain = []
        scope: Scope | None = self
        while scope is not None:
            chain.append(scope)
            scope = scope.parent
        return list(reversed(chain))

    def outputs(self) -> dict[str, Any]:
        """Outputs visible from here: context outputs overlaid with buffers."""
        merged = dict(self.context.outputs)
        for scope in self._chain():
            merged.update(scope._buffer)
        return merged

    def all_variables(self) -> dict[str, Any]:
        merged: dict[str, Any] = {}
        for scope in self._chain():
            merged.update(scope.variables)
        return merged

    @property
    def default_input(self) -> Any:
        """Input for a step with no mapping and no predecessor."""
        scope: Scope | None = self
        while scope is not None:
            if scope._default_input is not _UNSET:
                return scope._default_input
            scope = scope.parent
        return self.context.input

    def resolution_context(self, state: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """
        Names available to expressions and input mappings.

        Each recorded step appears as ``{key: {"output": value}}``, alongside
        ``input``, ``state``, ``previousOutputs``, ``resumeInput`` and any loop
        variables (``item``, ``index``, ``error``, ``iteration``...).
        """
        outputs = self.outputs()
        resolved: dict[str, Any] = {key: {"output": value} for key, value in outputs.items()}
        resolved.update(
            {
                "input": self.context.input,
                "state": state if state is not None else {**self.context.state.current, **self.state_overlay()},
                "previousOutputs": outputs,
                "resumeInput": self.context.resume_input,
                "executionId": self.context.execution_id,
            }
        )
        resolved.update(self.all_variables())
        return resolved
