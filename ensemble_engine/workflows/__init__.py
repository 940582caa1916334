"""
Ensemble execution engine.

Runs declarative ensembles: sequences and graphs of agent steps with
branching, parallelism, scoring, guarded shared state and suspend/resume.
"""
from ensemble_engine.workflows.definition import EnsembleDefinition, InlineAgentDef, StateConfig
from ensemble_engine.workflows.engine import EnsembleEngine, ExecutionOutput, SuspensionInfo
from ensemble_engine.workflows.metrics import ExecutionMetrics, MetricsCollector
from ensemble_engine.workflows.resumption import (
    ResumptionManager,
    SuspendedExecutionState,
    SuspendOptions,
    SuspensionMetadata,
)
from ensemble_engine.workflows.steps import parse_flow
from ensemble_engine.workflows.types import (
    AgentMetric,
    ExecutionStatus,
    StepStatus,
    SuspensionStatus,
)

__all__ = [
    "AgentMetric",
    "EnsembleDefinition",
    "EnsembleEngine",
    "ExecutionMetrics",
    "ExecutionOutput",
    "ExecutionStatus",
    "InlineAgentDef",
    "MetricsCollector",
    "ResumptionManager",
    "StateConfig",
    "StepStatus",
    "SuspendOptions",
    "SuspendedExecutionState",
    "SuspensionInfo",
    "SuspensionMetadata",
    "SuspensionStatus",
    "parse_flow",
]
