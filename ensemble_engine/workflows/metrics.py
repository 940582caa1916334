"""
Execution metrics.

``MetricsRecorder`` accumulates the per-run record returned to callers.
``MetricsCollector`` keeps engine-wide counters and histograms across runs.
"""
import threading
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable

from ensemble_engine.workflows.types import AccessReport, AgentMetric


@dataclass
class ExecutionMetrics:
    """Per-ensemble statistics."""
    ensemble: str
    total_duration_ms: float = 0.0
    agents: list[AgentMetric] = field(default_factory=list)
    cache_hits: int = 0
    loop_limits_reached: list[str] = field(default_factory=list)
    state_access: AccessReport | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ensemble": self.ensemble,
            "total_duration_ms": self.total_duration_ms,
            "agents": [m.to_dict() for m in self.agents],
            "cache_hits": self.cache_hits,
            "loop_limits_reached": list(self.loop_limits_reached),
            "state_access": self.state_access.to_dict() if self.state_access else None,
        }


class MetricsRecorder:
    """
    Accumulates metrics for one run.

    Once sealed (the run finished, failed or suspended), late recordings from
    discarded parallel branches are ignored. Subscribers see each agent metric
    the run accepts.
    """

    def __init__(
        self,
        ensemble: str,
        agents: list[AgentMetric] | None = None,
        cache_hits: int = 0,
        loop_limits_reached: list[str] | None = None,
        elapsed_ms: float = 0.0,
    ):
        self.ensemble = ensemble
        self._agents: list[AgentMetric] = list(agents or [])
        self._cache_hits = cache_hits
        self._loop_limits: list[str] = list(loop_limits_reached or [])
        self._elapsed_before_ms = elapsed_ms
        self._started = time.perf_counter()
        self._subscribers: list[Callable[[AgentMetric], None]] = []
        self.sealed = False

    def subscribe(self, callback: Callable[[AgentMetric], None]) -> None:
        self._subscribers.append(callback)

    def record_agent(self, metric: AgentMetric) -> None:
        if self.sealed:
            return
        self._agents.append(metric)
        if metric.cached:
            self._cache_hits += 1
        for callback in self._subscribers:
            callback(metric)

    def record_loop_limit(self, path: str) -> None:
        if self.sealed:
            return
        self._loop_limits.append(path)

    @property
    def agents(self) -> list[AgentMetric]:
        return list(self._agents)

    @property
    def elapsed_ms(self) -> float:
        return self._elapsed_before_ms + (time.perf_counter() - self._started) * 1000

    def seal(self) -> None:
        self.sealed = True

    def snapshot(self, state_access: AccessReport | None = None) -> ExecutionMetrics:
        return ExecutionMetrics(
            ensemble=self.ensemble,
            total_duration_ms=round(self.elapsed_ms, 3),
            agents=list(self._agents),
            cache_hits=self._cache_hits,
            loop_limits_reached=list(self._loop_limits),
            state_access=state_access,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ensemble": self.ensemble,
            "agents": [m.to_dict() for m in self._agents],
            "cache_hits": self._cache_hits,
            "loop_limits_reached": list(self._loop_limits),
            "elapsed_ms": self.elapsed_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MetricsRecorder":
        return cls(
            ensemble=data["ensemble"],
            agents=[AgentMetric.from_dict(m) for m in data.get("agents", [])],
            cache_hits=data.get("cache_hits", 0),
            loop_limits_reached=data.get("loop_limits_reached", []),
            elapsed_ms=data.get("elapsed_ms", 0.0),
        )


LabelKey = tuple[str, tuple[tuple[str, str], ...]]


def _key(name: str, labels: dict[str, str] | None) -> LabelKey:
    return name, tuple(sorted((labels or {}).items()))


def _render(key: LabelKey) -> str:
    name, labels = key
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in labels) + "}"


class MetricsCollector:
    """
    Engine-wide counters and histograms, labelled per ensemble and agent.

    Shared by every run of one engine, which may be driven from several
    threads, so mutation goes through a lock.
    """

    def __init__(self):
        self._counters: Counter[LabelKey] = Counter()
        self._histograms: defaultdict[LabelKey, list[float]] = defaultdict(list)
        self._lock = threading.Lock()

    def increment(self, name: str, value: int = 1, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._counters[_key(name, labels)] += value

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        with self._lock:
            return self._counters.get(_key(name, labels), 0)

    def total(self, name: str) -> int:
        """Sum of a counter across all label sets."""
        with self._lock:
            return sum(count for (metric, _), count in self._counters.items() if metric == name)

    def record_histogram(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._histograms[_key(name, labels)].append(value)

    def get_histogram(self, name: str, labels: dict[str, str] | None = None) -> list[float] | None:
        with self._lock:
            values = self._histograms.get(_key(name, labels))
            return list(values) if values else None

    def summary(self, name: str, labels: dict[str, str] | None = None) -> dict[str, float] | None:
        """count / sum / avg / max of one histogram."""
        values = self.get_histogram(name, labels)
        if not values:
            return None
        return {
            "count": len(values),
            "sum": sum(values),
            "avg": sum(values) / len(values),
            "max": max(values),
        }

    def snapshot(self) -> dict[str, Any]:
        """Plain-dict export keyed as ``name{label=value,...}``."""
        with self._lock:
            return {
                "counters": {_render(k): v for k, v in self._counters.items()},
                "histograms": {_render(k): list(v) for k, v in self._histograms.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
