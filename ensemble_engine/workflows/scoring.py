"""
Scoring and retry.

``ScoringExecutor`` runs a scored step: execute, hand the output to an
evaluator agent, compare the score with thresholds and apply the step's
``onFailure`` policy. ``EnsembleScorer`` aggregates the history of a run
into an ensemble score and quality metrics.
"""
import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from numbers import Real
from typing import Any, Awaitable, Callable

from ensemble_engine.core.config import Settings, get_settings
from ensemble_engine.core.exceptions import AgentExecutionError, ScoringThresholdError
from ensemble_engine.core.logging import get_logger
from ensemble_engine.core.retry import BackoffPolicy, BackoffStrategy
from ensemble_engine.workflows.steps import (
    AgentScoringConfig,
    EnsembleScoringPolicy,
    ScoringThresholds,
)
from ensemble_engine.workflows.types import OnFailure

logger = get_logger("scoring")


@dataclass
class ScoreEntry:
    """One evaluated attempt."""
    step_id: str
    attempt: int
    score: float
    passed: bool
    rating: str
    feedback: str | None = None
    breakdown: dict[str, float] | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class StepScoring:
    """Scoring bookkeeping for one step."""
    attempts: int = 0
    retries: int = 0
    last_score: float | None = None
    status: str | None = None
    weight: float = 1.0


@dataclass
class ScoringState:
    """Scoring state of a run. Mutated only by the scoring engine."""
    steps: dict[str, StepScoring] = field(default_factory=dict)
    history: list[ScoreEntry] = field(default_factory=list)
    final_score: float | None = None
    quality: dict[str, Any] | None = None

    def step(self, step_id: str) -> StepScoring:
        return self.steps.setdefault(step_id, StepScoring())

    def record(self, entry: ScoreEntry) -> None:
        step = self.step(entry.step_id)
        step.attempts = max(step.attempts, entry.attempt)
        step.last_score = entry.score
        self.history.append(entry)

    @property
    def is_empty(self) -> bool:
        return not self.history

    def to_dict(self) -> dict[str, Any]:
        return {
            "steps": {k: asdict(v) for k, v in self.steps.items()},
            "history": [e.to_dict() for e in self.history],
            "final_score": self.final_score,
            "quality": self.quality,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ScoringState":
        if not data:
            return cls()
        return cls(
            steps={k: StepScoring(**v) for k, v in data.get("steps", {}).items()},
            history=[ScoreEntry(**e) for e in data.get("history", [])],
            final_score=data.get("final_score"),
            quality=data.get("quality"),
        )


@dataclass
class ScoredOutcome:
    """Accepted output of a scored step."""
    output: Any
    score: float
    attempts: int
    status: str  # "passed" | "below_threshold"


def parse_evaluation(evaluator: str, result: Any) -> tuple[float, str | None, dict[str, float] | None]:
    """
    Extract ``(score, feedback, breakdown)`` from an evaluator's output.

    Accepts a bare number or a mapping with ``score`` (or ``value``).
    """
    if isinstance(result, Real) and not isinstance(result, bool):
        return float(result), None, None
    if isinstance(result, dict):
        raw = result.get("score", result.get("value"))
        if isinstance(raw, Real) and not isinstance(raw, bool):
            return float(raw), result.get("feedback"), result.get("breakdown")
    raise AgentExecutionError(evaluator, f"evaluator returned no numeric score: {result!r}")


def rate_score(score: float, thresholds: ScoringThresholds) -> str:
    if thresholds.excellent is not None and score >= thresholds.excellent:
        return "excellent"
    if thresholds.target is not None and score >= thresholds.target:
        return "target"
    if score >= thresholds.minimum:
        return "acceptable"
    return "below_minimum"


@dataclass
class ResolvedScoring:
    """Step scoring config merged with ensemble and engine defaults."""
    evaluator: str
    thresholds: ScoringThresholds
    criteria: Any
    on_failure: OnFailure
    retry_limit: int
    require_improvement: bool
    min_improvement: float
    backoff: BackoffPolicy
    weight: float

    @classmethod
    def merge(
        cls,
        config: AgentScoringConfig,
        policy: EnsembleScoringPolicy | None,
        settings: Settings,
    ) -> "ResolvedScoring":
        def pick(*values: Any) -> Any:
            return next(v for v in values if v is not None)

        thresholds = config.thresholds or (policy.default_thresholds if policy else None) or ScoringThresholds(
            minimum=settings.scoring_minimum,
            target=settings.scoring_target,
            excellent=settings.scoring_excellent,
        )
        return cls(
            evaluator=config.evaluator,
            thresholds=thresholds,
            criteria=pick(config.criteria, policy.criteria if policy else None, []),
            on_failure=config.on_failure,
            retry_limit=pick(config.retry_limit, policy.retry_limit if policy else None, settings.scoring_retry_limit),
            require_improvement=config.require_improvement,
            min_improvement=pick(config.min_improvement, settings.scoring_min_improvement),
            backoff=BackoffPolicy(
                strategy=pick(
                    config.backoff_strategy,
                    policy.backoff_strategy if policy else None,
                    BackoffStrategy.EXPONENTIAL,
                ),
                initial_delay_ms=pick(
                    config.initial_delay,
                    policy.initial_delay if policy else None,
                    settings.scoring_initial_delay_ms,
                ),
                max_delay_ms=pick(
                    config.max_delay,
                    policy.max_delay if policy else None,
                    settings.scoring_max_delay_ms,
                ),
            ),
            weight=config.weight,
        )


class ScoringExecutor:
    """Executes a step under a scoring policy."""

    def __init__(
        self,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self._sleep = sleep

    async def execute_with_scoring(
        self,
        step_id: str,
        run_attempt: Callable[[int], Awaitable[Any]],
        evaluate: Callable[[dict[str, Any]], Awaitable[Any]],
        config: AgentScoringConfig,
        policy: EnsembleScoringPolicy | None,
        state: ScoringState,
    ) -> ScoredOutcome:
        """
        Run attempts until one passes or the policy gives up.

        Args:
            step_id: Key of the scored step.
            run_attempt: Executes the agent once; receives the attempt number.
            evaluate: Invokes the evaluator with ``{output, attempt,
                previousScore, criteria}``.

        Raises:
            ScoringThresholdError: Retries exhausted, insufficient improvement,
                or ``onFailure=abort``.
        """
        scoring = ResolvedScoring.merge(config, policy, self.settings)
        step_state = state.step(step_id)
        step_state.weight = scoring.weight
        minimum = scoring.thresholds.minimum
        previous_score: float | None = None
        score: float | None = None

        for attempt in range(1, scoring.retry_limit + 1):
            output = await run_attempt(attempt)
            evaluation = await evaluate(
                {
                    "output": output,
                    "attempt": attempt,
                    "previousScore": previous_score,
                    "criteria": scoring.criteria,
                }
            )
            score, feedback, breakdown = parse_evaluation(scoring.evaluator, evaluation)
            passed = score >= minimum
            state.record(
                ScoreEntry(
                    step_id=step_id,
                    attempt=attempt,
                    score=score,
                    passed=passed,
                    rating=rate_score(score, scoring.thresholds),
                    feedback=feedback,
                    breakdown=breakdown,
                )
            )

            if passed:
                step_state.status = "passed"
                return ScoredOutcome(output=output, score=score, attempts=attempt, status="passed")

            if scoring.on_failure == OnFailure.CONTINUE:
                step_state.status = "below_threshold"
                logger.warning(f"Step {step_id} accepted below minimum score {score} < {minimum}")
                return ScoredOutcome(output=output, score=score, attempts=attempt, status="below_threshold")

            if scoring.on_failure == OnFailure.ABORT:
                step_state.status = "aborted"
                raise ScoringThresholdError(step_id, score, minimum, attempt, fatal=True)

            if (
                scoring.require_improvement
                and previous_score is not None
                and score - previous_score < scoring.min_improvement
            ):
                step_state.status = "no_improvement"
                logger.warning(
                    f"Step {step_id} stopped retrying: improvement {score - previous_score:.3f} "
                    f"below {scoring.min_improvement}"
                )
                raise ScoringThresholdError(step_id, score, minimum, attempt)

            previous_score = score
            if attempt < scoring.retry_limit:
                step_state.retries += 1
                delay = scoring.backoff.get_delay_seconds(attempt)
                logger.info(
                    f"Step {step_id} scored {score} below {minimum}; retrying",
                    extra={
                        "extra_fields": {
                            "event": "scoring_retry",
                            "step_id": step_id,
                            "attempt": attempt,
                            "score": score,
                            "delay_ms": delay * 1000,
                        }
                    },
                )
                if delay > 0:
                    await self._sleep(delay)

        step_state.status = "max_retries_exceeded"
        raise ScoringThresholdError(step_id, score, minimum, scoring.retry_limit)


@dataclass
class QualityMetrics:
    ensemble_score: float = 0.0
    average_score: float = 0.0
    min_score: float = 0.0
    max_score: float = 0.0
    total_evaluations: int = 0
    pass_rate: float = 0.0
    total_retries: int = 0
    average_attempts: float = 0.0
    criteria_breakdown: dict[str, dict[str, float]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class EnsembleScorer:
    """Aggregates scoring history into ensemble-level quality figures."""

    def __init__(self, minimum: float = 0.7):
        self.minimum = minimum

    @staticmethod
    def latest_passing_scores(history: list[ScoreEntry]) -> dict[str, float]:
        scores: dict[str, float] = {}
        for entry in history:
            if entry.passed:
                scores[entry.step_id] = entry.score
        return scores

    def ensemble_score(
        self,
        history: list[ScoreEntry],
        weights: dict[str, float] | None = None,
    ) -> float:
        """Mean of each step's latest passing score, optionally weighted."""
        latest = self.latest_passing_scores(history)
        if not latest:
            return 0.0
        weights = weights or {}
        total_weight = sum(weights.get(step, 1.0) for step in latest)
        weighted = sum(score * weights.get(step, 1.0) for step, score in latest.items())
        return weighted / total_weight if total_weight > 0 else 0.0

    def quality_metrics(
        self,
        history: list[ScoreEntry],
        weights: dict[str, float] | None = None,
    ) -> QualityMetrics:
        if not history:
            return QualityMetrics()
        scores = [e.score for e in history]
        attempts = [e.attempt for e in history]
        return QualityMetrics(
            ensemble_score=self.ensemble_score(history, weights),
            average_score=sum(scores) / len(scores),
            min_score=min(scores),
            max_score=max(scores),
            total_evaluations=len(history),
            pass_rate=sum(1 for e in history if e.passed) / len(history),
            total_retries=sum(1 for a in attempts if a > 1),
            average_attempts=sum(attempts) / len(attempts),
            criteria_breakdown=self._criteria_breakdown(history),
        )

    def _criteria_breakdown(self, history: list[ScoreEntry]) -> dict[str, dict[str, float]]:
        collected: dict[str, list[float]] = {}
        for entry in history:
            for criterion, value in (entry.breakdown or {}).items():
                collected.setdefault(criterion, []).append(float(value))
        return {
            criterion: {
                "average": sum(values) / len(values),
                "pass_rate": sum(1 for v in values if v >= self.minimum) / len(values),
            }
            for criterion, values in collected.items()
        }

    def finalize(self, state: ScoringState) -> ScoringState:
        """Fill in final score and quality metrics."""
        if state.is_empty:
            return state
        weights = {step: s.weight for step, s in state.steps.items()}
        metrics = self.quality_metrics(state.history, weights)
        state.final_score = metrics.ensemble_score
        state.quality = metrics.to_dict()
        return state

    @staticmethod
    def score_range(score: float) -> str:
        if score >= 0.95:
            return "excellent"
        if score >= 0.8:
            return "good"
        if score >= 0.6:
            return "acceptable"
        return "poor"

    @staticmethod
    def _window_averages(history: list[ScoreEntry], window: int) -> tuple[float, float] | None:
        if len(history) < window * 2:
            return None
        recent = [e.score for e in history[-window:]]
        older = [e.score for e in history[-window * 2:-window]]
        return sum(recent) / window, sum(older) / window

    def is_quality_degrading(self, history: list[ScoreEntry], window: int = 5) -> bool:
        """Recent window averages more than 0.1 below the window before it."""
        averages = self._window_averages(history, window)
        if averages is None:
            return False
        recent, older = averages
        return recent < older - 0.1

    def score_trend(self, history: list[ScoreEntry], window: int = 5) -> str:
        averages = self._window_averages(history, window)
        if averages is None:
            return "stable"
        recent, older = averages
        if recent > older + 0.05:
            return "improving"
        if recent < older - 0.05:
            return "declining"
        return "stable"

    def recommendations(self, metrics: QualityMetrics) -> list[str]:
        tips = []
        if metrics.ensemble_score < self.minimum:
            tips.append("Overall ensemble score is low. Review step configurations and criteria.")
        if metrics.total_retries > metrics.total_evaluations * 0.5:
            tips.append("High retry rate detected. Consider adjusting thresholds.")
        if metrics.pass_rate < 0.8:
            tips.append(f"Pass rate is {metrics.pass_rate * 100:.0f}%. Review failing criteria.")
        for criterion, data in metrics.criteria_breakdown.items():
            if data["pass_rate"] < 0.7:
                tips.append(f"Criterion '{criterion}' has a low pass rate ({data['pass_rate'] * 100:.0f}%).")
        return tips
