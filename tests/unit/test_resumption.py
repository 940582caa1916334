"""
Tests for the resumption manager.
"""
from datetime import datetime, timedelta, timezone

import pytest

from ensemble_engine.core.exceptions import (
    ConfigurationError,
    SuspensionExpiredError,
    SuspensionNotFoundError,
    SuspensionStateError,
)
from ensemble_engine.core.store import InMemoryStore
from ensemble_engine.workflows.context import ExecutionContext
from ensemble_engine.workflows.definition import EnsembleDefinition
from ensemble_engine.workflows.metrics import MetricsRecorder
from ensemble_engine.workflows.resumption import ResumptionManager, SuspendOptions
from ensemble_engine.workflows.scoring import ScoringState
from ensemble_engine.workflows.state import StateManager
from ensemble_engine.workflows.types import AgentMetric, StepStatus, SuspensionStatus


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def manager(settings, clock) -> ResumptionManager:
    return ResumptionManager(InMemoryStore(), settings, clock=clock)


@pytest.fixture
def ensemble() -> EnsembleDefinition:
    return EnsembleDefinition.from_dict(
        {"name": "review", "flow": [{"agent": "draft"}, {"agent": "hitl"}, {"agent": "publish"}]}
    )


@pytest.fixture
def context() -> ExecutionContext:
    context = ExecutionContext.start("review", {"topic": "ai"}, {"count": 1})
    context.outputs["draft"] = {"text": "hello"}
    context.step_status["draft"] = StepStatus.SUCCEEDED
    context.step_status["hitl"] = StepStatus.SUCCEEDED
    context.metrics.record_agent(AgentMetric(name="draft", duration_ms=1.0, cached=False, success=True))
    return context


async def _suspend(manager, ensemble, context, **options) -> str:
    result = await manager.suspend(
        ensemble, context, 2, suspended_by="hitl", metrics=context.metrics, options=SuspendOptions(**options)
    )
    assert result.success
    return result.value


# =============================================================================
# Suspend / Resume Tests
# =============================================================================


class TestSuspendResume:
    """Test the basic suspend/resume cycle."""

    @pytest.mark.asyncio
    async def test_round_trip_reconstructs_context(self, manager, ensemble, context):
        """Test resume returns a snapshot equal to the suspended context."""
        token = await _suspend(manager, ensemble, context, reason="review")
        assert token.startswith("resume_")

        result = await manager.resume(token)
        assert result.success
        snapshot = result.value
        restored_state = StateManager.from_dict(snapshot.state)
        restored = ExecutionContext.from_dict(
            snapshot.context,
            state=restored_state,
            scoring=ScoringState.from_dict(snapshot.scoring),
            metrics=MetricsRecorder.from_dict(snapshot.metrics),
        )
        assert restored.to_dict() == context.to_dict()
        assert restored_state.snapshot() == context.state.snapshot()
        assert restored.metrics.agents == context.metrics.agents
        assert snapshot.resume_from_step == 2
        assert EnsembleDefinition.from_dict(snapshot.ensemble) == ensemble
        assert snapshot.metadata.status == SuspensionStatus.RESUMED

    @pytest.mark.asyncio
    async def test_tokens_are_unique(self, manager, ensemble, context):
        first = await _suspend(manager, ensemble, context)
        second = await _suspend(manager, ensemble, context)
        assert first != second

    @pytest.mark.asyncio
    async def test_token_is_single_use(self, manager, ensemble, context):
        token = await _suspend(manager, ensemble, context)
        assert (await manager.resume(token)).success
        again = await manager.resume(token)
        assert isinstance(again.error, SuspensionStateError)

    @pytest.mark.asyncio
    async def test_resume_from_step_must_be_valid(self, manager, ensemble, context):
        for index in (-1, 3):
            result = await manager.suspend(ensemble, context, index, "hitl", context.metrics)
            assert isinstance(result.error, ConfigurationError)

    @pytest.mark.asyncio
    async def test_unknown_token(self, manager):
        result = await manager.resume("resume_missing")
        assert isinstance(result.error, SuspensionNotFoundError)

    @pytest.mark.asyncio
    async def test_metadata(self, manager, ensemble, context, clock, settings):
        token = await _suspend(manager, ensemble, context, reason="needs review", ttl_seconds=60)
        result = await manager.get_metadata(token)
        metadata = result.value
        assert metadata.status == SuspensionStatus.PENDING
        assert metadata.suspended_by == "hitl"
        assert metadata.reason == "needs review"
        assert metadata.suspended_at == clock.now
        assert metadata.expires_at == clock.now + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_default_ttl(self, manager, ensemble, context, clock, settings):
        token = await _suspend(manager, ensemble, context)
        metadata = (await manager.get_metadata(token)).value
        assert metadata.expires_at - metadata.suspended_at == timedelta(seconds=settings.resumption_ttl_seconds)


class TestExpiryAndCancel:
    """Test expiry and cancellation."""

    @pytest.mark.asyncio
    async def test_expired_token(self, manager, ensemble, context, clock):
        token = await _suspend(manager, ensemble, context, ttl_seconds=60)
        clock.advance(61)
        assert (await manager.get_metadata(token)).value.status == SuspensionStatus.EXPIRED
        result = await manager.resume(token)
        assert isinstance(result.error, SuspensionExpiredError)

    @pytest.mark.asyncio
    async def test_cancel(self, manager, ensemble, context):
        token = await _suspend(manager, ensemble, context)
        assert (await manager.cancel(token)).success
        assert isinstance((await manager.resume(token)).error, SuspensionNotFoundError)
        assert isinstance((await manager.get_metadata(token)).error, SuspensionNotFoundError)
        assert isinstance((await manager.cancel(token)).error, SuspensionNotFoundError)


# =============================================================================
# Approval Lifecycle Tests
# =============================================================================


class TestApproval:
    """Test approve / reject gating."""

    @pytest.mark.asyncio
    async def test_pending_approval_blocks_resume(self, manager, ensemble, context):
        token = await _suspend(manager, ensemble, context, require_approval=True)
        result = await manager.resume(token)
        assert isinstance(result.error, SuspensionStateError)
        assert result.error.status == "pending"

    @pytest.mark.asyncio
    async def test_approve_then_resume(self, manager, ensemble, context):
        token = await _suspend(manager, ensemble, context, require_approval=True)
        approved = await manager.approve(token, "alice", {"ok": True})
        assert approved.value.status == SuspensionStatus.READY
        assert approved.value.actor == "alice"

        result = await manager.resume(token)
        assert result.success
        assert result.value.metadata.approval_data == {"ok": True}
        assert result.value.metadata.status == SuspensionStatus.RESUMED

    @pytest.mark.asyncio
    async def test_approve_twice(self, manager, ensemble, context):
        token = await _suspend(manager, ensemble, context, require_approval=True)
        await manager.approve(token, "alice")
        result = await manager.approve(token, "bob")
        assert isinstance(result.error, SuspensionStateError)

    @pytest.mark.asyncio
    async def test_reject_cancels_permanently(self, manager, ensemble, context):
        token = await _suspend(manager, ensemble, context, require_approval=True)
        rejected = await manager.reject(token, "carol", "not good")
        assert rejected.value.status == SuspensionStatus.CANCELLED
        assert rejected.value.rejection_reason == "not good"

        assert isinstance((await manager.resume(token)).error, SuspensionStateError)
        assert isinstance((await manager.approve(token, "alice")).error, SuspensionStateError)
        metadata = (await manager.get_metadata(token)).value
        assert metadata.status == SuspensionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_approve_after_expiry(self, manager, ensemble, context, clock):
        token = await _suspend(manager, ensemble, context, require_approval=True, ttl_seconds=10)
        clock.advance(10)
        assert isinstance((await manager.approve(token, "alice")).error, SuspensionExpiredError)
