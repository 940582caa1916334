"""
Suspension and resumption of runs.

A suspended run is never kept alive as an in-process call stack. Instead the
whole continuation (definition, context, state, scoring, metrics and the
top-level index to resume from) is written to a durable store under a
single-use token and reconstructed fresh on resume.

Lifecycle::

    pending --approve--> ready --resume--> resumed
    pending --reject---> cancelled
    pending / ready --TTL--> expired

Runs suspended without ``require_approval`` may be resumed while pending.
"""
import asyncio
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from ensemble_engine.core.config import Settings, get_settings
from ensemble_engine.core.exceptions import (
    ConfigurationError,
    SuspensionExpiredError,
    SuspensionNotFoundError,
    SuspensionStateError,
)
from ensemble_engine.core.logging import get_logger
from ensemble_engine.core.result import Result
from ensemble_engine.core.store import DurableStore
from ensemble_engine.workflows.context import ExecutionContext
from ensemble_engine.workflows.definition import EnsembleDefinition
from ensemble_engine.workflows.metrics import MetricsRecorder
from ensemble_engine.workflows.types import SuspensionStatus

logger = get_logger("resumption")

TOKEN_PREFIX = "resume_"
KEY_PREFIX = "suspension:"
# Records outlive their TTL briefly so late resumes report expiry, not absence
EXPIRED_RECORD_GRACE_SECONDS = 3600


def generate_token() -> str:
    return f"{TOKEN_PREFIX}{uuid.uuid4()}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SuspendOptions:
    ttl_seconds: int | None = None
    reason: str | None = None
    require_approval: bool = False


@dataclass
class SuspensionMetadata:
    """Cheap-to-read description of a suspension."""
    token: str
    ensemble_name: str
    suspended_at: datetime
    suspended_by: str
    expires_at: datetime
    reason: str | None = None
    status: SuspensionStatus = SuspensionStatus.PENDING
    require_approval: bool = False
    actor: str | None = None
    approval_data: Any = None
    rejection_reason: str | None = None
    updated_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "ensemble_name": self.ensemble_name,
            "suspended_at": self.suspended_at.isoformat(),
            "suspended_by": self.suspended_by,
            "expires_at": self.expires_at.isoformat(),
            "reason": self.reason,
            "status": self.status.value,
            "require_approval": self.require_approval,
            "actor": self.actor,
            "approval_data": self.approval_data,
            "rejection_reason": self.rejection_reason,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SuspensionMetadata":
        return cls(
            token=data["token"],
            ensemble_name=data["ensemble_name"],
            suspended_at=datetime.fromisoformat(data["suspended_at"]),
            suspended_by=data["suspended_by"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
            reason=data.get("reason"),
            status=SuspensionStatus(data.get("status", SuspensionStatus.PENDING.value)),
            require_approval=data.get("require_approval", False),
            actor=data.get("actor"),
            approval_data=data.get("approval_data"),
            rejection_reason=data.get("rejection_reason"),
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else None,
        )


@dataclass
class SuspendedExecutionState:
    """Full continuation of a suspended run."""
    token: str
    ensemble: dict[str, Any]
    context: dict[str, Any]
    state: dict[str, Any]
    scoring: dict[str, Any]
    resume_from_step: int
    metrics: dict[str, Any]
    metadata: SuspensionMetadata
    version: int = 1
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "token": self.token,
            "ensemble": self.ensemble,
            "context": self.context,
            "state": self.state,
            "scoring": self.scoring,
            "resume_from_step": self.resume_from_step,
            "metrics": self.metrics,
            "metadata": self.metadata.to_dict(),
            "extra": self.extra,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SuspendedExecutionState":
        return cls(
            token=data["token"],
            ensemble=data["ensemble"],
            context=data["context"],
            state=data["state"],
            scoring=data.get("scoring") or {},
            resume_from_step=data["resume_from_step"],
            metrics=data["metrics"],
            metadata=SuspensionMetadata.from_dict(data["metadata"]),
            version=data.get("version", 1),
            extra=data.get("extra") or {},
        )


class ResumptionManager:
    """Persists suspended runs and drives their approval lifecycle."""

    def __init__(
        self,
        store: DurableStore,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self._clock = clock
        self._lock = asyncio.Lock()

    @staticmethod
    def _record_key(token: str) -> str:
        return f"{KEY_PREFIX}{token}"

    @staticmethod
    def _metadata_key(token: str) -> str:
        return f"{KEY_PREFIX}{token}:meta"

    def _store_ttl(self, metadata: SuspensionMetadata) -> int:
        remaining = (metadata.expires_at - self._clock()).total_seconds()
        return max(1, math.ceil(remaining)) + EXPIRED_RECORD_GRACE_SECONDS

    async def _write(self, metadata: SuspensionMetadata, snapshot: dict[str, Any] | None) -> None:
        ttl = self._store_ttl(metadata)
        await self.store.put(
            self._record_key(metadata.token),
            {"metadata": metadata.to_dict(), "snapshot": snapshot},
            ttl,
        )
        await self.store.put(self._metadata_key(metadata.token), metadata.to_dict(), ttl)

    async def _load(self, token: str) -> tuple[SuspensionMetadata, dict[str, Any] | None]:
        record = await self.store.get(self._record_key(token))
        if record is None:
            raise SuspensionNotFoundError(token)
        return SuspensionMetadata.from_dict(record["metadata"]), record.get("snapshot")

    def _check_expiry(self, metadata: SuspensionMetadata) -> None:
        if metadata.status in (SuspensionStatus.PENDING, SuspensionStatus.READY) and metadata.is_expired(
            self._clock()
        ):
            raise SuspensionExpiredError(metadata.token, metadata.expires_at.isoformat())

    # ============== Lifecycle ==============

    async def suspend(
        self,
        ensemble: EnsembleDefinition,
        context: ExecutionContext,
        resume_from_step: int,
        suspended_by: str,
        metrics: MetricsRecorder,
        options: SuspendOptions | None = None,
    ) -> Result[str]:
        """
        Persist a run's continuation.

        Returns:
            Result carrying the resumption token.
        """
        options = options or SuspendOptions()
        if not 0 <= resume_from_step < len(ensemble.flow):
            return Result.err(
                ConfigurationError(
                    f"resumeFromStep {resume_from_step} is outside the flow of '{ensemble.name}' "
                    f"({len(ensemble.flow)} steps)",
                    {"resume_from_step": resume_from_step},
                )
            )
        ttl = options.ttl_seconds or self.settings.resumption_ttl_seconds
        if ttl <= 0:
            return Result.err(ConfigurationError(f"Suspension TTL must be positive, got {ttl}"))

        token = generate_token()
        now = self._clock()
        metadata = SuspensionMetadata(
            token=token,
            ensemble_name=ensemble.name,
            suspended_at=now,
            suspended_by=suspended_by,
            expires_at=now + timedelta(seconds=ttl),
            reason=options.reason,
            require_approval=options.require_approval,
        )
        snapshot = SuspendedExecutionState(
            token=token,
            ensemble=ensemble.to_dict(),
            context=context.to_dict(),
            state=context.state.to_dict(),
            scoring=context.scoring.to_dict(),
            resume_from_step=resume_from_step,
            metrics=metrics.to_dict(),
            metadata=metadata,
        )
        await self._write(metadata, snapshot.to_dict())
        logger.info(
            f"Suspended {ensemble.name} at step {resume_from_step}",
            extra={
                "extra_fields": {
                    "event": "suspension_created",
                    "token": token,
                    "resume_from_step": resume_from_step,
                    "expires_at": metadata.expires_at.isoformat(),
                }
            },
        )
        return Result.ok(token)

    async def resume(self, token: str) -> Result[SuspendedExecutionState]:
        """
        Load a suspended run and consume its token.

        Errors: not found, expired, still pending approval, cancelled, or
        already resumed.
        """
        async with self._lock:
            try:
                metadata, snapshot = await self._load(token)
                self._check_expiry(metadata)
            except (SuspensionNotFoundError, SuspensionExpiredError) as e:
                return Result.err(e)

            if metadata.status == SuspensionStatus.PENDING and metadata.require_approval:
                return Result.err(SuspensionStateError(token, metadata.status.value, "resume"))
            if metadata.status not in (SuspensionStatus.PENDING, SuspensionStatus.READY) or snapshot is None:
                return Result.err(SuspensionStateError(token, metadata.status.value, "resume"))

            metadata.status = SuspensionStatus.RESUMED
            metadata.updated_at = self._clock()
            # keep a tombstone so a second resume is reported as consumed
            await self._write(metadata, None)

        state = SuspendedExecutionState.from_dict(snapshot)
        state.metadata = metadata
        return Result.ok(state)

    async def cancel(self, token: str) -> Result[bool]:
        """Delete a suspension outright."""
        async with self._lock:
            existed = await self.store.delete(self._record_key(token))
            await self.store.delete(self._metadata_key(token))
        if not existed:
            return Result.err(SuspensionNotFoundError(token))
        return Result.ok(True)

    async def get_metadata(self, token: str) -> Result[SuspensionMetadata]:
        """Read suspension metadata without loading the snapshot."""
        data = await self.store.get(self._metadata_key(token))
        if data is None:
            return Result.err(SuspensionNotFoundError(token))
        metadata = SuspensionMetadata.from_dict(data)
        if metadata.status in (SuspensionStatus.PENDING, SuspensionStatus.READY) and metadata.is_expired(
            self._clock()
        ):
            metadata.status = SuspensionStatus.EXPIRED
        return Result.ok(metadata)

    async def approve(self, token: str, actor: str, data: Any = None) -> Result[SuspensionMetadata]:
        """Mark a pending suspension ready to resume."""
        return await self._transition(
            token,
            "approve",
            allowed=(SuspensionStatus.PENDING,),
            target=SuspensionStatus.READY,
            actor=actor,
            approval_data=data,
        )

    async def reject(self, token: str, actor: str, reason: str | None = None) -> Result[SuspensionMetadata]:
        """Permanently cancel a pending or approved suspension."""
        return await self._transition(
            token,
            "reject",
            allowed=(SuspensionStatus.PENDING, SuspensionStatus.READY),
            target=SuspensionStatus.CANCELLED,
            actor=actor,
            rejection_reason=reason,
            drop_snapshot=True,
        )

    async def _transition(
        self,
        token: str,
        action: str,
        allowed: tuple[SuspensionStatus, ...],
        target: SuspensionStatus,
        actor: str,
        drop_snapshot: bool = False,
        **changes: Any,
    ) -> Result[SuspensionMetadata]:
        async with self._lock:
            try:
                metadata, snapshot = await self._load(token)
                self._check_expiry(metadata)
            except (SuspensionNotFoundError, SuspensionExpiredError) as e:
                return Result.err(e)
            if metadata.status not in allowed:
                return Result.err(SuspensionStateError(token, metadata.status.value, action))

            metadata.status = target
            metadata.actor = actor
            metadata.updated_at = self._clock()
            for name, value in changes.items():
                setattr(metadata, name, value)
            if snapshot is not None and not drop_snapshot:
                snapshot["metadata"] = metadata.to_dict()
            await self._write(metadata, None if drop_snapshot else snapshot)

        logger.info(
            f"Suspension {token} {target.value} by {actor}",
            extra={"extra_fields": {"event": f"suspension_{action}", "token": token, "actor": actor}},
        )
        return Result.ok(metadata)
