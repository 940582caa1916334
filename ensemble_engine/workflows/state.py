"""
Shared state management.

The only shared mutable resource of a run. Every agent step sees the state
through a ``StateView`` limited to the fields it declared: ``state.use``
fields are readable, ``state.set`` fields are writable. Writes are buffered
on the view and committed copy-on-write only after the step succeeds, so a
failed or timed-out step never changes shared state.
"""
import copy
from collections.abc import Iterator, Mapping
from types import MappingProxyType
from typing import Any

from ensemble_engine.core.exceptions import StateAccessViolationError
from ensemble_engine.workflows.steps import StepStateConfig
from ensemble_engine.workflows.types import AccessLogEntry, AccessMode, AccessReport


class StateView(Mapping):
    """Step-scoped view of shared state with a pending-write buffer."""

    def __init__(
        self,
        manager: "StateManager",
        step_id: str,
        readable: list[str],
        writable: list[str],
        overlay: Mapping[str, Any] | None = None,
    ):
        self._manager = manager
        # writes buffered by an enclosing isolated scope, not yet committed
        self._overlay: Mapping[str, Any] = overlay or {}
        self.step_id = step_id
        self.readable = frozenset(readable)
        self.writable = frozenset(writable)
        self._pending: dict[str, Any] = {}
        self.violation: StateAccessViolationError | None = None

    def _violate(self, field: str, mode: AccessMode) -> StateAccessViolationError:
        self._manager.record(self.step_id, field, mode, violation=True)
        error = StateAccessViolationError(self.step_id, field, mode.value)
        if self.violation is None:
            self.violation = error
        return error

    def __getitem__(self, field: str) -> Any:
        if field not in self.readable:
            raise self._violate(field, AccessMode.READ)
        self._manager.record(self.step_id, field, AccessMode.READ)
        for source in (self._pending, self._overlay, self._manager.current):
            if field in source:
                return copy.deepcopy(source[field])
        raise KeyError(field)

    def __iter__(self) -> Iterator[str]:
        visible = {*self._manager.current, *self._overlay, *self._pending}
        return iter(sorted(f for f in self.readable if f in visible))

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def stage(self, updates: Mapping[str, Any]) -> None:
        """Buffer writes; undeclared fields are violations."""
        for field, value in updates.items():
            if field not in self.writable:
                raise self._violate(field, AccessMode.WRITE)
            self._manager.record(self.step_id, field, AccessMode.WRITE)
            self._pending[field] = copy.deepcopy(value)

    @property
    def pending(self) -> dict[str, Any]:
        return dict(self._pending)


class StateManager:
    """Copy-on-write shared state with access auditing."""

    def __init__(
        self,
        initial: Mapping[str, Any] | None = None,
        access_log: list[AccessLogEntry] | None = None,
    ):
        self._state: Mapping[str, Any] = MappingProxyType(copy.deepcopy(dict(initial or {})))
        self._log: list[AccessLogEntry] = list(access_log or [])

    @property
    def current(self) -> Mapping[str, Any]:
        """Read-only mapping of the committed state."""
        return self._state

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(dict(self._state))

    def record(
        self,
        step_id: str,
        field: str,
        mode: AccessMode,
        violation: bool = False,
    ) -> None:
        self._log.append(AccessLogEntry(step_id=step_id, field=field, mode=mode, violation=violation))

    def view_for(
        self,
        step_id: str,
        config: StepStateConfig | None,
        overlay: Mapping[str, Any] | None = None,
    ) -> StateView:
        if config is None:
            return StateView(self, step_id, [], [])
        return StateView(self, step_id, config.use, config.set, overlay)

    def commit(self, view: StateView) -> dict[str, Any]:
        """
        Apply a view's pending writes as a new state version.

        Returns:
            The committed updates.
        """
        return self.apply(view.pending)

    def apply(self, updates: Mapping[str, Any]) -> dict[str, Any]:
        updates = dict(updates)
        if updates:
            self._state = MappingProxyType({**self._state, **updates})
        return updates

    @property
    def access_log(self) -> list[AccessLogEntry]:
        return list(self._log)

    def report(self) -> AccessReport:
        """Build the access report, including keys nobody read."""
        read = {e.field for e in self._log if e.mode == AccessMode.READ and not e.violation}
        unused = sorted(k for k in self._state if k not in read)
        return AccessReport(entries=list(self._log), unused_keys=unused)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.snapshot(),
            "access_log": [e.to_dict() for e in self._log],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StateManager":
        return cls(
            initial=data.get("state", {}),
            access_log=[AccessLogEntry.from_dict(e) for e in data.get("access_log", [])],
        )
