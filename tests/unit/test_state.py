"""
Tests for guarded shared state.
"""
import pytest

from ensemble_engine.core.exceptions import StateAccessViolationError
from ensemble_engine.workflows.state import StateManager
from ensemble_engine.workflows.steps import StepStateConfig
from ensemble_engine.workflows.types import AccessMode


def _config(use=(), set=()) -> StepStateConfig:
    return StepStateConfig(use=list(use), set=list(set))


class TestStateView:
    """Test step-scoped views."""

    def test_declared_read(self):
        manager = StateManager({"topic": "ai", "secret": 1})
        view = manager.view_for("s1", _config(use=["topic"]))
        assert view["topic"] == "ai"
        assert dict(view) == {"topic": "ai"}
        assert len(view) == 1

    def test_undeclared_read_is_violation(self):
        manager = StateManager({"secret": 1})
        view = manager.view_for("s1", _config(use=["topic"]))
        with pytest.raises(StateAccessViolationError) as exc_info:
            view["secret"]
        assert exc_info.value.mode == "read"
        assert view.violation is exc_info.value
        [entry] = manager.access_log
        assert entry.violation and entry.field == "secret"

    def test_undeclared_write_is_violation(self):
        manager = StateManager()
        view = manager.view_for("s1", _config(set=["a"]))
        with pytest.raises(StateAccessViolationError):
            view.stage({"b": 1})
        assert view.pending == {}

    def test_reads_are_copies(self):
        manager = StateManager({"items": [1]})
        view = manager.view_for("s1", _config(use=["items"]))
        view["items"].append(2)
        assert manager.current["items"] == [1]

    def test_pending_visible_to_own_reads(self):
        manager = StateManager({"n": 1})
        view = manager.view_for("s1", _config(use=["n"], set=["n"]))
        view.stage({"n": 2})
        assert view["n"] == 2
        assert manager.current["n"] == 1


class TestStateManager:
    """Test commits, reports and serialization."""

    def test_commit_is_copy_on_write(self):
        manager = StateManager({"n": 1})
        before = manager.current
        view = manager.view_for("s1", _config(set=["n", "m"]))
        view.stage({"n": 2, "m": "x"})
        assert manager.commit(view) == {"n": 2, "m": "x"}
        assert dict(manager.current) == {"n": 2, "m": "x"}
        assert dict(before) == {"n": 1}

    def test_current_is_read_only(self):
        manager = StateManager({"n": 1})
        with pytest.raises(TypeError):
            manager.current["n"] = 2

    def test_uncommitted_view_changes_nothing(self):
        manager = StateManager({"n": 1})
        view = manager.view_for("s1", _config(set=["n"]))
        view.stage({"n": 5})
        assert manager.current["n"] == 1

    def test_no_config_grants_nothing(self):
        manager = StateManager({"n": 1})
        view = manager.view_for("s1", None)
        with pytest.raises(StateAccessViolationError):
            view["n"]

    def test_report(self):
        manager = StateManager({"used": 1, "unused": 2})
        reader = manager.view_for("r", _config(use=["used"]))
        reader["used"]
        writer = manager.view_for("w", _config(set=["made"]))
        writer.stage({"made": True})
        manager.commit(writer)
        with pytest.raises(StateAccessViolationError):
            reader["unused"]

        report = manager.report()
        assert [(e.step_id, e.field, e.mode) for e in report.entries] == [
            ("r", "used", AccessMode.READ),
            ("w", "made", AccessMode.WRITE),
            ("r", "unused", AccessMode.READ),
        ]
        assert len(report.violations) == 1
        assert report.unused_keys == ["made", "unused"]

    def test_serialization(self):
        manager = StateManager({"n": 1})
        manager.view_for("s", _config(use=["n"]))["n"]
        restored = StateManager.from_dict(manager.to_dict())
        assert restored.snapshot() == {"n": 1}
        assert restored.access_log == manager.access_log
