"""
Step input resolution.

A step's input is, in order of precedence:

1. its explicit ``input`` mapping, interpolated against the resolution context
2. the output of the step immediately before it in the same sequence
3. the scope default: the current item inside foreach/map bodies, the mapped
   results inside a reduce step, otherwise the ensemble input
"""
import copy
from collections.abc import Mapping
from typing import Any

from ensemble_engine.core.interpolation import interpolate
from ensemble_engine.workflows.context import Scope
from ensemble_engine.workflows.steps import AgentStep


class _NoPrevious:
    def __repr__(self) -> str:
        return "NO_PREVIOUS"


NO_PREVIOUS: Any = _NoPrevious()


class InputResolver:
    """Computes the input an agent step receives."""

    def resolve(
        self,
        step: AgentStep,
        scope: Scope,
        previous: Any = NO_PREVIOUS,
        state: Mapping[str, Any] | None = None,
    ) -> Any:
        """
        Resolve the input for ``step``.

        Args:
            step: The agent step about to run.
            scope: Scope the step runs in.
            previous: Output of the preceding step in the same sequence.
            state: State visible to the mapping, normally the step's
                permitted view. Falls back to the committed state.
        """
        if step.input is not None:
            return interpolate(step.input, scope.resolution_context(state=state))
        if previous is not NO_PREVIOUS:
            return copy.deepcopy(previous)
        return copy.deepcopy(scope.default_input)
