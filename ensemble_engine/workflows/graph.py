"""
Graph executor.

Interprets nested control-flow steps (parallel, branch, foreach, try, switch,
while, map-reduce). Agent leaves are delegated to ``AgentStepRunner`` so the
graph and linear paths record the same metrics and access entries for the
same work. Concurrency is cooperative: concurrent children are asyncio tasks
interleaving on agent I/O.
"""
import asyncio
from typing import Any

from ensemble_engine.core.config import Settings
from ensemble_engine.core.exceptions import (
    ConfigurationError,
    EngineException,
    LoopLimitExceeded,
    SuspensionRequested,
)
from ensemble_engine.core.logging import EnsembleLogger, get_logger
from ensemble_engine.core.safe_eval import evaluate_condition, evaluate_expression
from ensemble_engine.workflows.context import Scope
from ensemble_engine.workflows.executor import AgentStepRunner, previous_output
from ensemble_engine.workflows.inputs import NO_PREVIOUS
from ensemble_engine.workflows.metrics import MetricsCollector
from ensemble_engine.workflows.steps import (
    AgentStep,
    BranchStep,
    FlowStep,
    ForeachStep,
    MapReduceStep,
    ParallelStep,
    SwitchStep,
    TryStep,
    WhileStep,
    step_key,
)
from ensemble_engine.workflows.types import OnLimit, StepStatus, WaitFor

logger = get_logger("graph")


def _consume_result(task: asyncio.Task) -> None:
    # Discarded branches: retrieve the exception so it is not reported as unhandled
    if not task.cancelled():
        task.exception()


def _case_key(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _is_fatal(error: BaseException) -> bool:
    return isinstance(error, SuspensionRequested) or bool(getattr(error, "fatal", False))


class GraphExecutor:
    """Executes flows containing control-flow constructs."""

    def __init__(
        self,
        runner: AgentStepRunner,
        settings: Settings,
        collector: MetricsCollector | None = None,
    ):
        self.runner = runner
        self.context = runner.context
        self.settings = settings
        self.collector = collector
        self.ensemble_logger = EnsembleLogger()

    async def execute(self, flow: list[FlowStep], scope: Scope, start: int = 0) -> None:
        """
        Execute ``flow[start:]``.

        Raises:
            EngineException: A step failed.
            SuspensionRequested: A top-level agent step asked to suspend.
            ConfigurationError: Suspension was requested inside a construct.
        """
        for index in range(start, len(flow)):
            self.context.step_status.setdefault(step_key(flow[index], index), StepStatus.PENDING)

        previous = previous_output(flow, start, self.context)
        for index in range(start, len(flow)):
            step = flow[index]
            key = step_key(step, index)

            if isinstance(step, AgentStep):
                try:
                    outcome = await self.runner.run(step, scope, previous)
                except SuspensionRequested as signal:
                    signal.resume_from_step = index + 1
                    raise
                if outcome.status == StepStatus.SUCCEEDED:
                    previous = outcome.output
                continue

            self.context.step_status[key] = StepStatus.RUNNING
            self.ensemble_logger.log_step_execution(key, step.kind, StepStatus.RUNNING.value)
            try:
                output = await self.run_control(step, scope, previous, key)
            except SuspensionRequested as signal:
                self.context.step_status[key] = StepStatus.FAILED
                raise ConfigurationError(
                    f"Step '{signal.step_id}' requested suspension inside '{key}'; "
                    "suspension is only supported at top-level agent steps",
                    {"step": signal.step_id, "construct": key},
                ) from None
            except EngineException:
                self.context.step_status[key] = StepStatus.FAILED
                self.ensemble_logger.log_step_execution(key, step.kind, StepStatus.FAILED.value)
                raise
            scope.record(key, output)
            self.context.step_status[key] = StepStatus.SUCCEEDED
            self.ensemble_logger.log_step_execution(key, step.kind, StepStatus.SUCCEEDED.value)
            previous = output

    # ============== Dispatch ==============

    async def run_control(self, step: FlowStep, scope: Scope, previous: Any, path: str) -> Any:
        if isinstance(step, ParallelStep):
            return await self._run_parallel(step, scope, previous, path)
        if isinstance(step, BranchStep):
            return await self._run_branch(step, scope, previous, path)
        if isinstance(step, ForeachStep):
            return await self._run_foreach(step, scope, path)
        if isinstance(step, TryStep):
            return await self._run_try(step, scope, previous, path)
        if isinstance(step, SwitchStep):
            return await self._run_switch(step, scope, previous, path)
        if isinstance(step, WhileStep):
            return await self._run_while(step, scope, previous, path)
        if isinstance(step, MapReduceStep):
            return await self._run_map_reduce(step, scope, path)
        raise ConfigurationError(f"Unsupported step type at {path}: {type(step).__name__}")

    async def _run_single(self, step: FlowStep, scope: Scope, previous: Any, path: str) -> Any:
        if isinstance(step, AgentStep):
            outcome = await self.runner.run(step, scope, previous)
            return outcome.output
        return await self.run_control(step, scope, previous, path)

    async def _run_sequence(self, steps: list[FlowStep], scope: Scope, previous: Any, path: str) -> Any:
        """Run steps in order; returns the last produced output."""
        result = None
        for index, step in enumerate(steps):
            if isinstance(step, AgentStep):
                outcome = await self.runner.run(step, scope, previous)
                if outcome.status == StepStatus.SUCCEEDED:
                    previous = result = outcome.output
            else:
                previous = result = await self.run_control(step, scope, previous, f"{path}.{step.kind}_{index}")
        return result

    # ============== Parallel ==============

    async def _run_parallel(self, step: ParallelStep, scope: Scope, previous: Any, path: str) -> Any:
        if step.wait_for == WaitFor.ALL:
            results = await asyncio.gather(
                *(
                    self._run_single(child, scope, previous, f"{path}.{index}")
                    for index, child in enumerate(step.steps)
                ),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result
            return list(results)

        child_scopes = [scope.child(isolated=True) for _ in step.steps]
        tasks = [
            asyncio.ensure_future(self._run_single(child, child_scopes[index], previous, f"{path}.{index}"))
            for index, child in enumerate(step.steps)
        ]
        order = {task: index for index, task in enumerate(tasks)}
        pending = set(tasks)
        winner: asyncio.Task | None = None
        failures: list[asyncio.Task] = []

        while pending and winner is None:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in sorted(done, key=order.__getitem__):
                error = task.exception()
                if error is not None and _is_fatal(error):
                    winner = task
                    break
                if error is None or step.wait_for == WaitFor.FIRST:
                    winner = task
                    break
                failures.append(task)

        for task in tasks:
            if task is winner:
                continue
            child_scopes[order[task]].discard()
            if task.done():
                _consume_result(task)
            else:
                task.add_done_callback(_consume_result)

        if winner is None:
            # every child failed under waitFor=any
            raise min(failures, key=order.__getitem__).exception()

        error = winner.exception()
        if error is not None:
            raise error
        child_scopes[order[winner]].commit()
        return winner.result()

    # ============== Branching ==============

    async def _run_branch(self, step: BranchStep, scope: Scope, previous: Any, path: str) -> Any:
        taken = evaluate_condition(step.condition, scope.resolution_context())
        steps = step.then if taken else step.else_
        if not steps:
            return None
        return await self._run_sequence(steps, scope, previous, f"{path}.{'then' if taken else 'else'}")

    async def _run_switch(self, step: SwitchStep, scope: Scope, previous: Any, path: str) -> Any:
        value = evaluate_expression(step.value, scope.resolution_context())
        case = _case_key(value)
        steps = step.cases.get(case)
        if steps is None:
            steps = step.default
            case = "default"
        if not steps:
            return None
        return await self._run_sequence(steps, scope, previous, f"{path}.{case}")

    # ============== Iteration ==============

    def _items(self, expression: Any, scope: Scope, path: str) -> list[Any]:
        items = evaluate_expression(expression, scope.resolution_context())
        if not isinstance(items, (list, tuple)):
            raise ConfigurationError(
                f"Items of '{path}' must resolve to a list, got {type(items).__name__}",
                {"path": path, "items": str(expression)},
            )
        return list(items)

    async def _map_items(
        self,
        items: list[Any],
        body: FlowStep,
        limit: int,
        scope: Scope,
        path: str,
        break_when: Any = None,
    ) -> list[Any]:
        """
        Run ``body`` once per item with at most ``limit`` in flight.

        Results come back in item order. After each completion ``break_when``
        is evaluated; once true no further items are scheduled and the result
        is cut after the lowest breaking item. Iterations already in flight
        are allowed to finish, but their results (and failures) past the cut
        are dropped.
        """
        results: dict[int, Any] = {}
        running: dict[asyncio.Task, int] = {}
        next_index = 0
        stop = False
        cutoff: int | None = None

        while running or (not stop and next_index < len(items)):
            while not stop and next_index < len(items) and len(running) < limit:
                item_scope = scope.child(default_input=items[next_index], item=items[next_index], index=next_index)
                task = asyncio.ensure_future(
                    self._run_single(body, item_scope, NO_PREVIOUS, f"{path}[{next_index}]")
                )
                running[task] = next_index
                next_index += 1

            done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in sorted(done, key=running.__getitem__):
                index = running.pop(task)
                error = task.exception()
                if cutoff is not None and index > cutoff:
                    continue
                if error is not None:
                    # let in-flight iterations settle before failing the group
                    if running:
                        await asyncio.gather(*running, return_exceptions=True)
                    raise error
                results[index] = task.result()
                if break_when is not None:
                    completed = [results[i] for i in sorted(results) if cutoff is None or i <= cutoff]
                    check_scope = scope.child(
                        item=items[index], index=index, result=results[index], results=completed
                    )
                    if evaluate_condition(break_when, check_scope.resolution_context()):
                        stop = True
                        cutoff = index
                        logger.debug(f"{path} stopped scheduling after item {index}")

        return [results[i] for i in sorted(results) if cutoff is None or i <= cutoff]

    async def _run_foreach(self, step: ForeachStep, scope: Scope, path: str) -> list[Any]:
        items = self._items(step.items, scope, path)
        limit = step.max_concurrency or self.settings.foreach_max_concurrency
        return await self._map_items(items, step.step, limit, scope, path, step.break_when)

    async def _run_map_reduce(self, step: MapReduceStep, scope: Scope, path: str) -> Any:
        items = self._items(step.items, scope, path)
        limit = step.max_concurrency or self.settings.foreach_max_concurrency
        mapped = await self._map_items(items, step.map, limit, scope, f"{path}.map")
        reduce_scope = scope.child(default_input=mapped, mapResults=mapped, results=mapped)
        return await self._run_single(step.reduce, reduce_scope, NO_PREVIOUS, f"{path}.reduce")

    async def _run_while(self, step: WhileStep, scope: Scope, previous: Any, path: str) -> list[Any]:
        max_iterations = step.max_iterations or self.settings.while_max_iterations
        results: list[Any] = []
        last = None
        iteration = 0

        while iteration < max_iterations:
            loop_scope = scope.child(iteration=iteration, lastIterationResults=last)
            if not evaluate_condition(step.condition, loop_scope.resolution_context()):
                break
            last = await self._run_sequence(
                step.steps, loop_scope, previous if iteration == 0 else last, f"{path}[{iteration}]"
            )
            results.append(last)
            iteration += 1
        else:
            check_scope = scope.child(iteration=iteration, lastIterationResults=last)
            if evaluate_condition(step.condition, check_scope.resolution_context()):
                self._loop_limit_reached(step, path, max_iterations)

        return results

    def _loop_limit_reached(self, step: WhileStep, path: str, max_iterations: int) -> None:
        self.context.metrics.record_loop_limit(path)
        self.ensemble_logger.log_loop_limit(path, max_iterations)
        if self.collector is not None:
            self.collector.increment("while_loop_limit_reached_total")
        if step.on_limit == OnLimit.FAIL:
            raise LoopLimitExceeded(path, max_iterations)

    # ============== Error handling ==============

    async def _run_try(self, step: TryStep, scope: Scope, previous: Any, path: str) -> Any:
        try:
            return await self._run_sequence(step.steps, scope, previous, f"{path}.try")
        except EngineException as e:
            if getattr(e, "fatal", False) or not step.catch:
                raise
            logger.info(f"{path} caught {type(e).__name__}: {e}")
            catch_scope = scope.child(
                error={"message": str(e), "name": type(e).__name__, "code": e.error_code, "details": e.details}
            )
            return await self._run_sequence(step.catch, catch_scope, previous, f"{path}.catch")
        finally:
            if step.finally_:
                await self._run_sequence(step.finally_, scope, previous, f"{path}.finally")
