"""Ready-queue dispatch loop and the run/resume entry points."""

from __future__ import annotations

import asyncio
import heapq
from collections import deque
from collections.abc import Callable
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, Protocol

from taskdag.config.schema import DagSpec, RunConfig, TaskSpec
from taskdag.dag.build import ValidatedGraph
from taskdag.dag.validate import validate
from taskdag.exec.cancel import CancelToken
from taskdag.exec.task_runner import TaskRunner
from taskdag.report.stats import DagExecutionStats, build_stats
from taskdag.state.model import (
    TERMINAL_STATUSES,
    ExitSummary,
    HaltReason,
    RunState,
    RunStatus,
    TaskExecutionResult,
    TaskStatus,
)
from taskdag.util.errors import (
    GraphError,
    RunConflictError,
    SpecMismatchError,
    StateCorruptError,
    StoreError,
)
from taskdag.util.ids import new_run_id
from taskdag.util.logging import get_logger
from taskdag.util.time import now_iso

logger = get_logger(__name__)

ProgressSink = Callable[[TaskExecutionResult], None]


class RunStateStore(Protocol):
    def save(self, state: RunState) -> None: ...

    def load(self, run_id: str) -> RunState: ...

    def exists(self, run_id: str) -> bool: ...

    def lock(self, run_id: str) -> AbstractContextManager[None]: ...

    def refresh_lock(self, run_id: str) -> None: ...


def finalize_run_status(state: RunState, graph: ValidatedGraph) -> RunStatus:
    """Overall outcome of a run whose tasks are all terminal.

    A required task fails the run when it failed itself or when it was
    skipped or cancelled because a required task on its dependency chain
    failed. Skips caused only by non-required failures are legitimate.
    """
    statuses = [state.tasks[task_id] for task_id in graph.task_ids]
    if state.halt_reason == "cancelled" and "CANCELLED" in statuses:
        return "CANCELLED"
    if state.halt_reason == "fail_fast":
        return "FAILED"

    required = {task.id: task.required for task in state.spec.tasks}
    blamed = [False] * len(graph)
    for node in graph.order:
        status = statuses[node]
        if status == "FAILED":
            blamed[node] = required[graph.task_ids[node]]
        elif status in ("SKIPPED", "CANCELLED"):
            blamed[node] = any(blamed[dep] for dep in graph.dependencies[node])

    for node, task_id in enumerate(graph.task_ids):
        if required[task_id] and (blamed[node] or statuses[node] == "CANCELLED"):
            return "FAILED"
    return "SUCCEEDED"


class Scheduler:
    """Single-writer coordinator for one run attempt.

    Only the coordinator mutates ``state``; workers hand back a
    ``TaskExecutionResult`` through their asyncio task. READY tasks are
    dispatched lowest spec index first.
    """

    def __init__(
        self,
        graph: ValidatedGraph,
        state: RunState,
        store: RunStateStore,
        *,
        runner: TaskRunner | None = None,
        on_event: ProgressSink | None = None,
    ) -> None:
        if set(graph.task_ids) != set(state.tasks):
            raise ValueError("graph and run state describe different task sets")
        self.graph = graph
        self.state = state
        self.store = store
        self.runner = runner or TaskRunner()
        self.on_event = on_event
        self._specs: dict[str, TaskSpec] = {task.id: task for task in state.spec.tasks}
        self._unresolved = [0] * len(graph)
        self._ready: list[int] = []
        self._dispatched: set[int] = set()
        self._tokens: dict[int, CancelToken] = {}
        self._cancel_event = asyncio.Event()

    @classmethod
    def for_spec(
        cls,
        spec: DagSpec,
        store: RunStateStore,
        config: RunConfig | None = None,
        *,
        run_id: str | None = None,
        runner: TaskRunner | None = None,
        on_event: ProgressSink | None = None,
    ) -> Scheduler:
        """Validate ``spec`` and build a scheduler over a fresh run state."""
        config = config or RunConfig()
        graph = validate(spec)
        state = RunState.new(
            spec,
            run_id=run_id or new_run_id(datetime.now().astimezone()),
            max_concurrency=config.max_concurrency,
            failure_mode=config.failure_mode,
            default_timeout_sec=config.default_task_timeout_sec,
            now=now_iso(),
        )
        return cls(graph, state, store, runner=runner, on_event=on_event)

    def cancel(self, reason: str = "cancelled") -> None:
        """Stop dispatching, cancel queued tasks and signal in-flight ones."""
        self._cancel_event.set()
        for token in self._tokens.values():
            token.cancel(reason)

    async def run(self) -> DagExecutionStats:
        state = self.state
        if state.status != "RUNNING":
            return build_stats(state)

        logger.info(
            "run %s started: %d tasks, max_concurrency=%d, failure_mode=%s",
            state.run_id,
            len(self.graph),
            state.max_concurrency,
            state.failure_mode,
        )
        self._prepare()
        self._checkpoint()

        running: dict[asyncio.Task[TaskExecutionResult], int] = {}
        try:
            while True:
                if self._halt_if_cancelled():
                    self._checkpoint()
                if self._dispatch(running):
                    self._checkpoint()
                if not running:
                    break
                done = await self._next_completions(running)
                # A cancel that woke the loop wins over completions seen alongside it.
                self._halt_if_cancelled()
                for fut in sorted(done, key=lambda f: running[f]):
                    node = running.pop(fut)
                    self._complete(node, fut.result())
                self._checkpoint()
        except BaseException:
            for fut in running:
                fut.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)
            raise

        self._skip_unresolvable()
        state.status = finalize_run_status(state, self.graph)
        self._checkpoint()
        logger.info("run %s finished: %s", state.run_id, state.status)
        return build_stats(state)

    def _status(self, node: int) -> TaskStatus:
        return self.state.tasks[self.graph.task_ids[node]]

    def _transition(
        self, node: int, status: TaskStatus, result: TaskExecutionResult | None = None
    ) -> None:
        task_id = self.graph.task_ids[node]
        previous = self.state.tasks[task_id]
        if previous in TERMINAL_STATUSES:
            raise RuntimeError(f"task {task_id} is already {previous}, cannot become {status}")
        self.state.tasks[task_id] = status
        if result is not None:
            self.state.results[task_id] = result
        logger.debug("task %s: %s -> %s", task_id, previous, status)
        self._emit(result or TaskExecutionResult(task_id=task_id, status=status))

    def _emit(self, result: TaskExecutionResult) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(result)
        except Exception:
            logger.warning("progress sink failed for task %s", result.task_id, exc_info=True)

    def _checkpoint(self) -> None:
        self.state.updated_at = now_iso()
        try:
            self.store.refresh_lock(self.state.run_id)
            self.store.save(self.state)
        except StoreError as exc:
            logger.warning(
                "checkpoint of run %s failed, retrying at next transition: %s",
                self.state.run_id,
                exc,
            )

    def _prepare(self) -> None:
        graph = self.graph
        for node, task_id in enumerate(graph.task_ids):
            if self.state.tasks[task_id] == "RUNNING":
                logger.info("task %s was running when the previous attempt stopped", task_id)
                self.state.tasks[task_id] = "READY"
                self.state.results.pop(task_id, None)
                self._emit(TaskExecutionResult(task_id=task_id, status="READY"))

        for node in range(len(graph)):
            self._unresolved[node] = sum(
                1 for dep in graph.dependencies[node] if self._status(dep) not in TERMINAL_STATUSES
            )
            if self._status(node) == "READY":
                heapq.heappush(self._ready, node)

        if self.state.halt_reason is not None:
            self._cancel_queued(self.state.halt_reason)
            return
        for node in graph.order:
            if self._status(node) == "PENDING" and self._unresolved[node] == 0:
                if self._settle(node):
                    self._resolve(node)

    def _dispatch(self, running: dict[asyncio.Task[TaskExecutionResult], int]) -> bool:
        dispatched = False
        while (
            self._ready
            and len(running) < self.state.max_concurrency
            and self.state.halt_reason is None
        ):
            node = heapq.heappop(self._ready)
            if node in self._dispatched or self._status(node) != "READY":
                continue
            self._dispatched.add(node)
            task = self._specs[self.graph.task_ids[node]]
            started = TaskExecutionResult(task_id=task.id, status="RUNNING", started_at=now_iso())
            self._transition(node, "RUNNING", started)
            timeout = task.timeout_sec
            if timeout is None:
                timeout = self.state.default_timeout_sec
            token = CancelToken()
            self._tokens[node] = token
            fut = asyncio.create_task(
                self.runner.run(task, timeout_sec=timeout, token=token), name=f"taskdag:{task.id}"
            )
            running[fut] = node
            dispatched = True
        return dispatched

    async def _next_completions(
        self, running: dict[asyncio.Task[TaskExecutionResult], int]
    ) -> set[asyncio.Task[TaskExecutionResult]]:
        cancel_wait: asyncio.Task[bool] | None = None
        waiters: set[asyncio.Future[Any]] = set(running)
        if not self._cancel_event.is_set():
            cancel_wait = asyncio.create_task(self._cancel_event.wait())
            waiters.add(cancel_wait)
        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()
        return {fut for fut in running if fut in done}

    def _complete(self, node: int, result: TaskExecutionResult) -> None:
        self._tokens.pop(node, None)
        task = self._specs[self.graph.task_ids[node]]
        self._transition(node, result.status, result)
        if result.status == "FAILED":
            logger.info("task %s failed: %s", task.id, result.error)
            if (
                self.state.failure_mode == "fail-fast"
                and task.required
                and self.state.halt_reason is None
            ):
                self._halt("fail_fast")
                return
        self._resolve(node)

    def _resolve(self, node: int) -> None:
        """Release dependents of a task that just became terminal."""
        queue = deque([node])
        while queue:
            current = queue.popleft()
            for child in self.graph.dependents[current]:
                self._unresolved[child] -= 1
                if self._unresolved[child] == 0 and self._status(child) == "PENDING":
                    if self._settle(child):
                        queue.append(child)

    def _settle(self, node: int) -> bool:
        """Move a PENDING task with terminal dependencies on; True if now terminal."""
        deps = self.graph.dependencies[node]
        blockers = [self.graph.task_ids[dep] for dep in deps if self._status(dep) != "SUCCEEDED"]
        if not blockers:
            self._transition(node, "READY")
            heapq.heappush(self._ready, node)
            return False
        cancelled = any(self._status(dep) == "CANCELLED" for dep in deps)
        status: TaskStatus = "CANCELLED" if cancelled else "SKIPPED"
        task_id = self.graph.task_ids[node]
        self._transition(
            node,
            status,
            TaskExecutionResult(
                task_id=task_id,
                status=status,
                exit_summary=ExitSummary(
                    ok=False,
                    payload={"blocked_by": blockers},
                    message=f"dependency did not succeed: {', '.join(blockers)}",
                ),
            ),
        )
        return True

    def _halt_if_cancelled(self) -> bool:
        if not self._cancel_event.is_set() or self.state.halt_reason is not None:
            return False
        self._halt("cancelled")
        return True

    def _halt(self, reason: HaltReason) -> None:
        logger.info("run %s halted: %s", self.state.run_id, reason)
        self.state.halt_reason = reason
        self._cancel_queued(reason)

    def _cancel_queued(self, reason: HaltReason) -> None:
        message = "fail-fast triggered" if reason == "fail_fast" else "run cancelled"
        for node, task_id in enumerate(self.graph.task_ids):
            if self._status(node) in ("PENDING", "READY"):
                self._transition(
                    node,
                    "CANCELLED",
                    TaskExecutionResult(
                        task_id=task_id,
                        status="CANCELLED",
                        exit_summary=ExitSummary(ok=False, message=message),
                    ),
                )
        self._ready.clear()

    def _skip_unresolvable(self) -> None:
        for node, task_id in enumerate(self.graph.task_ids):
            if self._status(node) in ("PENDING", "READY"):
                logger.error("task %s left unresolved at end of run", task_id)
                self._transition(
                    node,
                    "SKIPPED",
                    TaskExecutionResult(
                        task_id=task_id,
                        status="SKIPPED",
                        exit_summary=ExitSummary(ok=False, message="unresolvable dependencies"),
                    ),
                )


def _check_spec_matches(state: RunState, spec: DagSpec) -> None:
    if state.dag_id != spec.id:
        raise SpecMismatchError(
            f"run {state.run_id} belongs to dag '{state.dag_id}', not '{spec.id}'"
        )
    persisted = {item["id"]: item for item in state.spec.definitions()}
    supplied = {item["id"]: item for item in spec.definitions()}
    if persisted.keys() != supplied.keys():
        missing = sorted(set(persisted) - set(supplied))
        added = sorted(set(supplied) - set(persisted))
        raise SpecMismatchError(
            f"task set changed since run {state.run_id}: missing={missing}, added={added}"
        )
    changed = sorted(task_id for task_id in persisted if persisted[task_id] != supplied[task_id])
    if changed:
        raise SpecMismatchError(f"task definitions changed since run {state.run_id}: {changed}")


async def run_dag(
    spec: DagSpec,
    config: RunConfig | None = None,
    *,
    store: RunStateStore,
    run_id: str | None = None,
    runner: TaskRunner | None = None,
    on_event: ProgressSink | None = None,
) -> DagExecutionStats:
    """Validate ``spec`` and execute it as a new run."""
    scheduler = Scheduler.for_spec(
        spec, store, config, run_id=run_id, runner=runner, on_event=on_event
    )
    run_id = scheduler.state.run_id
    with store.lock(run_id):
        if store.exists(run_id):
            raise RunConflictError(f"run already exists: {run_id}")
        return await scheduler.run()


async def resume(
    run_id: str,
    spec: DagSpec,
    *,
    store: RunStateStore,
    runner: TaskRunner | None = None,
    on_event: ProgressSink | None = None,
) -> DagExecutionStats:
    """Continue a persisted run of ``spec`` without repeating finished tasks."""
    graph = validate(spec)
    with store.lock(run_id):
        state = store.load(run_id)
        try:
            validate(state.spec)
        except GraphError as exc:
            raise StateCorruptError(f"persisted spec of run {run_id} is invalid: {exc}") from exc
        _check_spec_matches(state, spec)
        state.spec = spec
        logger.info("resuming run %s (%s)", run_id, state.status)
        return await Scheduler(graph, state, store, runner=runner, on_event=on_event).run()
