from __future__ import annotations

import asyncio

import pytest
from support import Recorder, wait_until

from taskdag.config.schema import DagSpec, RunConfig, TaskSpec
from taskdag.dag.validate import validate
from taskdag.exec.cancel import CancelToken
from taskdag.exec.scheduler import Scheduler, run_dag
from taskdag.state.model import TERMINAL_STATUSES, RunState, TaskExecutionResult
from taskdag.state.store import MemoryStateStore
from taskdag.util.errors import CycleDetectedError, RunConflictError, StoreError
from taskdag.util.time import now_iso


class FlakyStore(MemoryStateStore):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def save(self, state: RunState) -> None:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise StoreError("disk full")
        super().save(state)


@pytest.mark.asyncio
async def test_linear_chain_runs_in_order(recorder: Recorder, store: MemoryStateStore) -> None:
    spec = DagSpec(
        id="chain",
        tasks=(
            TaskSpec("a", action=recorder.ok("a")),
            TaskSpec("b", action=recorder.ok("b"), dependencies={"a"}),
            TaskSpec("c", action=recorder.ok("c"), dependencies={"b"}),
        ),
    )

    stats = await run_dag(spec, store=store, run_id="chain-1")

    assert recorder.calls == ["a", "b", "c"]
    assert stats.overall_status == "SUCCEEDED"
    assert stats.tasks == {"a": "SUCCEEDED", "b": "SUCCEEDED", "c": "SUCCEEDED"}
    assert stats.is_complete is True
    assert stats.resumable is False
    persisted = store.load("chain-1")
    assert persisted.status == "SUCCEEDED"
    assert set(persisted.results) == {"a", "b", "c"}


@pytest.mark.asyncio
async def test_each_task_runs_at_most_once(recorder: Recorder, store: MemoryStateStore) -> None:
    spec = DagSpec(
        id="diamond",
        tasks=(
            TaskSpec("root", action=recorder.ok("root")),
            TaskSpec("left", action=recorder.ok("left", 0.02), dependencies={"root"}),
            TaskSpec("right", action=recorder.ok("right"), dependencies={"root"}),
            TaskSpec("join", action=recorder.ok("join"), dependencies={"left", "right"}),
        ),
    )

    stats = await run_dag(spec, RunConfig(max_concurrency=4), store=store, on_event=recorder.sink)

    assert stats.overall_status == "SUCCEEDED"
    assert sorted(recorder.calls) == ["join", "left", "right", "root"]
    for task_id in ("root", "left", "right", "join"):
        assert recorder.statuses_of(task_id).count("RUNNING") == 1
    assert recorder.statuses_of("root") == ["RUNNING", "SUCCEEDED"]
    assert recorder.statuses_of("join") == ["READY", "RUNNING", "SUCCEEDED"]


@pytest.mark.asyncio
async def test_running_tasks_never_exceed_max_concurrency(
    recorder: Recorder, store: MemoryStateStore
) -> None:
    limit = 3
    release = asyncio.Event()
    ids = [f"t{i}" for i in range(limit + 5)]
    spec = DagSpec(
        id="wide", tasks=[TaskSpec(i, action=recorder.blocking(i, release)) for i in ids]
    )
    running: set[str] = set()
    peak = 0

    def sink(result: TaskExecutionResult) -> None:
        nonlocal peak
        if result.status == "RUNNING":
            running.add(result.task_id)
            peak = max(peak, len(running))
        elif result.status in TERMINAL_STATUSES:
            running.discard(result.task_id)

    scheduler = Scheduler.for_spec(
        spec, store, RunConfig(max_concurrency=limit), run_id="wide-1", on_event=sink
    )
    job = asyncio.create_task(scheduler.run())
    await wait_until(lambda: recorder.active == limit)
    await asyncio.sleep(0.05)

    assert recorder.active == limit
    assert scheduler.state.counts()["RUNNING"] == limit
    assert store.load("wide-1").counts()["RUNNING"] == limit

    release.set()
    stats = await asyncio.wait_for(job, timeout=5)

    assert stats.overall_status == "SUCCEEDED"
    assert peak == limit
    assert recorder.max_active == limit
    assert recorder.calls == ids


@pytest.mark.asyncio
async def test_ready_tasks_dispatch_in_spec_order(
    recorder: Recorder, store: MemoryStateStore
) -> None:
    spec = DagSpec(
        id="order",
        tasks=(
            TaskSpec("late", action=recorder.ok("late"), dependencies={"early"}),
            TaskSpec("early", action=recorder.ok("early")),
            TaskSpec("other", action=recorder.ok("other")),
        ),
    )

    await run_dag(spec, RunConfig(max_concurrency=1), store=store)

    assert recorder.calls == ["early", "late", "other"]


@pytest.mark.asyncio
async def test_running_status_is_persisted_before_action_starts(store: MemoryStateStore) -> None:
    seen: dict[str, str] = {}

    async def inspect_state(token: CancelToken) -> None:
        seen["a"] = store.load("persist-1").tasks["a"]

    spec = DagSpec(id="persist", tasks=(TaskSpec("a", action=inspect_state),))
    await run_dag(spec, store=store, run_id="persist-1")

    assert seen == {"a": "RUNNING"}
    assert store.load("persist-1").tasks["a"] == "SUCCEEDED"


@pytest.mark.asyncio
async def test_default_timeout_applies_unless_task_overrides(
    recorder: Recorder, store: MemoryStateStore
) -> None:
    spec = DagSpec(
        id="timeouts",
        tasks=(
            TaskSpec("slow", action=recorder.ok("slow", 2.0)),
            TaskSpec("patient", action=recorder.ok("patient", 0.2), timeout_sec=5.0),
        ),
    )
    config = RunConfig(default_task_timeout_sec=0.05)

    stats = await run_dag(spec, config, store=store, run_id="timeouts-1")

    assert stats.tasks == {"slow": "FAILED", "patient": "SUCCEEDED"}
    assert stats.overall_status == "FAILED"
    assert store.load("timeouts-1").results["slow"].error == "timed out after 0.05s"


@pytest.mark.asyncio
async def test_checkpoint_failures_do_not_stop_the_run(
    recorder: Recorder, caplog: pytest.LogCaptureFixture
) -> None:
    store = FlakyStore(failures=2)
    spec = DagSpec(
        id="flaky",
        tasks=(
            TaskSpec("a", action=recorder.ok("a")),
            TaskSpec("b", action=recorder.ok("b"), dependencies={"a"}),
        ),
    )

    stats = await run_dag(spec, store=store, run_id="flaky-1")

    assert stats.overall_status == "SUCCEEDED"
    assert recorder.calls == ["a", "b"]
    assert store.load("flaky-1").status == "SUCCEEDED"
    assert "checkpoint of run flaky-1 failed" in caplog.text


@pytest.mark.asyncio
async def test_progress_sink_errors_are_logged_not_raised(
    recorder: Recorder, store: MemoryStateStore, caplog: pytest.LogCaptureFixture
) -> None:
    def broken_sink(result: TaskExecutionResult) -> None:
        raise RuntimeError("sink down")

    spec = DagSpec(id="sink", tasks=(TaskSpec("a", action=recorder.ok("a")),))

    stats = await run_dag(spec, store=store, on_event=broken_sink)

    assert stats.overall_status == "SUCCEEDED"
    assert "progress sink failed for task a" in caplog.text


@pytest.mark.asyncio
async def test_invalid_graph_is_rejected_before_any_state(store: MemoryStateStore) -> None:
    spec = DagSpec(
        id="loop",
        tasks=(TaskSpec("a", dependencies={"b"}), TaskSpec("b", dependencies={"a"})),
    )
    with pytest.raises(CycleDetectedError):
        await run_dag(spec, store=store)
    assert store.list_runs() == []


@pytest.mark.asyncio
async def test_run_dag_refuses_existing_run_id(
    recorder: Recorder, store: MemoryStateStore
) -> None:
    spec = DagSpec(id="once", tasks=(TaskSpec("a", action=recorder.ok("a")),))
    await run_dag(spec, store=store, run_id="once-1")

    with pytest.raises(RunConflictError):
        await run_dag(spec, store=store, run_id="once-1")
    assert recorder.calls == ["a"]


@pytest.mark.asyncio
async def test_empty_dag_succeeds_immediately(store: MemoryStateStore) -> None:
    stats = await run_dag(DagSpec(id="empty", tasks=()), store=store)
    assert stats.overall_status == "SUCCEEDED"
    assert stats.total == 0
    assert stats.percentage == 100.0


@pytest.mark.asyncio
async def test_finished_state_is_not_run_again(recorder: Recorder, store: MemoryStateStore) -> None:
    spec = DagSpec(id="done", tasks=(TaskSpec("a", action=recorder.ok("a")),))
    scheduler = Scheduler.for_spec(spec, store, run_id="done-1")
    first = await scheduler.run()
    second = await scheduler.run()

    assert first.overall_status == second.overall_status == "SUCCEEDED"
    assert recorder.calls == ["a"]


def test_scheduler_rejects_state_of_another_graph(store: MemoryStateStore) -> None:
    graph = validate(DagSpec(id="one", tasks=(TaskSpec("a"),)))
    state = RunState.new(
        DagSpec(id="two", tasks=(TaskSpec("b"),)),
        run_id="mismatch",
        max_concurrency=1,
        failure_mode="fail-fast",
        default_timeout_sec=None,
        now=now_iso(),
    )
    with pytest.raises(ValueError):
        Scheduler(graph, state, store)


@pytest.mark.asyncio
async def test_payload_with_mixed_key_types_does_not_break_checkpoints(
    recorder: Recorder, store: MemoryStateStore
) -> None:
    async def mixed_keys(token: CancelToken) -> dict[object, object]:
        return {1: "one", "two": 2}

    spec = DagSpec(
        id="mixed",
        tasks=(
            TaskSpec("a", action=mixed_keys),
            TaskSpec("b", action=recorder.ok("b"), dependencies={"a"}),
        ),
    )

    stats = await run_dag(spec, store=store, run_id="mixed-1")

    assert stats.overall_status == "SUCCEEDED"
    assert recorder.calls == ["b"]
    saved = store.load("mixed-1")
    assert saved.status == "SUCCEEDED"
    assert saved.results["a"].exit_summary is not None
    assert saved.results["a"].exit_summary.payload == repr({1: "one", "two": 2})


@pytest.mark.asyncio
async def test_action_raising_cancelled_error_does_not_abort_the_run(
    recorder: Recorder, store: MemoryStateStore
) -> None:
    async def gives_up(token: CancelToken) -> None:
        raise asyncio.CancelledError()

    spec = DagSpec(
        id="gives-up",
        tasks=(TaskSpec("a", action=gives_up), TaskSpec("c", action=recorder.ok("c"))),
    )

    stats = await run_dag(
        spec, RunConfig(failure_mode="continue-independent"), store=store, run_id="gives-up-1"
    )

    assert stats.tasks == {"a": "FAILED", "c": "SUCCEEDED"}
    assert store.load("gives-up-1").results["a"].error == "cancelled by action"


@pytest.mark.asyncio
async def test_checkpoints_refresh_the_run_lock(recorder: Recorder) -> None:
    class RefreshCountingStore(MemoryStateStore):
        def __init__(self) -> None:
            super().__init__()
            self.refreshed: list[str] = []

        def refresh_lock(self, run_id: str) -> None:
            self.refreshed.append(run_id)

    store = RefreshCountingStore()
    spec = DagSpec(id="fresh", tasks=(TaskSpec("a", action=recorder.ok("a")),))

    await run_dag(spec, store=store, run_id="fresh-1")

    assert len(store.refreshed) >= 3
    assert set(store.refreshed) == {"fresh-1"}
