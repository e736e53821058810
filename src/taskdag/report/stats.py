from __future__ import annotations

from dataclasses import dataclass

from taskdag.state.model import TERMINAL_STATUSES, RunState, RunStatus, TaskStatus
from taskdag.util.time import elapsed_between


@dataclass(frozen=True, slots=True)
class DagExecutionStats:
    run_id: str
    dag_id: str
    overall_status: RunStatus
    counts: dict[str, int]
    tasks: dict[str, TaskStatus]
    total: int
    duration_sec: float | None
    resumable: bool

    @property
    def succeeded(self) -> int:
        return self.counts["SUCCEEDED"]

    @property
    def failed(self) -> int:
        return self.counts["FAILED"]

    @property
    def skipped(self) -> int:
        return self.counts["SKIPPED"]

    @property
    def cancelled(self) -> int:
        return self.counts["CANCELLED"]

    @property
    def finished(self) -> int:
        return sum(self.counts[status] for status in TERMINAL_STATUSES)

    @property
    def percentage(self) -> float:
        if self.total == 0:
            return 100.0
        return self.finished / self.total * 100.0

    @property
    def is_complete(self) -> bool:
        return self.finished >= self.total

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "dag_id": self.dag_id,
            "overall_status": self.overall_status,
            "counts": dict(self.counts),
            "tasks": dict(self.tasks),
            "total": self.total,
            "duration_sec": self.duration_sec,
            "resumable": self.resumable,
        }


def build_stats(state: RunState) -> DagExecutionStats:
    tasks = {task.id: state.tasks[task.id] for task in state.spec.tasks if task.id in state.tasks}
    return DagExecutionStats(
        run_id=state.run_id,
        dag_id=state.dag_id,
        overall_status=state.status,
        counts=state.counts(),
        tasks=tasks,
        total=len(state.tasks),
        duration_sec=elapsed_between(state.created_at, state.updated_at),
        resumable=state.status == "RUNNING",
    )
