from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Literal, cast

from taskdag.config.schema import DagSpec, FailureMode, TaskSpec

FORMAT_VERSION = 1

RunStatus = Literal["RUNNING", "SUCCEEDED", "FAILED", "CANCELLED"]
TaskStatus = Literal[
    "PENDING", "READY", "RUNNING", "SUCCEEDED", "FAILED", "SKIPPED", "CANCELLED"
]
HaltReason = Literal["fail_fast", "cancelled"]
RUN_STATUS_VALUES: set[str] = {"RUNNING", "SUCCEEDED", "FAILED", "CANCELLED"}
TASK_STATUS_VALUES: tuple[str, ...] = (
    "PENDING",
    "READY",
    "RUNNING",
    "SUCCEEDED",
    "FAILED",
    "SKIPPED",
    "CANCELLED",
)
TERMINAL_STATUSES: frozenset[str] = frozenset({"SUCCEEDED", "FAILED", "SKIPPED", "CANCELLED"})
ACTIVE_STATUSES: frozenset[str] = frozenset({"PENDING", "READY", "RUNNING"})
HALT_REASON_VALUES: set[str] = {"fail_fast", "cancelled"}


def _as_str(value: object, default: str = "") -> str:
    return value if isinstance(value, str) else default


def _as_optional_str(value: object) -> str | None:
    return value if isinstance(value, str) else None


def _as_bool(value: object, default: bool = False) -> bool:
    return value if isinstance(value, bool) else default


def _as_int(value: object, default: int = 0) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else default


def _as_optional_float(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _as_list_str(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _parse_task_status(value: object) -> TaskStatus:
    status = _as_str(value, "PENDING")
    if status not in TASK_STATUS_VALUES:
        status = "PENDING"
    return cast(TaskStatus, status)


def _parse_run_status(value: object) -> RunStatus:
    status = _as_str(value, "RUNNING")
    if status not in RUN_STATUS_VALUES:
        status = "RUNNING"
    return cast(RunStatus, status)


def _parse_halt_reason(value: object) -> HaltReason | None:
    if isinstance(value, str) and value in HALT_REASON_VALUES:
        return cast(HaltReason, value)
    return None


def jsonable(value: object) -> object:
    """Return ``value`` if it survives snapshot encoding, else its repr."""
    try:
        json.dumps(value, sort_keys=True)
    except (TypeError, ValueError):
        return repr(value)
    return value


@dataclass(slots=True)
class ExitSummary:
    ok: bool
    payload: object = None
    message: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {"ok": self.ok, "payload": jsonable(self.payload), "message": self.message}

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> ExitSummary:
        return cls(
            ok=_as_bool(data.get("ok")),
            payload=data.get("payload"),
            message=_as_optional_str(data.get("message")),
        )


@dataclass(slots=True)
class TaskExecutionResult:
    task_id: str
    status: TaskStatus
    started_at: str | None = None
    finished_at: str | None = None
    duration_sec: float | None = None
    exit_summary: ExitSummary | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "task_id": self.task_id,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_sec": self.duration_sec,
            "exit_summary": None if self.exit_summary is None else self.exit_summary.to_dict(),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> TaskExecutionResult:
        raw_summary = data.get("exit_summary")
        return cls(
            task_id=_as_str(data.get("task_id")),
            status=_parse_task_status(data.get("status")),
            started_at=_as_optional_str(data.get("started_at")),
            finished_at=_as_optional_str(data.get("finished_at")),
            duration_sec=_as_optional_float(data.get("duration_sec")),
            exit_summary=(
                ExitSummary.from_dict(raw_summary) if isinstance(raw_summary, dict) else None
            ),
            error=_as_optional_str(data.get("error")),
        )


def _task_spec_from_dict(data: dict[str, object]) -> TaskSpec:
    return TaskSpec(
        id=_as_str(data.get("id")),
        dependencies=frozenset(_as_list_str(data.get("dependencies"))),
        timeout_sec=_as_optional_float(data.get("timeout_sec")),
        required=_as_bool(data.get("required"), True),
    )


@dataclass(slots=True)
class RunState:
    run_id: str
    dag_id: str
    spec: DagSpec
    tasks: dict[str, TaskStatus]
    status: RunStatus
    max_concurrency: int
    failure_mode: FailureMode
    default_timeout_sec: float | None
    created_at: str
    updated_at: str
    results: dict[str, TaskExecutionResult] = field(default_factory=dict)
    halt_reason: HaltReason | None = None

    @classmethod
    def new(
        cls,
        spec: DagSpec,
        *,
        run_id: str,
        max_concurrency: int,
        failure_mode: FailureMode,
        default_timeout_sec: float | None,
        now: str,
    ) -> RunState:
        """Fresh state: zero-dependency tasks start READY, the rest PENDING."""
        tasks: dict[str, TaskStatus] = {
            task.id: "PENDING" if task.dependencies else "READY" for task in spec.tasks
        }
        return cls(
            run_id=run_id,
            dag_id=spec.id,
            spec=spec,
            tasks=tasks,
            status="RUNNING",
            max_concurrency=max_concurrency,
            failure_mode=failure_mode,
            default_timeout_sec=default_timeout_sec,
            created_at=now,
            updated_at=now,
        )

    def counts(self) -> dict[str, int]:
        counts = {status: 0 for status in TASK_STATUS_VALUES}
        for status in self.tasks.values():
            counts[status] += 1
        return counts

    def to_dict(self) -> dict[str, object]:
        return {
            "format_version": FORMAT_VERSION,
            "run_id": self.run_id,
            "dag_id": self.dag_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "status": self.status,
            "max_concurrency": self.max_concurrency,
            "failure_mode": self.failure_mode,
            "default_timeout_sec": self.default_timeout_sec,
            "halt_reason": self.halt_reason,
            "spec": self.spec.definitions(),
            "tasks": dict(self.tasks),
            "results": {task_id: result.to_dict() for task_id, result in self.results.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> RunState:
        dag_id = _as_str(data.get("dag_id"))
        raw_spec = data.get("spec")
        specs: list[TaskSpec] = []
        if isinstance(raw_spec, list):
            specs = [_task_spec_from_dict(item) for item in raw_spec if isinstance(item, dict)]
        raw_tasks = data.get("tasks")
        tasks: dict[str, TaskStatus] = {}
        if isinstance(raw_tasks, dict):
            for task_id, status in raw_tasks.items():
                if isinstance(task_id, str):
                    tasks[task_id] = _parse_task_status(status)
        raw_results = data.get("results")
        results: dict[str, TaskExecutionResult] = {}
        if isinstance(raw_results, dict):
            for task_id, result_data in raw_results.items():
                if isinstance(task_id, str) and isinstance(result_data, dict):
                    results[task_id] = TaskExecutionResult.from_dict(result_data)
        failure_mode = _as_str(data.get("failure_mode"), "continue-independent")
        return cls(
            run_id=_as_str(data.get("run_id")),
            dag_id=dag_id,
            spec=DagSpec(id=dag_id, tasks=tuple(specs)),
            tasks=tasks,
            status=_parse_run_status(data.get("status")),
            max_concurrency=_as_int(data.get("max_concurrency"), 1),
            failure_mode=cast(FailureMode, failure_mode),
            default_timeout_sec=_as_optional_float(data.get("default_timeout_sec")),
            created_at=_as_str(data.get("created_at")),
            updated_at=_as_str(data.get("updated_at")),
            results=results,
            halt_reason=_parse_halt_reason(data.get("halt_reason")),
        )
