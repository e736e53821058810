from __future__ import annotations

import math
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Literal, cast

from taskdag.exec.cancel import CancelToken
from taskdag.util.errors import ConfigError

FailureMode = Literal["fail-fast", "continue-independent", "skip-dependents"]
FAILURE_MODE_VALUES: set[str] = {"fail-fast", "continue-independent", "skip-dependents"}

Action = Callable[[CancelToken], Any]


def _is_positive_number(value: object) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
        and value > 0
    )


def parse_failure_mode(value: object) -> FailureMode:
    if not isinstance(value, str) or value not in FAILURE_MODE_VALUES:
        raise ConfigError(f"failure_mode must be one of {sorted(FAILURE_MODE_VALUES)}: {value!r}")
    return cast(FailureMode, value)


@dataclass(frozen=True, slots=True)
class TaskSpec:
    id: str
    action: Action | None = field(default=None, compare=False, repr=False)
    dependencies: frozenset[str] = frozenset()
    timeout_sec: float | None = None
    required: bool = True

    def __post_init__(self) -> None:
        deps: Iterable[str] = self.dependencies
        if isinstance(deps, str):
            deps = [deps]
        object.__setattr__(self, "dependencies", frozenset(deps))
        if self.timeout_sec is not None and not _is_positive_number(self.timeout_sec):
            raise ConfigError(f"task '{self.id}' timeout_sec must be > 0")

    def definition(self) -> dict[str, object]:
        """Serializable part of the task; the action is never persisted."""
        return {
            "id": self.id,
            "dependencies": sorted(self.dependencies),
            "timeout_sec": self.timeout_sec,
            "required": self.required,
        }


@dataclass(frozen=True, slots=True)
class DagSpec:
    id: str
    tasks: tuple[TaskSpec, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "tasks", tuple(self.tasks))

    def definitions(self) -> list[dict[str, object]]:
        return [task.definition() for task in self.tasks]

    def task(self, task_id: str) -> TaskSpec:
        for task in self.tasks:
            if task.id == task_id:
                return task
        raise KeyError(task_id)


@dataclass(frozen=True, slots=True)
class RunConfig:
    max_concurrency: int = 4
    failure_mode: FailureMode = "continue-independent"
    default_task_timeout_sec: float | None = 300.0

    def __post_init__(self) -> None:
        if (
            not isinstance(self.max_concurrency, int)
            or isinstance(self.max_concurrency, bool)
            or self.max_concurrency < 1
        ):
            raise ConfigError("max_concurrency must be int >= 1")
        parse_failure_mode(self.failure_mode)
        timeout = self.default_task_timeout_sec
        if timeout is not None and not _is_positive_number(timeout):
            raise ConfigError("default_task_timeout_sec must be > 0 or None")
