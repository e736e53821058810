"""Application-level error types."""

from __future__ import annotations


class TaskDagError(Exception):
    """Base error for taskdag."""


class ConfigError(TaskDagError):
    """Raised when run configuration is invalid."""


class GraphError(TaskDagError):
    """Raised when a DAG spec cannot be scheduled."""


class DuplicateTaskIdError(GraphError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"duplicate task id: {task_id}")
        self.task_id = task_id


class UnknownDependencyError(GraphError):
    def __init__(self, task_id: str, missing_id: str) -> None:
        super().__init__(f"task '{task_id}' depends on unknown task '{missing_id}'")
        self.task_id = task_id
        self.missing_id = missing_id


class CycleDetectedError(GraphError):
    def __init__(self, task_ids: frozenset[str]) -> None:
        super().__init__(f"dependency cycle among tasks: {sorted(task_ids)}")
        self.task_ids = task_ids


class StoreError(TaskDagError):
    """Raised when run state cannot be persisted or loaded."""


class RunNotFoundError(StoreError):
    """Raised when run id is unknown."""


class StateCorruptError(StoreError):
    """Raised when a persisted snapshot is unreadable or malformed."""


class RunConflictError(StoreError):
    """Raised when run lock cannot be acquired."""


class ResumeError(TaskDagError):
    """Raised when a persisted run cannot be resumed."""


class SpecMismatchError(ResumeError):
    """Raised when the supplied spec differs from the persisted one."""
