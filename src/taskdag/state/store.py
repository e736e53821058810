from __future__ import annotations

import json
import math
import os
import stat
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from datetime import datetime
from pathlib import Path

from taskdag.config.schema import FAILURE_MODE_VALUES
from taskdag.state.lock import refresh_lock, run_lock
from taskdag.state.model import (
    ACTIVE_STATUSES,
    FORMAT_VERSION,
    HALT_REASON_VALUES,
    RUN_STATUS_VALUES,
    TASK_STATUS_VALUES,
    RunState,
)
from taskdag.util.errors import RunConflictError, RunNotFoundError, StateCorruptError, StoreError
from taskdag.util.ids import is_safe_run_id
from taskdag.util.logging import get_logger

logger = get_logger(__name__)

STATE_FILE = "state.json"
_REQUIRED_RUN_KEYS = {
    "format_version",
    "run_id",
    "dag_id",
    "created_at",
    "updated_at",
    "status",
    "max_concurrency",
    "failure_mode",
    "default_timeout_sec",
    "halt_reason",
    "spec",
    "tasks",
    "results",
}
_REQUIRED_TASK_KEYS = {"id", "dependencies", "timeout_sec", "required"}


def _fsync_directory(path: Path) -> None:
    try:
        fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        with suppress(OSError):
            os.close(fd)


def _is_iso_datetime(value: object) -> bool:
    if not isinstance(value, str) or not value:
        return False
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return False
    return dt.tzinfo is not None


def _is_optional_positive_number(value: object) -> bool:
    if value is None:
        return True
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
        and value > 0
    )


def _check_run_id(run_id: str) -> None:
    if not is_safe_run_id(run_id):
        raise StoreError(f"invalid run id: {run_id!r}")


def _validate_spec_shape(raw_spec: object) -> list[str]:
    if not isinstance(raw_spec, list):
        raise StateCorruptError("invalid state field: spec")
    ids: list[str] = []
    for item in raw_spec:
        if not isinstance(item, dict) or set(item.keys()) != _REQUIRED_TASK_KEYS:
            raise StateCorruptError("invalid state field: spec")
        task_id = item["id"]
        deps = item["dependencies"]
        if not isinstance(task_id, str) or not task_id:
            raise StateCorruptError("invalid state field: spec.id")
        if not isinstance(deps, list) or not all(isinstance(dep, str) for dep in deps):
            raise StateCorruptError(f"invalid state field: spec[{task_id}].dependencies")
        if not _is_optional_positive_number(item["timeout_sec"]):
            raise StateCorruptError(f"invalid state field: spec[{task_id}].timeout_sec")
        if not isinstance(item["required"], bool):
            raise StateCorruptError(f"invalid state field: spec[{task_id}].required")
        ids.append(task_id)
    return ids


def _validate_state_shape(raw: dict[str, object], run_id: str) -> None:
    if any(not isinstance(key, str) for key in raw):
        raise StateCorruptError("invalid state field: root")
    missing = _REQUIRED_RUN_KEYS - set(raw.keys())
    if missing:
        raise StateCorruptError(f"missing state fields: {sorted(missing)}")
    if raw["format_version"] != FORMAT_VERSION:
        raise StateCorruptError(f"unsupported state format: {raw['format_version']!r}")
    if raw["run_id"] != run_id:
        raise StateCorruptError("state run_id does not match requested run")
    if not isinstance(raw["dag_id"], str):
        raise StateCorruptError("invalid state field: dag_id")

    for key in ("created_at", "updated_at"):
        if not _is_iso_datetime(raw[key]):
            raise StateCorruptError(f"invalid state field: {key}")
    if datetime.fromisoformat(str(raw["updated_at"])) < datetime.fromisoformat(
        str(raw["created_at"])
    ):
        raise StateCorruptError("invalid state field: updated_at")

    status = raw["status"]
    if status not in RUN_STATUS_VALUES:
        raise StateCorruptError("invalid state field: status")
    max_concurrency = raw["max_concurrency"]
    if (
        not isinstance(max_concurrency, int)
        or isinstance(max_concurrency, bool)
        or max_concurrency < 1
    ):
        raise StateCorruptError("invalid state field: max_concurrency")
    if raw["failure_mode"] not in FAILURE_MODE_VALUES:
        raise StateCorruptError("invalid state field: failure_mode")
    if not _is_optional_positive_number(raw["default_timeout_sec"]):
        raise StateCorruptError("invalid state field: default_timeout_sec")
    halt_reason = raw["halt_reason"]
    if halt_reason is not None and halt_reason not in HALT_REASON_VALUES:
        raise StateCorruptError("invalid state field: halt_reason")

    spec_ids = _validate_spec_shape(raw["spec"])
    tasks = raw["tasks"]
    if not isinstance(tasks, dict) or set(tasks.keys()) != set(spec_ids):
        raise StateCorruptError("invalid state field: tasks")
    if any(task_status not in TASK_STATUS_VALUES for task_status in tasks.values()):
        raise StateCorruptError("invalid state field: tasks")
    if status != "RUNNING" and any(
        task_status in ACTIVE_STATUSES for task_status in tasks.values()
    ):
        raise StateCorruptError("invalid state field: status")

    results = raw["results"]
    if not isinstance(results, dict):
        raise StateCorruptError("invalid state field: results")
    for task_id, result in results.items():
        if task_id not in tasks or not isinstance(result, dict):
            raise StateCorruptError("invalid state field: results")
        if result.get("task_id") != task_id or result.get("status") not in TASK_STATUS_VALUES:
            raise StateCorruptError(f"invalid state field: results[{task_id}]")


def decode_state(payload: str, run_id: str) -> RunState:
    """Parse and validate a serialized snapshot for ``run_id``."""
    try:
        raw = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise StateCorruptError(f"invalid state json for run: {run_id}") from exc
    if not isinstance(raw, dict):
        raise StateCorruptError("state root must be object")
    _validate_state_shape(raw, run_id)
    return RunState.from_dict(raw)


def encode_state(state: RunState) -> str:
    try:
        return json.dumps(state.to_dict(), ensure_ascii=False, indent=2, sort_keys=True)
    except (TypeError, ValueError) as exc:
        raise StoreError(f"failed to encode state of run {state.run_id}: {exc}") from exc


class StateStore:
    """One JSON snapshot per run at ``root/<run_id>/state.json``."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def run_dir(self, run_id: str) -> Path:
        _check_run_id(run_id)
        return self.root / run_id

    def state_path(self, run_id: str) -> Path:
        return self.run_dir(run_id) / STATE_FILE

    def save(self, state: RunState) -> None:
        run_dir = self.run_dir(state.run_id)
        state_path = run_dir / STATE_FILE
        tmp_path = run_dir / f"{STATE_FILE}.tmp"
        payload = encode_state(state)
        flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC
        if hasattr(os, "O_NOFOLLOW"):
            flags |= os.O_NOFOLLOW
        try:
            run_dir.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(tmp_path), flags, 0o600)
        except OSError as exc:
            raise StoreError(f"failed to open temporary state file: {tmp_path}") from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload + "\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, state_path)
        except OSError as exc:
            with suppress(OSError):
                tmp_path.unlink(missing_ok=True)
            raise StoreError(f"failed to write state file: {state_path}") from exc
        _fsync_directory(run_dir)

    def load(self, run_id: str) -> RunState:
        state_path = self.state_path(run_id)
        open_flags = os.O_RDONLY
        if hasattr(os, "O_NOFOLLOW"):
            open_flags |= os.O_NOFOLLOW
        fd: int | None = None
        try:
            fd = os.open(str(state_path), open_flags)
            if not stat.S_ISREG(os.fstat(fd).st_mode):
                raise StateCorruptError(f"state file is not a regular file: {state_path}")
            with os.fdopen(fd, "r", encoding="utf-8") as f:
                fd = None
                payload = f.read()
        except FileNotFoundError as exc:
            raise RunNotFoundError(f"run not found: {run_id}") from exc
        except UnicodeError as exc:
            raise StateCorruptError(f"failed to decode state file as utf-8: {state_path}") from exc
        except OSError as exc:
            raise StoreError(f"failed to read state file: {state_path}") from exc
        finally:
            if fd is not None:
                with suppress(OSError):
                    os.close(fd)
        return decode_state(payload, run_id)

    def exists(self, run_id: str) -> bool:
        if not is_safe_run_id(run_id):
            return False
        try:
            return self.state_path(run_id).is_file()
        except OSError:
            return False

    def delete(self, run_id: str) -> None:
        run_dir = self.run_dir(run_id)
        for name in (STATE_FILE, f"{STATE_FILE}.tmp"):
            try:
                (run_dir / name).unlink(missing_ok=True)
            except OSError as exc:
                raise StoreError(f"failed to delete state file: {run_dir / name}") from exc
        with suppress(OSError):
            run_dir.rmdir()
        logger.debug("deleted run state %s", run_id)

    def list_runs(self) -> list[str]:
        try:
            entries = list(self.root.iterdir())
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise StoreError(f"failed to list runs under: {self.root}") from exc
        return sorted(
            entry.name
            for entry in entries
            if is_safe_run_id(entry.name) and (entry / STATE_FILE).is_file()
        )

    @contextmanager
    def lock(self, run_id: str) -> Iterator[None]:
        with run_lock(self.run_dir(run_id)):
            yield

    def refresh_lock(self, run_id: str) -> None:
        refresh_lock(self.run_dir(run_id))


class MemoryStateStore:
    """In-process snapshots with the same contract as ``StateStore``."""

    def __init__(self) -> None:
        self._snapshots: dict[str, str] = {}
        self._locked: set[str] = set()

    def save(self, state: RunState) -> None:
        _check_run_id(state.run_id)
        self._snapshots[state.run_id] = encode_state(state)

    def load(self, run_id: str) -> RunState:
        _check_run_id(run_id)
        payload = self._snapshots.get(run_id)
        if payload is None:
            raise RunNotFoundError(f"run not found: {run_id}")
        return decode_state(payload, run_id)

    def exists(self, run_id: str) -> bool:
        return run_id in self._snapshots

    def delete(self, run_id: str) -> None:
        self._snapshots.pop(run_id, None)

    def list_runs(self) -> list[str]:
        return sorted(self._snapshots)

    @contextmanager
    def lock(self, run_id: str) -> Iterator[None]:
        if run_id in self._locked:
            raise RunConflictError(f"run is locked: {run_id}")
        self._locked.add(run_id)
        try:
            yield
        finally:
            self._locked.discard(run_id)

    def refresh_lock(self, run_id: str) -> None:
        pass
