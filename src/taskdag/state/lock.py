from __future__ import annotations

import os
import stat
import time
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path

from taskdag.util.errors import RunConflictError, StoreError


@contextmanager
def run_lock(
    run_dir: Path, stale_sec: int = 3600, *, retries: int = 0, retry_interval: float = 0.2
) -> Iterator[None]:
    """Hold ``run_dir/.lock`` exclusively for the duration of the block.

    A lock file older than ``stale_sec`` is assumed to belong to a crashed
    process and is taken over.
    """
    try:
        run_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise StoreError(f"failed to create run directory: {run_dir}") from exc
    lock_path = run_dir / ".lock"
    open_flags = os.O_CREAT | os.O_EXCL | os.O_WRONLY
    if hasattr(os, "O_NOFOLLOW"):
        open_flags |= os.O_NOFOLLOW

    def _is_stale() -> bool:
        try:
            lock_meta = lock_path.lstat()
        except OSError:
            return False
        if stat.S_ISLNK(lock_meta.st_mode) or not stat.S_ISREG(lock_meta.st_mode):
            return False
        return time.time() - lock_meta.st_mtime > stale_sec

    attempt = 0
    while True:
        try:
            fd = os.open(lock_path, open_flags, 0o600)
        except FileExistsError as err:
            if _is_stale():
                try:
                    lock_path.unlink(missing_ok=True)
                    continue
                except OSError:
                    pass
            if attempt >= retries:
                raise RunConflictError(f"run is locked by another process: {lock_path}") from err
            attempt += 1
            time.sleep(retry_interval)
            continue
        except OSError as err:
            raise StoreError(f"failed to open lock path: {lock_path}") from err
        break

    lock_meta = os.fstat(fd)
    with suppress(OSError):
        os.write(fd, str(os.getpid()).encode("utf-8"))
    try:
        yield
    finally:
        with suppress(OSError):
            os.close(fd)
        try:
            current = lock_path.lstat()
        except OSError:
            current = None
        if (
            current is not None
            and stat.S_ISREG(current.st_mode)
            and current.st_ino == lock_meta.st_ino
            and current.st_dev == lock_meta.st_dev
        ):
            with suppress(OSError):
                lock_path.unlink(missing_ok=True)


def refresh_lock(run_dir: Path) -> None:
    """Bump the mtime of a held ``run_dir/.lock`` so it is not taken over as stale."""
    lock_path = run_dir / ".lock"
    try:
        if stat.S_ISREG(lock_path.lstat().st_mode):
            os.utime(lock_path)
    except OSError:
        pass
