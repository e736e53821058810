"""Subprocess-backed task action."""

from __future__ import annotations

import asyncio
import os
import shlex
from contextlib import suppress
from pathlib import Path

from taskdag.exec.cancel import CancelToken
from taskdag.exec.capture import collect_tail
from taskdag.state.model import ExitSummary
from taskdag.util.errors import ConfigError

_TERMINATE_GRACE_SEC = 1.0


def normalize_cmd(cmd: str | list[str]) -> list[str]:
    if isinstance(cmd, str):
        try:
            parts = shlex.split(cmd)
        except ValueError as exc:
            raise ConfigError(f"invalid cmd string: {exc}") from exc
        if not parts:
            raise ConfigError("cmd string must not be empty")
        return parts
    if isinstance(cmd, list) and cmd and all(isinstance(p, str) and p for p in cmd):
        return list(cmd)
    raise ConfigError("cmd must be str or non-empty list[str]")


async def _stop(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    with suppress(ProcessLookupError):
        proc.terminate()
    try:
        await asyncio.wait_for(proc.wait(), timeout=_TERMINATE_GRACE_SEC)
    except TimeoutError:
        with suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()


class CommandAction:
    """Run an external command; exit code 0 means success.

    The process is terminated (then killed after a grace period) when the
    token is cancelled or when the awaiting task is cancelled, which is how
    the task runner enforces timeouts.
    """

    def __init__(
        self,
        cmd: str | list[str],
        *,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        tail_lines: int = 20,
    ) -> None:
        self.cmd = normalize_cmd(cmd)
        self.cwd = cwd
        self.env = env
        self.tail_lines = tail_lines

    def __repr__(self) -> str:
        return f"CommandAction({shlex.join(self.cmd)!r})"

    async def __call__(self, token: CancelToken) -> ExitSummary:
        merged_env = os.environ.copy()
        if self.env:
            merged_env.update(self.env)
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.cmd,
                cwd=None if self.cwd is None else str(self.cwd),
                env=merged_env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as exc:
            return ExitSummary(
                ok=False,
                payload={"exit_code": 127},
                message=f"failed to start process: {exc}",
            )

        out_tail = asyncio.create_task(collect_tail(proc.stdout, self.tail_lines))
        err_tail = asyncio.create_task(collect_tail(proc.stderr, self.tail_lines))
        cancel_wait = asyncio.create_task(token.wait())
        exit_wait = asyncio.create_task(proc.wait())
        stopped = False
        try:
            await asyncio.wait({exit_wait, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
            if not exit_wait.done():
                stopped = True
                await _stop(proc)
        except asyncio.CancelledError:
            await _stop(proc)
            raise
        finally:
            cancel_wait.cancel()
            exit_wait.cancel()
            streams = await asyncio.gather(out_tail, err_tail, return_exceptions=True)

        stdout_lines, stderr_lines = (lines if isinstance(lines, list) else [] for lines in streams)
        exit_code = proc.returncode
        payload = {"exit_code": exit_code, "stdout_tail": stdout_lines, "stderr_tail": stderr_lines}
        if stopped:
            return ExitSummary(ok=False, payload=payload, message=f"cancelled: {token.reason}")
        if exit_code != 0:
            return ExitSummary(ok=False, payload=payload, message=f"exit code {exit_code}")
        return ExitSummary(ok=True, payload=payload)
