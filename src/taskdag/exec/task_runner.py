from __future__ import annotations

import asyncio
import inspect
from datetime import datetime

from taskdag.config.schema import Action, TaskSpec
from taskdag.exec.cancel import CancelToken
from taskdag.state.model import ExitSummary, TaskExecutionResult, jsonable
from taskdag.util.logging import get_logger
from taskdag.util.time import duration_sec

logger = get_logger(__name__)


def _is_async_callable(action: Action) -> bool:
    if inspect.iscoroutinefunction(action):
        return True
    call = getattr(action, "__call__", None)
    return call is not None and inspect.iscoroutinefunction(call)


async def _invoke(action: Action, token: CancelToken) -> object:
    if _is_async_callable(action):
        return await action(token)
    outcome = await asyncio.to_thread(action, token)
    if inspect.isawaitable(outcome):
        return await outcome
    return outcome


def _summarize(outcome: object) -> ExitSummary:
    if isinstance(outcome, ExitSummary):
        return outcome
    return ExitSummary(ok=True, payload=jsonable(outcome))


class TaskRunner:
    """Run one task action and normalize every outcome into a result.

    Timeouts, exceptions raised by the action and actions that report
    ``ok=False`` all become ``FAILED`` results; nothing escapes to the
    caller except cancellation of the awaiting coroutine itself.
    """

    async def run(
        self, task: TaskSpec, *, timeout_sec: float | None, token: CancelToken
    ) -> TaskExecutionResult:
        started_dt = datetime.now().astimezone()
        summary: ExitSummary | None = None
        error: str | None = None

        if task.action is None:
            error = "no action bound to task"
        else:
            deadline = asyncio.timeout(timeout_sec)
            try:
                async with deadline:
                    outcome = await _invoke(task.action, token)
            except TimeoutError as exc:
                if deadline.expired():
                    token.cancel("timeout")
                    error = f"timed out after {timeout_sec}s"
                else:
                    logger.debug("task %s raised", task.id, exc_info=True)
                    error = f"{type(exc).__name__}: {exc}"
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    raise
                logger.debug("task %s cancelled itself", task.id)
                error = "cancelled by action"
            except Exception as exc:
                logger.debug("task %s raised", task.id, exc_info=True)
                error = f"{type(exc).__name__}: {exc}"
            else:
                summary = _summarize(outcome)
                if not summary.ok:
                    error = summary.message or "action reported failure"

        ended_dt = datetime.now().astimezone()
        return TaskExecutionResult(
            task_id=task.id,
            status="FAILED" if error is not None else "SUCCEEDED",
            started_at=started_dt.isoformat(timespec="milliseconds"),
            finished_at=ended_dt.isoformat(timespec="milliseconds"),
            duration_sec=duration_sec(started_dt, ended_dt),
            exit_summary=summary,
            error=error,
        )
