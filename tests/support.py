from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from taskdag.exec.cancel import CancelToken
from taskdag.state.model import TaskExecutionResult

AsyncAction = Callable[[CancelToken], Awaitable[object]]


class Recorder:
    """Builds task actions that log invocations and track concurrency."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0
        self.events: list[TaskExecutionResult] = []

    def ok(self, name: str, delay: float = 0.0, result: object = None) -> AsyncAction:
        async def action(token: CancelToken) -> object:
            await self._enter(name, delay)
            return result

        return action

    def fail(self, name: str, delay: float = 0.0) -> AsyncAction:
        async def action(token: CancelToken) -> object:
            await self._enter(name, delay)
            raise RuntimeError(f"{name} failed")

        return action

    def blocking(self, name: str, release: asyncio.Event) -> AsyncAction:
        async def action(token: CancelToken) -> object:
            self.calls.append(name)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            try:
                await release.wait()
            finally:
                self.active -= 1
            return None

        return action

    def sink(self, result: TaskExecutionResult) -> None:
        self.events.append(result)

    def statuses_of(self, task_id: str) -> list[str]:
        return [event.status for event in self.events if event.task_id == task_id]

    async def _enter(self, name: str, delay: float) -> None:
        self.calls.append(name)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(delay)
        finally:
            self.active -= 1


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)
