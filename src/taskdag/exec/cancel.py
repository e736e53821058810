from __future__ import annotations

import asyncio


class CancelToken:
    """Cooperative cancellation signal handed to a task action.

    The scheduler only promises to stop issuing new work; an action that
    wants to stop early must poll ``cancelled`` or await ``wait()``.
    Must be used from the event loop thread that runs the scheduler.
    """

    __slots__ = ("_event", "_reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    async def wait(self) -> str | None:
        await self._event.wait()
        return self._reason
