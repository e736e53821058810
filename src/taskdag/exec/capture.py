from __future__ import annotations

import asyncio
from collections import deque


async def collect_tail(stream: asyncio.StreamReader | None, max_lines: int) -> list[str]:
    """Drain ``stream`` and keep only its last ``max_lines`` decoded lines."""
    if stream is None or max_lines <= 0:
        if stream is not None:
            while await stream.read(4096):
                pass
        return []
    tail: deque[str] = deque(maxlen=max_lines)
    while True:
        line = await stream.readline()
        if not line:
            break
        tail.append(line.decode("utf-8", errors="replace").rstrip("\r\n"))
    return list(tail)
