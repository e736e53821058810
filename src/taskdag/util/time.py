from __future__ import annotations

from datetime import datetime


def now_iso() -> str:
    """Return timezone-aware current local time in ISO format."""
    return datetime.now().astimezone().isoformat(timespec="milliseconds")


def duration_sec(start: datetime, end: datetime) -> float:
    """Calculate elapsed seconds."""
    return round((end - start).total_seconds(), 3)


def elapsed_between(start_iso: str | None, end_iso: str | None) -> float | None:
    if start_iso is None or end_iso is None:
        return None
    try:
        return duration_sec(datetime.fromisoformat(start_iso), datetime.fromisoformat(end_iso))
    except ValueError:
        return None
