"""Time utilities: window boundaries and the injectable clock."""

import asyncio
from datetime import datetime, timezone
from time import time_ns

DEFAULT_WINDOW_MS = 5 * 60 * 1000


def get_current_ms() -> int:
    """Get current time in milliseconds since epoch."""
    return time_ns() // 1_000_000


def get_window_boundaries_ms(ts_ms: int, window_ms: int = DEFAULT_WINDOW_MS) -> tuple[int, int]:
    """
    Get window start and end timestamps for a given timestamp.

    Windows are aligned to the epoch, so 5-minute windows start at
    :00, :05, :10 ... of every hour.

    Args:
        ts_ms: Timestamp in milliseconds
        window_ms: Window length in milliseconds

    Returns:
        Tuple of (window_start_ms, window_end_ms)
    """
    start = ts_ms - (ts_ms % window_ms)
    return start, start + window_ms


def get_window_id(ts_ms: int, window_ms: int = DEFAULT_WINDOW_MS) -> str:
    """
    Get window identifier string from timestamp.

    Returns:
        Window start in ISO format, e.g., "2026-01-22T14:05:00Z"
    """
    start, _ = get_window_boundaries_ms(ts_ms, window_ms)
    dt = datetime.fromtimestamp(start / 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def ms_until_window_end(ts_ms: int, window_ms: int = DEFAULT_WINDOW_MS) -> int:
    """Milliseconds remaining until the end of the current window (>= 0)."""
    _, end = get_window_boundaries_ms(ts_ms, window_ms)
    return max(0, end - ts_ms)


def next_window_start_ms(ts_ms: int, window_ms: int = DEFAULT_WINDOW_MS) -> int:
    """Start of the window following the one containing ts_ms."""
    _, end = get_window_boundaries_ms(ts_ms, window_ms)
    return end


def utc_day(ts_ms: int) -> str:
    """UTC calendar day of a timestamp, e.g. "2026-01-22"."""
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


class Clock:
    """
    Wall-clock time source.

    Injected into the scheduler and cycle runner so tests can drive
    time deterministically.
    """

    def now_ms(self) -> int:
        return get_current_ms()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))
