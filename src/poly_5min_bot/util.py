"""Utility functions for the five-minute bot."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def setup_logging(
    name: str,
    level: str = "INFO",
    format_str: Optional[str] = None,
) -> logging.Logger:
    """
    Set up structured logging for a component.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_str: Optional custom format string

    Returns:
        Configured logger
    """
    if format_str is None:
        format_str = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=format_str,
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    return logging.getLogger(name)


def round_to_tick(price: float, tick_size: float) -> float:
    """
    Round a price to the nearest tick.

    Args:
        price: Price to round
        tick_size: Tick size (e.g., 0.01)

    Returns:
        Price rounded to nearest tick
    """
    if tick_size <= 0:
        return price
    return round(round(price / tick_size) * tick_size, 10)


def clamp(value: float, min_val: float, max_val: float) -> float:
    """Clamp a value between min and max."""
    return max(min_val, min(max_val, value))


class ExponentialBackoff:
    """Exponential backoff between retry attempts."""

    def __init__(self, min_seconds: float = 0.25, max_seconds: float = 4.0):
        self.min_seconds = min_seconds
        self.max_seconds = max_seconds
        self._current = min_seconds

    def reset(self) -> None:
        """Reset backoff to minimum."""
        self._current = self.min_seconds

    def next(self) -> float:
        """Get next backoff duration and increase for next time."""
        current = self._current
        self._current = min(self._current * 2, self.max_seconds)
        return current


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int,
    backoff: ExponentialBackoff,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    only_unsent: bool = False,
    description: str = "request",
) -> T:
    """
    Run an async operation, retrying TransientNetworkError with backoff.

    Any other exception propagates immediately.

    Args:
        operation: Zero-argument coroutine factory
        max_attempts: Total attempts including the first
        backoff: Backoff schedule (reset before the first attempt)
        sleep: Sleep function, injectable for tests
        only_unsent: Retry only errors whose request never left the process
        description: Name used in log messages

    Returns:
        Result of the first successful attempt
    """
    backoff.reset()
    attempt = 1
    while True:
        try:
            return await operation()
        except TransientNetworkError as e:
            if only_unsent and e.request_sent:
                raise
            if attempt >= max_attempts:
                logger.warning(f"{description} failed after {attempt} attempts: {e}")
                raise
            delay = backoff.next()
            logger.info(
                f"{description} attempt {attempt}/{max_attempts} failed ({e}), "
                f"retrying in {delay:.2f}s"
            )
            attempt += 1
            await sleep(delay)
