"""racehero_etl.retry

Bounded retry with exponential backoff and a per-attempt deadline.

Each attempt races the operation against a timer.  When the timer wins the
attempt fails with OperationTimeout; work already running in a worker
thread is not interrupted, its eventual result is simply ignored.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 20
DEFAULT_ATTEMPT_TIMEOUT = 20.0  # seconds
BASE_DELAY = 1.0  # seconds
MAX_DELAY = 5.0  # seconds


class OperationTimeout(TimeoutError):
    """A single attempt exceeded its deadline."""


def backoff_delay(attempt: int) -> float:
    """Seconds to wait after failed attempt number `attempt` (1-based)."""
    return min(BASE_DELAY * 2 ** (attempt - 1), MAX_DELAY)


async def _attempt(
    operation: Callable[[], Awaitable[T]],
    attempt_timeout: float,
    description: str,
) -> T:
    """One attempt raced against its deadline.

    Only the deadline itself becomes OperationTimeout; errors raised by the
    operation (a TimeoutError from the transport included) pass through.
    """
    task = asyncio.ensure_future(operation())
    try:
        done, _ = await asyncio.wait({task}, timeout=attempt_timeout)
    finally:
        if not task.done():
            task.cancel()
    if task not in done:
        raise OperationTimeout(f"{description} timed out after {attempt_timeout:g}s")
    return task.result()


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    attempt_timeout: float = DEFAULT_ATTEMPT_TIMEOUT,
    *,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run operation() until it succeeds or max_attempts have failed.

    Returns the first successful result.  After the final failure the last
    error is re-raised unchanged.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    last_error: Exception | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await _attempt(operation, attempt_timeout, description)
        except Exception as exc:
            last_error = exc

        log.warning(
            "%s: attempt %d/%d failed: %s",
            description, attempt, max_attempts, last_error,
        )
        if attempt < max_attempts:
            await sleep(backoff_delay(attempt))

    assert last_error is not None
    raise last_error
