"""racehero_etl.batch

Fixed-width concurrent windows over a sequence of parent keys.

The keys are cut into windows of `width`; every operation of a window is
started together and the window is a barrier: the next window starts only
after every member of the current one has settled.  Each member settles to
a tagged ItemResult, so a failing member never throws away the results of
its siblings.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Sequence, TypeVar

from racehero_etl.shared import BatchError

log = logging.getLogger(__name__)

K = TypeVar("K")

DEFAULT_WIDTH = 10


@dataclass
class ItemResult(Generic[K]):
    key: K
    value: Any = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def _settle(key: K, operation: Callable[[K], Awaitable[Any]]) -> ItemResult[K]:
    try:
        return ItemResult(key, value=await operation(key))
    except Exception as exc:
        return ItemResult(key, error=exc)


async def run_in_windows(
    keys: Sequence[K],
    operation: Callable[[K], Awaitable[Any]],
    *,
    width: int = DEFAULT_WIDTH,
    label: str = "batch",
    fail_fast: bool = True,
    on_window: Callable[[list[ItemResult[K]]], Any] | None = None,
) -> list[ItemResult[K]]:
    """Run operation(key) for every key, `width` at a time.

    on_window, when given, is called with each settled window in key order
    (failures included) before the next window starts.

    With fail_fast (the default) a window containing a failure raises
    BatchError once the whole window has settled and on_window has seen it;
    no later window starts.  Without it, failures are logged and returned
    alongside the successes.
    """
    if width < 1:
        raise ValueError(f"width must be >= 1, got {width}")

    total = len(keys)
    windows = math.ceil(total / width)
    results: list[ItemResult[K]] = []

    for index, start in enumerate(range(0, total, width), start=1):
        window = keys[start:start + width]
        log.info("%s: window %d of %d (%d items)", label, index, windows, len(window))
        settled = await asyncio.gather(*(_settle(key, operation) for key in window))
        results.extend(settled)
        if on_window is not None:
            on_window(settled)

        failures = [r for r in settled if not r.ok]
        for failure in failures:
            log.error("%s: key=%r failed: %s", label, failure.key, failure.error)
        if failures and fail_fast:
            raise BatchError(label, failures)

    return results
