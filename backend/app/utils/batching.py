"""Helper functions for chunking sequences and pacing batch writes."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator, Sequence
from typing import TypeVar

T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield successive ordered slices of at most ``size`` items."""
    if size < 1:
        raise ValueError(f"Batch size must be positive, got {size}")
    for start in range(0, len(items), size):
        yield items[start : start + size]


class BatchPacer:
    """Enforces a minimum interval between consecutive batch commits.

    Time already spent transforming and writing a batch counts toward the
    interval, so a slow store is not throttled twice.
    """

    def __init__(
        self,
        min_interval_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._min_interval = max(0.0, min_interval_seconds)
        self._clock = clock
        self._sleep = sleep
        self._last_mark: float | None = None

    def wait(self) -> float:
        """Block until the interval since the previous call has elapsed.

        Returns the number of seconds slept.
        """
        slept = 0.0
        now = self._clock()
        if self._last_mark is not None and self._min_interval > 0:
            remaining = self._min_interval - (now - self._last_mark)
            if remaining > 0:
                self._sleep(remaining)
                slept = remaining
                now = self._clock()
        self._last_mark = now
        return slept
