"""Deadline-bounded polling helpers."""

from __future__ import annotations

import time
from collections.abc import Callable


def wait_for(
    predicate: Callable[[], bool],
    *,
    interval: float,
    timeout: float,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` seconds elapse.

    The predicate is checked immediately and then after every tick. ``sleep``
    receives the tick length, capped by the remaining budget, so callers can
    do useful work (such as draining an inbox) instead of idling.

    Returns:
        True if the predicate held before the deadline, False otherwise.
    """

    deadline = clock() + timeout
    while True:
        if predicate():
            return True
        remaining = deadline - clock()
        if remaining <= 0:
            return False
        sleep(min(interval, remaining))
