"""Deadline-bounded polling.

Polls a predicate at a fixed interval until it holds or a timeout elapses.
Takes injectable ``sleep`` and ``clock`` callables so callers (and tests)
control time.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def poll_until(
    check: Callable[[], T | None],
    timeout: float,
    interval: float,
    description: str = "condition",
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Poll ``check`` until it returns a truthy value or ``timeout`` elapses.

    The final sleep is clipped to the remaining budget, so the call never
    blocks much longer than ``timeout``.

    Args:
        check: Callable returning a truthy value once the condition holds.
            Exceptions it raises propagate.
        timeout: Maximum wait in seconds.
        interval: Delay between checks.
        description: Label used in log and error messages.
        clock: Monotonic clock.
        sleep: Sleep function.

    Returns:
        The first truthy value returned by ``check``.

    Raises:
        TimeoutError: If the condition does not hold within ``timeout``.
    """
    start = clock()
    polls = 0
    while True:
        polls += 1
        value = check()
        if value:
            logger.debug("%s satisfied after %d poll(s)", description, polls)
            return value

        remaining = timeout - (clock() - start)
        if remaining <= 0:
            raise TimeoutError(
                f"Timed out after {timeout:g}s waiting for {description}"
            )
        sleep(min(interval, remaining))


__all__ = ["poll_until"]
