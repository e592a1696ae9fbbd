"""Bounded, cancellable waits for blocking supervisor steps."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

DEFAULT_POLL_INTERVAL = 0.05


class Cancelled(Exception):
    """An external stop request preempted a blocking wait."""


def wait_until(
    condition: Callable[[], bool],
    *,
    timeout: float,
    cancel: threading.Event | None = None,
    interval: float = DEFAULT_POLL_INTERVAL,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Poll ``condition`` until it holds or ``timeout`` elapses.

    Returns ``True`` as soon as the condition holds and ``False`` once the
    deadline passes. Raises :class:`Cancelled` when ``cancel`` is set, which
    also wakes the wait early instead of sleeping out the interval.
    """
    deadline = clock() + max(timeout, 0.0)
    while True:
        if condition():
            return True
        if cancel is not None and cancel.is_set():
            raise Cancelled("Wait cancelled by stop request.")
        remaining = deadline - clock()
        if remaining <= 0:
            return False
        step = min(interval, remaining)
        if cancel is not None:
            cancel.wait(step)
        else:
            sleep(step)
