from __future__ import annotations

import threading
import time
from typing import Callable


class WaitCancelledError(RuntimeError):
    """Raised when a wait is cancelled before its condition or deadline is reached."""


def wait_for(
    predicate: Callable[[], bool],
    *,
    interval_seconds: float,
    timeout_seconds: float | None,
    cancel_event: threading.Event | None = None,
) -> bool:
    """Poll ``predicate`` on the calling thread until it holds or the deadline passes.

    The predicate is evaluated once before any sleep, so a condition that
    already holds returns immediately. Returns ``False`` once the timeout
    elapses; a ``timeout_seconds`` of ``None`` waits without a deadline.
    Setting ``cancel_event`` interrupts the current sleep and raises
    ``WaitCancelledError``. Exceptions raised by the predicate propagate.
    """
    if interval_seconds <= 0:
        raise ValueError("interval_seconds must be positive")
    if timeout_seconds is not None and timeout_seconds < 0:
        raise ValueError("timeout_seconds must not be negative")

    deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds
    while True:
        _raise_if_cancelled(cancel_event)
        if predicate():
            return True

        delay = interval_seconds
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            delay = min(delay, remaining)

        if cancel_event is not None:
            cancel_event.wait(delay)
        else:
            time.sleep(delay)


def _raise_if_cancelled(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise WaitCancelledError("wait cancelled")
