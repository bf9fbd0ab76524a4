"""Timer scheduling for delay nodes."""

import threading
import time
from typing import Callable


class ScheduledTimer:
    """Handle for one scheduled callback."""

    def __init__(self, timer: threading.Timer):
        self._timer = timer

    def cancel(self) -> None:
        self._timer.cancel()


class DelayScheduler:
    """
    Runs callbacks after a delay on daemon ``threading.Timer`` threads.

    Subclasses may replace the clock (``now``) and the timer mechanism
    (``schedule``); the engine only relies on these two methods.
    """

    def now(self) -> float:
        """Current wall-clock time in seconds since the epoch."""
        return time.time()

    def schedule(self, seconds: float, callback: Callable[[], None]) -> ScheduledTimer:
        timer = threading.Timer(max(0.0, seconds), callback)
        timer.daemon = True
        timer.start()
        return ScheduledTimer(timer)
