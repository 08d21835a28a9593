"""Minimum spacing between request starts, shared by every caller."""

import logging
import math
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = math.e


class Throttle:
    """
    Callers queue for start slots: a call may not start until `interval`
    seconds after the previous one started, however many threads are waiting.
    """

    def __init__(
        self,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if interval < 0:
            raise ValueError("interval must not be negative")
        self.interval = interval
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_start: Optional[float] = None

    def wait(self) -> float:
        """Block until this caller's slot; returns the seconds waited."""
        with self._lock:
            now = self._clock()
            start = now if self._next_start is None else max(now, self._next_start)
            self._next_start = start + self.interval
        delay = start - now
        if delay > 0:
            logger.debug("throttled for %.2fs", delay)
            self._sleep(delay)
        return delay

    def __call__(self, fn: Callable, *args, **kwargs):
        self.wait()
        return fn(*args, **kwargs)
