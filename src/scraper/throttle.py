import threading
import time
from contextlib import contextmanager

class ActiveRequestCounter:
    """Process-wide count of in-flight page fetches, read by resource snapshots."""

    def __init__(self):
        self._lock = threading.Lock()
        self._active = 0

    def increment(self):
        with self._lock:
            self._active += 1

    def decrement(self):
        with self._lock:
            self._active = max(0, self._active - 1)

    @property
    def value(self) -> int:
        with self._lock:
            return self._active

active_requests = ActiveRequestCounter()

class RequestThrottle:
    """Per-source politeness delay plus a ceiling on concurrent fetches.

    Request starts are spaced at least ``delay_ms`` apart, regardless of how
    many worker threads share the throttle.
    """

    def __init__(self, delay_ms: int = 0, max_concurrency: int = 2,
                 counter: ActiveRequestCounter = active_requests,
                 sleep=time.sleep, clock=time.monotonic):
        self.delay = max(0, delay_ms) / 1000.0
        self.max_concurrency = max(1, max_concurrency)
        self._semaphore = threading.BoundedSemaphore(self.max_concurrency)
        self._lock = threading.Lock()
        self._next_slot = 0.0
        self._counter = counter
        self._sleep = sleep
        self._clock = clock

    def _wait_for_slot(self):
        with self._lock:
            now = self._clock()
            start_at = max(now, self._next_slot)
            self._next_slot = start_at + self.delay
        wait = start_at - now
        if wait > 0:
            self._sleep(wait)

    @contextmanager
    def slot(self):
        with self._semaphore:
            self._wait_for_slot()
            self._counter.increment()
            try:
                yield
            finally:
                self._counter.decrement()
