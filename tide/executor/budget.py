from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class ConcurrencyBudget:
    """Run-wide limit on simultaneously running task processes.

    One instance is shared by every group of a run. Acquiring a slot is the
    only point where a submitted task waits; there is no priority.
    """

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError(f"parallel limit must be at least 1, got {limit}")
        self.limit = limit
        self._slots = threading.BoundedSemaphore(limit)
        self._lock = threading.Lock()
        self._in_flight = 0
        self._peak = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def peak(self) -> int:
        return self._peak

    @contextmanager
    def slot(self) -> Iterator[None]:
        self._slots.acquire()
        with self._lock:
            self._in_flight += 1
            self._peak = max(self._peak, self._in_flight)
        try:
            yield
        finally:
            with self._lock:
                self._in_flight -= 1
            self._slots.release()
