"""
Per-task consecutive-failure breaker for scheduled work.

INVARIANT:
    A task that fails max_failures times in a row trips exactly once;
    the next success resets it.

DESIGN:
    - record_failure(name) returns True only on the failure that trips.
    - record_success(name) resets the counter and the tripped flag.
    - Tripping does not stop the task; the scheduler alerts and keeps going.
"""

from __future__ import annotations

import threading
from typing import Dict, Set


class TaskFailureBreaker:
    """Trips per task after *max_failures* consecutive failures without a success."""

    def __init__(self, max_failures: int = 3) -> None:
        if max_failures < 1:
            raise ValueError("max_failures must be >= 1")
        self.max_failures: int = max_failures
        self._failures: Dict[str, int] = {}
        self._tripped: Set[str] = set()
        self._lock = threading.Lock()

    # -- public API ----------------------------------------------------------

    def failure_count(self, name: str) -> int:
        with self._lock:
            return self._failures.get(name, 0)

    def is_tripped(self, name: str) -> bool:
        with self._lock:
            return name in self._tripped

    def record_failure(self, name: str) -> bool:
        with self._lock:
            count = self._failures.get(name, 0) + 1
            self._failures[name] = count
            if count >= self.max_failures and name not in self._tripped:
                self._tripped.add(name)
                return True
            return False

    def record_success(self, name: str) -> None:
        with self._lock:
            self._failures[name] = 0
            self._tripped.discard(name)

    def get_status(self) -> Dict[str, Dict]:
        with self._lock:
            return {
                name: {"consecutive_failures": count, "tripped": name in self._tripped}
                for name, count in self._failures.items()
            }
