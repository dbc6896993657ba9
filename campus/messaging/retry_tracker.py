"""
In-memory retry bookkeeping keyed by message_id.

Only pacing and diagnostics read this map; the authoritative retry count
travels inside the message itself. The map is therefore bounded (oldest
entries evicted first) and periodically swept, and losing it on restart is
harmless.
"""

import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from campus.time import Clock, RealTimeClock


@dataclass
class RetryEntry:
    message_id: str
    topic: str
    failures: int
    first_failure_time: datetime
    last_failure_time: datetime
    last_error: str


class RetryTracker:
    """Bounded, lock-protected map of message_id -> RetryEntry."""

    def __init__(
        self,
        max_entries: int = 10_000,
        ttl: timedelta = timedelta(hours=1),
        clock: Optional[Clock] = None,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.ttl = ttl
        self.clock = clock or RealTimeClock()
        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, RetryEntry]" = OrderedDict()
        self._evicted = 0

    def record_failure(self, message_id: str, topic: str, error: str) -> RetryEntry:
        now = self.clock.now()
        with self._lock:
            entry = self._entries.get(message_id)
            if entry is None:
                entry = RetryEntry(message_id, topic, 0, now, now, error)
                self._entries[message_id] = entry
            else:
                self._entries.move_to_end(message_id)
            entry.failures += 1
            entry.last_failure_time = now
            entry.last_error = error

            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                self._evicted += 1
            return entry

    def get(self, message_id: str) -> Optional[RetryEntry]:
        with self._lock:
            return self._entries.get(message_id)

    def forget(self, message_id: str) -> None:
        with self._lock:
            self._entries.pop(message_id, None)

    def clear_stale(self, now: Optional[datetime] = None) -> int:
        """Remove entries whose last failure is older than ttl. Returns count removed."""
        cutoff = (now or self.clock.now()) - self.ttl
        with self._lock:
            stale = [k for k, v in self._entries.items() if v.last_failure_time < cutoff]
            for key in stale:
                del self._entries[key]
            return len(stale)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "max_entries": self.max_entries,
                "evicted": self._evicted,
            }
