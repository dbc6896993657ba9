"""
Time abstraction layer.

Provides an injectable clock that can be:
- Real-time (production)
- Manual (tests, replays, simulations)

Every timeout decision is made against ``clock.now()`` so that sweeps are
deterministic under test.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone, timedelta
from typing import Optional, Tuple
import threading
import time as _time_mod

import pytz

DEFAULT_TZ = "Asia/Shanghai"


class Clock(ABC):
    """Abstract clock interface"""

    @abstractmethod
    def now(self) -> datetime:
        """Get current time (always UTC)"""

    def now_local(self, tz: str = DEFAULT_TZ) -> datetime:
        """Get current time in specified timezone"""
        return self.now().astimezone(pytz.timezone(tz))


class RealTimeClock(Clock):
    """Wall clock"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock(Clock):
    """
    Manually driven clock.

    Thread-safe: consumer workers read it while the test thread advances it.
    """

    def __init__(self, start_time: Optional[datetime] = None):
        if start_time is not None and start_time.tzinfo is None:
            raise ValueError("start_time must be timezone-aware (UTC)")
        self._lock = threading.Lock()
        self._current_time = (start_time or datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)).astimezone(timezone.utc)

    def now(self) -> datetime:
        with self._lock:
            return self._current_time

    def advance(self, delta: Optional[timedelta] = None, **kwargs) -> datetime:
        """
        Advance time by delta (or by timedelta keyword arguments).

        Example:
            clock.advance(minutes=49)
        """
        step = delta if delta is not None else timedelta(**kwargs)
        if step < timedelta(0):
            raise ValueError("ManualClock cannot move backwards")
        with self._lock:
            self._current_time += step
            return self._current_time

    def set_time(self, new_time: datetime) -> None:
        if new_time.tzinfo is None:
            raise ValueError("new_time must be timezone-aware (UTC)")
        with self._lock:
            self._current_time = new_time.astimezone(timezone.utc)


# ============================================================================
# Time normalization helpers
# ============================================================================

def utc_now() -> datetime:
    """Current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """
    Ensure *dt* is timezone-aware and in UTC.

    - If naive (no tzinfo): attach UTC (assumes caller meant UTC).
    - If aware but not UTC: convert to UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def epoch_ms(dt: Optional[datetime] = None) -> int:
    """Milliseconds since Unix epoch for *dt* (or now if None)."""
    if dt is None:
        return int(_time_mod.time() * 1000)
    return int(ensure_utc(dt).timestamp() * 1000)


def from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)


def local_day_bounds(dt: datetime, tz: str = DEFAULT_TZ) -> Tuple[datetime, datetime]:
    """
    Return the [start, end) UTC bounds of the calendar day containing *dt*
    in timezone *tz*.
    """
    zone = pytz.timezone(tz)
    local = ensure_utc(dt).astimezone(zone)
    start_naive = datetime(local.year, local.month, local.day)
    start = zone.localize(start_naive)
    # localize again after adding a day so DST shifts are honoured
    end = zone.localize(start_naive + timedelta(days=1))
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)
