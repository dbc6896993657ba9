"""Injectable clocks and UTC helpers."""

from .clock import (
    Clock,
    RealTimeClock,
    ManualClock,
    utc_now,
    ensure_utc,
    epoch_ms,
    from_epoch_ms,
    local_day_bounds,
)

__all__ = [
    "Clock",
    "RealTimeClock",
    "ManualClock",
    "utc_now",
    "ensure_utc",
    "epoch_ms",
    "from_epoch_ms",
    "local_day_bounds",
]
