"""
Live timeout statistics.

Per-user and system-wide counters of warnings, timeouts and interventions for
the current period (the local calendar day). The hot path is a pure
increment under one lock; ``rebuild()`` recomputes everything from source
orders out of band and then re-applies the increments recorded while it was
scanning. Snapshots are a cache, never the ledger.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, List, Iterable, Any, Tuple

from campus.logging import get_logger, LogStream
from campus.time import Clock, RealTimeClock, ensure_utc, local_day_bounds
from campus.time.clock import DEFAULT_TZ
from campus.timeout.events import TimeoutTransitionEvent
from campus.timeout.policy import OrderType
from campus.timeout.timeoutable import Timeoutable

SCOPE_USER = "user"
SCOPE_SYSTEM = "system"


class TransitionKind(Enum):
    WARNING = "WARNING"
    TIMEOUT = "TIMEOUT"
    INTERVENTION = "INTERVENTION"

    @classmethod
    def kinds_for_event(cls, event: TimeoutTransitionEvent) -> List["TransitionKind"]:
        """
        Every counter an event contributes to.

        A timeout that also triggers intervention counts as both; a forced
        intervention that leaves the status unchanged counts only as an
        intervention; a reset to NORMAL counts as nothing.
        """
        kinds = []
        if event.to_status is not event.from_status:
            if event.to_status.is_warning:
                kinds.append(cls.WARNING)
            elif event.to_status.is_timeout:
                kinds.append(cls.TIMEOUT)
        if event.intervention_triggered:
            kinds.append(cls.INTERVENTION)
        return kinds

    @classmethod
    def from_event(cls, event: TimeoutTransitionEvent) -> Optional["TransitionKind"]:
        """Most severe kind for *event*, or None if it counts toward nothing."""
        kinds = cls.kinds_for_event(event)
        return kinds[-1] if kinds else None


@dataclass(frozen=True)
class StatisticsPeriod:
    start: datetime
    end: datetime

    @classmethod
    def today(cls, now: datetime, tz: str = DEFAULT_TZ) -> "StatisticsPeriod":
        start, end = local_day_bounds(now, tz)
        return cls(start, end)

    def contains(self, moment: datetime) -> bool:
        return self.start <= ensure_utc(moment) < self.end

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class TypeCounts:
    warnings: int = 0
    timeouts: int = 0
    interventions: int = 0
    orders: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "warnings": self.warnings,
            "timeouts": self.timeouts,
            "interventions": self.interventions,
            "orders": self.orders,
        }


@dataclass(frozen=True)
class StatisticsSnapshot:
    scope: str
    user_id: Optional[int]
    period: StatisticsPeriod
    by_type: Dict[OrderType, TypeCounts] = field(default_factory=dict, hash=False)

    @property
    def warnings(self) -> int:
        return sum(c.warnings for c in self.by_type.values())

    @property
    def timeouts(self) -> int:
        return sum(c.timeouts for c in self.by_type.values())

    @property
    def interventions(self) -> int:
        return sum(c.interventions for c in self.by_type.values())

    @property
    def orders(self) -> int:
        return sum(c.orders for c in self.by_type.values())

    @property
    def timeout_rate(self) -> Optional[float]:
        """Timeouts per order in percent; None until order totals are known (after rebuild)."""
        if self.orders == 0:
            return None
        return 100.0 * self.timeouts / self.orders

    def counts_for(self, order_type: OrderType) -> TypeCounts:
        return self.by_type.get(order_type, TypeCounts())

    def to_dict(self) -> Dict[str, Any]:
        rate = self.timeout_rate
        return {
            "scope": self.scope,
            "user_id": self.user_id,
            "period": self.period.to_dict(),
            "by_type": {t.value: c.to_dict() for t, c in self.by_type.items()},
            "totals": {
                "warnings": self.warnings,
                "timeouts": self.timeouts,
                "interventions": self.interventions,
                "orders": self.orders,
            },
            "timeout_rate": round(rate, 2) if rate is not None else None,
        }


@dataclass(frozen=True)
class UpdatedSnapshot:
    user: Optional[StatisticsSnapshot]
    system: StatisticsSnapshot


_FIELDS = ("warnings", "timeouts", "interventions", "orders")
_KIND_FIELD = {
    TransitionKind.WARNING: "warnings",
    TransitionKind.TIMEOUT: "timeouts",
    TransitionKind.INTERVENTION: "interventions",
}


class _Bucket:
    """Mutable counters for one scope; only touched under the aggregator lock."""

    __slots__ = ("counts",)

    def __init__(self):
        self.counts: Dict[OrderType, Dict[str, int]] = {}

    def add(self, order_type: OrderType, field_name: str, n: int = 1) -> None:
        row = self.counts.get(order_type)
        if row is None:
            row = dict.fromkeys(_FIELDS, 0)
            self.counts[order_type] = row
        row[field_name] += n

    def freeze(self) -> Dict[OrderType, TypeCounts]:
        return {t: TypeCounts(**row) for t, row in self.counts.items()}


class StatisticsAggregator:
    """
    Thread-safe per-user / system counters for the current period.

    USAGE:
        aggregator = StatisticsAggregator(clock=clock, timezone="Asia/Shanghai")
        updated = aggregator.record_event(OrderType.MAIL, user_id=7, kind=TransitionKind.TIMEOUT)
        updated.system.timeouts
    """

    def __init__(self, clock: Optional[Clock] = None, timezone: str = DEFAULT_TZ):
        self.clock = clock or RealTimeClock()
        self.timezone = timezone
        self.logger = get_logger(LogStream.STATISTICS)

        self._lock = threading.Lock()
        self._period = StatisticsPeriod.today(self.clock.now(), timezone)
        self._system = _Bucket()
        self._users: Dict[int, _Bucket] = {}
        # one list per rebuild in progress: (period, order_type, user_id, field)
        self._journals: List[List[Tuple[StatisticsPeriod, OrderType, Optional[int], str]]] = []

    @property
    def current_period(self) -> StatisticsPeriod:
        with self._lock:
            return self._period

    # ------------------------
    # Hot path
    # ------------------------

    def record_event(
        self, order_type: OrderType, user_id: Optional[int], kind: TransitionKind
    ) -> UpdatedSnapshot:
        field_name = _KIND_FIELD[kind]
        now = self.clock.now()
        with self._lock:
            self._roll_locked(now)
            self._system.add(order_type, field_name)
            for journal in self._journals:
                journal.append((self._period, order_type, user_id, field_name))
            user_snapshot = None
            if user_id is not None:
                bucket = self._users.get(user_id)
                if bucket is None:
                    bucket = _Bucket()
                    self._users[user_id] = bucket
                bucket.add(order_type, field_name)
                user_snapshot = self._snapshot_locked(SCOPE_USER, user_id, bucket)
            return UpdatedSnapshot(
                user=user_snapshot,
                system=self._snapshot_locked(SCOPE_SYSTEM, None, self._system),
            )

    # ------------------------
    # Reads
    # ------------------------

    def user_snapshot(self, user_id: int) -> StatisticsSnapshot:
        with self._lock:
            self._roll_locked(self.clock.now())
            return self._snapshot_locked(SCOPE_USER, user_id, self._users.get(user_id) or _Bucket())

    def system_snapshot(self) -> StatisticsSnapshot:
        with self._lock:
            self._roll_locked(self.clock.now())
            return self._snapshot_locked(SCOPE_SYSTEM, None, self._system)

    def user_ids(self) -> List[int]:
        with self._lock:
            return sorted(self._users)

    def _snapshot_locked(self, scope: str, user_id: Optional[int], bucket: _Bucket) -> StatisticsSnapshot:
        return StatisticsSnapshot(scope=scope, user_id=user_id, period=self._period, by_type=bucket.freeze())

    # ------------------------
    # Period management
    # ------------------------

    def roll_period(self, now: Optional[datetime] = None) -> bool:
        """Start a fresh period if *now* is past the current one. Returns True if rolled."""
        with self._lock:
            return self._roll_locked(now or self.clock.now())

    def _roll_locked(self, now: datetime) -> bool:
        if self._period.contains(now):
            return False
        previous = self._period
        self._period = StatisticsPeriod.today(now, self.timezone)
        self._system = _Bucket()
        self._users = {}
        self.logger.info("Statistics period rolled over", extra={
            "previous_start": previous.start.isoformat(),
            "period_start": self._period.start.isoformat(),
        })
        return True

    # ------------------------
    # Reconciliation
    # ------------------------

    def rebuild(self, orders: Iterable[Timeoutable], now: Optional[datetime] = None) -> StatisticsSnapshot:
        """
        Recompute the current period from source orders and replace the counters.

        Orders created in the period count toward ``orders``; their warning
        flag, timeout count and intervention (if it fell in the period) are
        attributed to the handler, or to the owner when unassigned.
        *orders* must be read before the call: increments recorded from the
        moment the rebuild starts are applied again on top of the rebuilt
        counters, so a transition recorded during the scan is not lost.
        """
        now = now or self.clock.now()
        period = StatisticsPeriod.today(now, self.timezone)
        journal: List[Tuple[StatisticsPeriod, OrderType, Optional[int], str]] = []
        with self._lock:
            self._journals.append(journal)

        try:
            system, users, scanned = self._scan(orders, period)
        except Exception:
            with self._lock:
                self._journals.remove(journal)
            raise

        with self._lock:
            self._journals.remove(journal)
            replayed = 0
            for entry_period, order_type, user_id, field_name in journal:
                if entry_period != period:
                    continue
                replayed += 1
                system.add(order_type, field_name)
                if user_id is not None:
                    users.setdefault(user_id, _Bucket()).add(order_type, field_name)
            self._period = period
            self._system = system
            self._users = users
            snapshot = self._snapshot_locked(SCOPE_SYSTEM, None, system)

        self.logger.info("Statistics rebuilt from source orders", extra={
            "scanned": scanned,
            "replayed": replayed,
            "orders": snapshot.orders,
            "users": len(users),
            "timeouts": snapshot.timeouts,
        })
        return snapshot

    def _scan(
        self, orders: Iterable[Timeoutable], period: StatisticsPeriod
    ) -> Tuple[_Bucket, Dict[int, _Bucket], int]:
        system = _Bucket()
        users: Dict[int, _Bucket] = {}
        scanned = 0

        for order in orders:
            scanned += 1
            if not period.contains(order.created_time):
                continue
            user_id = order.assigned_handler if order.assigned_handler is not None else order.owning_user
            user_bucket = users.get(user_id)
            if user_bucket is None:
                user_bucket = _Bucket()
                users[user_id] = user_bucket
            for field_name, n in self._order_contribution(order, period):
                if n:
                    system.add(order.order_type, field_name, n)
                    user_bucket.add(order.order_type, field_name, n)
        return system, users, scanned

    @staticmethod
    def _order_contribution(order: Timeoutable, period: StatisticsPeriod) -> List[Tuple[str, int]]:
        intervened = order.intervention_time is not None and period.contains(order.intervention_time)
        return [
            ("orders", 1),
            ("warnings", 1 if order.timeout_warning_sent else 0),
            ("timeouts", order.timeout_count),
            ("interventions", 1 if intervened else 0),
        ]
