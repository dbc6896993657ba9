"""
Timeout Detection Engine.

ARCHITECTURE:
- ``evaluate`` is a pure decision: (order, policy, adapter, now) -> decision
- ``TimeoutDetectionEngine.sweep`` loads open orders per type (highest policy
  priority first), evaluates each, and commits through the store's
  compare-and-set write
- Every committed transition produces exactly one TimeoutTransitionEvent,
  written to the store outbox with the transition and then handed to the
  registered listeners; events a listener rejected are replayed at the
  start of the next sweep

CRITICAL RULES:
1. Idempotency lives in the order's own fields (warning flag, status, count),
   never in engine memory: re-sweeping an unchanged order is a no-op
2. A rejected CAS re-reads the order and re-evaluates, at most
   ``max_cas_retries`` times, then the order is skipped for this sweep
3. A failure on one order is logged and isolated; the sweep continues
4. intervention_time is set at most once; the archiver runs only for the
   write that set it
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, List, Protocol, Dict, Any
import threading
import time

from campus.logging import get_logger, LogStream, LogContext, log_execution_time
from campus.time import Clock, RealTimeClock, ensure_utc
from campus.timeout.events import TimeoutTransitionEvent
from campus.timeout.outbox import TransitionOutbox, TransitionListener
from campus.timeout.policy import PolicyTable, TimeoutPolicy
from campus.timeout.status import TimeoutStatus
from campus.timeout.store import OrderStore, TimeoutUpdate
from campus.timeout.timeoutable import Timeoutable, OrderAdapter, adapter_for


class Archiver(Protocol):
    def archive_and_remove(self, order: Timeoutable) -> None:
        ...


# ============================================================================
# PURE DECISION
# ============================================================================

@dataclass(frozen=True)
class TimeoutDecision:
    """Target values of the timeout fields after one evaluation."""
    to_status: TimeoutStatus
    update: TimeoutUpdate
    intervention_triggered: bool = False


def evaluate(
    order: Timeoutable,
    policy: TimeoutPolicy,
    adapter: OrderAdapter,
    now: datetime,
) -> Optional[TimeoutDecision]:
    """
    Decide the next timeout state of *order* at *now*.

    Returns None when nothing changes.
    """
    if not adapter.is_open(order):
        return None

    phase = adapter.phase_of(order)
    if phase is None:
        return None

    reference = adapter.reference_time(order, phase)
    if reference is None:
        return None

    elapsed = ensure_utc(now) - ensure_utc(reference)
    timeout_status = TimeoutStatus.timeout_for(phase)

    if elapsed >= policy.timeout_for(phase):
        if order.timeout_status is timeout_status:
            return None
        new_count = order.timeout_count + 1
        intervention_time = order.intervention_time
        triggered = False
        if new_count >= policy.archive_threshold and intervention_time is None:
            intervention_time = ensure_utc(now)
            triggered = True
        return TimeoutDecision(
            to_status=timeout_status,
            update=TimeoutUpdate(
                timeout_status=timeout_status,
                timeout_warning_sent=order.timeout_warning_sent,
                timeout_count=new_count,
                intervention_time=intervention_time,
            ),
            intervention_triggered=triggered,
        )

    if elapsed >= policy.warning_for(phase) and not order.timeout_warning_sent:
        warning_status = TimeoutStatus.warning_for(phase)
        return TimeoutDecision(
            to_status=warning_status,
            update=TimeoutUpdate(
                timeout_status=warning_status,
                timeout_warning_sent=True,
                timeout_count=order.timeout_count,
                intervention_time=order.intervention_time,
            ),
        )

    return None


# ============================================================================
# SWEEP STATISTICS
# ============================================================================

@dataclass
class SweepStats:
    started_at: Optional[datetime] = None
    evaluated: int = 0
    transitions: int = 0
    warnings: int = 0
    timeouts: int = 0
    interventions: int = 0
    conflicts: int = 0
    skipped: int = 0
    duplicates: int = 0
    failures: int = 0
    republished: int = 0
    publish_failures: int = 0
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "evaluated": self.evaluated,
            "transitions": self.transitions,
            "warnings": self.warnings,
            "timeouts": self.timeouts,
            "interventions": self.interventions,
            "conflicts": self.conflicts,
            "skipped": self.skipped,
            "duplicates": self.duplicates,
            "failures": self.failures,
            "republished": self.republished,
            "publish_failures": self.publish_failures,
            "duration_ms": round(self.duration_ms, 2),
        }


# ============================================================================
# ENGINE
# ============================================================================

class TimeoutDetectionEngine:
    """
    Scheduled sweep over all open orders of every supported type.

    USAGE:
        engine = TimeoutDetectionEngine(store, PolicyTable(), archiver, clock=clock)
        engine.add_listener(publish_event)
        events = engine.sweep()
    """

    def __init__(
        self,
        store: OrderStore,
        policies: Optional[PolicyTable] = None,
        archiver: Optional[Archiver] = None,
        clock: Optional[Clock] = None,
        max_cas_retries: int = 3,
    ):
        self.store = store
        self.policies = policies or PolicyTable()
        self.archiver = archiver
        self.clock = clock or RealTimeClock()
        self.max_cas_retries = max_cas_retries
        self.logger = get_logger(LogStream.TIMEOUT)

        self.outbox = TransitionOutbox(store)
        self._stats_lock = threading.Lock()
        self._last_sweep: Optional[SweepStats] = None
        self._totals: Dict[str, int] = {
            "sweeps": 0,
            "transitions": 0,
            "conflicts": 0,
            "skipped": 0,
            "failures": 0,
            "republished": 0,
            "publish_failures": 0,
        }

    def add_listener(self, listener: TransitionListener) -> None:
        self.outbox.add_listener(listener)

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def sweep(self, now: Optional[datetime] = None) -> List[TimeoutTransitionEvent]:
        """
        Run one pass over every open order.

        Never raises for per-order problems; returns the committed transitions.
        """
        now = ensure_utc(now) if now is not None else self.clock.now()
        stats = SweepStats(started_at=now)
        events: List[TimeoutTransitionEvent] = []
        seen = set()
        started = time.perf_counter()

        with LogContext(), log_execution_time("timeout_sweep", logger=self.logger):
            self._flush_outbox(stats)

            for order_type in self.policies.order_types_by_priority():
                try:
                    orders = self.store.find_open_orders_for_sweep(order_type)
                except Exception as e:
                    stats.failures += 1
                    self.logger.error(
                        f"Failed to load open {order_type.value} orders",
                        extra={"order_type": order_type.value, "error": str(e)},
                        exc_info=True,
                    )
                    continue

                for order in orders:
                    if order.order_number in seen:
                        stats.duplicates += 1
                        continue
                    seen.add(order.order_number)
                    stats.evaluated += 1

                    try:
                        event = self._process_order(order, now, stats)
                    except Exception as e:
                        stats.failures += 1
                        self.logger.error(
                            f"Timeout evaluation failed for order {order.order_number}",
                            extra={
                                "order_number": order.order_number,
                                "order_type": order_type.value,
                                "error": str(e),
                            },
                            exc_info=True,
                        )
                        continue

                    if event is not None:
                        events.append(event)

        stats.duration_ms = (time.perf_counter() - started) * 1000
        self._record_stats(stats)

        self.logger.info(
            "Timeout sweep complete",
            extra=stats.to_dict(),
        )
        return events

    def _process_order(
        self, order: Timeoutable, now: datetime, stats: SweepStats
    ) -> Optional[TimeoutTransitionEvent]:
        policy = self.policies.get(order.order_type)
        adapter = adapter_for(order.order_type)
        current = order

        for attempt in range(self.max_cas_retries + 1):
            decision = evaluate(current, policy, adapter, now)
            if decision is None:
                return None

            event = self._build_event(current, decision, now)
            if self.store.cas_update_timeout_status(current.id, current.version, decision.update, event):
                self._commit(current, decision, event, stats)
                return event

            stats.conflicts += 1
            self.logger.debug(
                f"Version conflict on order {current.order_number}",
                extra={
                    "order_number": current.order_number,
                    "expected_version": current.version,
                    "attempt": attempt + 1,
                },
            )
            current = self.store.get(current.id)
            if current is None:
                return None

        stats.skipped += 1
        self.logger.warning(
            f"Skipping order {order.order_number} after {self.max_cas_retries} conflicting writes",
            extra={"order_number": order.order_number, "max_cas_retries": self.max_cas_retries},
        )
        return None

    def _build_event(
        self, order: Timeoutable, decision: TimeoutDecision, now: datetime
    ) -> TimeoutTransitionEvent:
        return TimeoutTransitionEvent(
            order_number=order.order_number,
            order_type=order.order_type,
            from_status=order.timeout_status,
            to_status=decision.to_status,
            timestamp=now,
            order_id=order.id,
            owning_user=order.owning_user,
            assigned_handler=order.assigned_handler,
            timeout_count=decision.update.timeout_count,
            intervention_triggered=decision.intervention_triggered,
        )

    def _commit(
        self,
        order: Timeoutable,
        decision: TimeoutDecision,
        event: TimeoutTransitionEvent,
        stats: SweepStats,
    ) -> None:
        stats.transitions += 1
        if decision.to_status.is_warning:
            stats.warnings += 1
        else:
            stats.timeouts += 1

        log = self.logger.warning if decision.to_status.is_timeout else self.logger.info
        log(
            f"Order {order.order_number}: {order.timeout_status.code} -> {decision.to_status.code}",
            extra={
                "order_number": order.order_number,
                "order_type": order.order_type.value,
                "from_status": order.timeout_status.code,
                "to_status": decision.to_status.code,
                "timeout_count": decision.update.timeout_count,
                "severity": decision.to_status.severity.value,
            },
        )

        if decision.intervention_triggered:
            stats.interventions += 1
            self._archive(order)

        if not self.outbox.publish(event):
            stats.publish_failures += 1

    def _archive(self, order: Timeoutable) -> None:
        self.logger.warning(
            f"Order {order.order_number} escalated to platform intervention",
            extra={"order_number": order.order_number, "order_type": order.order_type.value},
        )
        if self.archiver is None:
            return
        try:
            self.archiver.archive_and_remove(order)
        except Exception as e:
            # intervention_time is committed; archival is retried by the collaborator
            self.logger.error(
                f"Archival failed for order {order.order_number}",
                extra={"order_number": order.order_number, "error": str(e)},
                exc_info=True,
            )

    def _flush_outbox(self, stats: SweepStats) -> None:
        try:
            result = self.outbox.flush()
        except Exception as e:
            stats.failures += 1
            self.logger.error(
                "Failed to load pending transition events",
                extra={"error": str(e)},
                exc_info=True,
            )
            return
        stats.republished += result.published
        stats.publish_failures += result.failed

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def _record_stats(self, stats: SweepStats) -> None:
        with self._stats_lock:
            self._last_sweep = stats
            self._totals["sweeps"] += 1
            self._totals["transitions"] += stats.transitions
            self._totals["conflicts"] += stats.conflicts
            self._totals["skipped"] += stats.skipped
            self._totals["failures"] += stats.failures
            self._totals["republished"] += stats.republished
            self._totals["publish_failures"] += stats.publish_failures

    @property
    def last_sweep_stats(self) -> Optional[SweepStats]:
        with self._stats_lock:
            return self._last_sweep

    def get_stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return dict(self._totals)
