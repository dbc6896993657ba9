"""
Manual intervention path.

Operators (or the reassignment workflow) write the same timeout fields as the
sweep, so every write here goes through the same version-checked update and
bounded retry as the engine, and its event goes through the same outbox.

intervention_time may only be set once timeout_count has reached the order
type's archive threshold; an operator cannot escalate earlier than the sweep
would.
"""

from datetime import datetime
from typing import Optional, Callable, Tuple

from campus.logging import get_logger, LogStream
from campus.time import Clock, RealTimeClock, ensure_utc
from campus.timeout.engine import Archiver
from campus.timeout.events import TimeoutTransitionEvent
from campus.timeout.outbox import TransitionOutbox, TransitionListener
from campus.timeout.policy import PolicyTable, TimeoutEngineError
from campus.timeout.status import TimeoutStatus
from campus.timeout.store import OrderStore, OrderNotFoundError, TimeoutUpdate
from campus.timeout.timeoutable import Timeoutable


class ConcurrencyConflictError(TimeoutEngineError):
    """Version-checked write kept losing to concurrent writers."""
    pass


class InterventionNotAllowedError(TimeoutEngineError):
    """The order has not timed out often enough to be escalated."""
    pass


class InterventionService:
    """Operator-driven changes to an order's timeout fields."""

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

    def add_listener(self, listener: TransitionListener) -> None:
        self.outbox.add_listener(listener)

    def reset_for_reassignment(self, order_id: int) -> bool:
        """
        Put a reassigned order back to NORMAL so the new handler's clock can
        time out again. timeout_count and the warning flag are kept.

        Returns False when the order was already NORMAL.
        """
        def build(order: Timeoutable) -> Optional[TimeoutUpdate]:
            if order.timeout_status is TimeoutStatus.NORMAL:
                return None
            return TimeoutUpdate(
                timeout_status=TimeoutStatus.NORMAL,
                timeout_warning_sent=order.timeout_warning_sent,
                timeout_count=order.timeout_count,
                intervention_time=order.intervention_time,
            )

        written = self._cas_write(order_id, build, "reset_for_reassignment", intervention=False)
        if written is None:
            return False
        _, event = written
        self.outbox.publish(event)
        return True

    def force_intervention(self, order_id: int, now: Optional[datetime] = None) -> bool:
        """
        Escalate an order to platform intervention now, without waiting for
        the next sweep.

        Idempotent: returns False if intervention_time was already set.

        Raises:
            InterventionNotAllowedError: timeout_count is below the order
                type's archive threshold
        """
        at = ensure_utc(now) if now is not None else self.clock.now()

        def build(order: Timeoutable) -> Optional[TimeoutUpdate]:
            if order.intervention_time is not None:
                return None
            threshold = self.policies.get(order.order_type).archive_threshold
            if order.timeout_count < threshold:
                raise InterventionNotAllowedError(
                    f"Order {order.order_number} has timed out {order.timeout_count} times; "
                    f"{order.order_type.value} orders are escalated at {threshold}"
                )
            return TimeoutUpdate(
                timeout_status=order.timeout_status,
                timeout_warning_sent=order.timeout_warning_sent,
                timeout_count=order.timeout_count,
                intervention_time=at,
            )

        written = self._cas_write(order_id, build, "force_intervention", intervention=True)
        if written is None:
            return False
        order, event = written

        if self.archiver is not None:
            try:
                self.archiver.archive_and_remove(order)
            except Exception as e:
                self.logger.error(
                    f"Archival failed for order {order.order_number}",
                    extra={"order_number": order.order_number, "error": str(e)},
                    exc_info=True,
                )
        self.outbox.publish(event)
        return True

    def _cas_write(
        self,
        order_id: int,
        build: Callable[[Timeoutable], Optional[TimeoutUpdate]],
        operation: str,
        intervention: bool,
    ) -> Optional[Tuple[Timeoutable, TimeoutTransitionEvent]]:
        """
        Returns the order as read before the committed write and the event
        stored with it, or None if no write was needed.
        """
        for attempt in range(self.max_cas_retries + 1):
            order = self.store.get(order_id)
            if order is None:
                raise OrderNotFoundError(f"Order {order_id} not found")

            update = build(order)
            if update is None:
                return None

            event = self._event_for(order, update, intervention)
            if self.store.cas_update_timeout_status(order.id, order.version, update, event):
                self.logger.info(
                    f"{operation} committed for order {order.order_number}",
                    extra={"order_number": order.order_number, "operation": operation},
                )
                return order, event

            self.logger.debug(
                f"Version conflict during {operation}",
                extra={"order_id": order_id, "attempt": attempt + 1},
            )

        raise ConcurrencyConflictError(
            f"{operation} for order {order_id} lost {self.max_cas_retries + 1} consecutive writes"
        )

    def _event_for(self, order: Timeoutable, update: TimeoutUpdate, intervention: bool) -> TimeoutTransitionEvent:
        return TimeoutTransitionEvent(
            order_number=order.order_number,
            order_type=order.order_type,
            from_status=order.timeout_status,
            to_status=update.timeout_status,
            timestamp=self.clock.now(),
            order_id=order.id,
            owning_user=order.owning_user,
            assigned_handler=order.assigned_handler,
            timeout_count=update.timeout_count,
            intervention_triggered=intervention,
            metadata={"source": "manual"},
        )
