"""
Transition outbox.

Every committed transition is written to the order store's outbox together
with the timeout fields (see ``OrderStore.cas_update_timeout_status``). The
outbox hands the event to the listeners and clears it only after every
listener accepted it. Anything left over is replayed by ``flush``, which the
sweep runs before it evaluates orders.

A replay re-sends to all listeners, including ones that already accepted the
event. Listeners key on ``event.event_id`` (the producer uses it as the
message id), so consumers drop the duplicate.
"""

import threading
from dataclasses import dataclass
from typing import Callable, List

from campus.logging import get_logger, LogStream
from campus.timeout.events import TimeoutTransitionEvent
from campus.timeout.store import OrderStore

TransitionListener = Callable[[TimeoutTransitionEvent], None]


@dataclass
class FlushResult:
    pending: int = 0
    published: int = 0
    failed: int = 0


class TransitionOutbox:
    """Publishes committed transitions to listeners, at least once."""

    def __init__(self, store: OrderStore):
        self.store = store
        self.logger = get_logger(LogStream.TIMEOUT)
        self._listeners: List[TransitionListener] = []
        self._flush_lock = threading.Lock()

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def publish(self, event: TimeoutTransitionEvent) -> bool:
        """
        Hand *event* to every listener.

        Returns True once all listeners accepted it and the outbox entry is
        cleared; False leaves it pending for the next flush.
        """
        delivered = True
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                delivered = False
                self.logger.error(
                    f"Transition listener failed for order {event.order_number}; event kept in outbox",
                    extra={
                        "order_number": event.order_number,
                        "event_id": event.event_id,
                        "listener": getattr(listener, "__name__", repr(listener)),
                        "error": str(e),
                    },
                    exc_info=True,
                )
        if not delivered:
            return False

        try:
            self.store.mark_event_published(event.event_id)
        except Exception as e:
            self.logger.error(
                f"Could not clear outbox entry for order {event.order_number}; it will be replayed",
                extra={"order_number": event.order_number, "event_id": event.event_id, "error": str(e)},
                exc_info=True,
            )
            return False
        return True

    def flush(self) -> FlushResult:
        """
        Replay every pending event, oldest first.

        A flush already running on another thread wins; this call returns an
        empty result.
        """
        result = FlushResult()
        if not self._flush_lock.acquire(blocking=False):
            return result
        try:
            pending = self.store.pending_events()
            result.pending = len(pending)
            for event in pending:
                if self.publish(event):
                    result.published += 1
                else:
                    result.failed += 1
        finally:
            self._flush_lock.release()

        if result.pending:
            self.logger.warning(
                "Replayed pending transition events",
                extra={"pending": result.pending, "published": result.published, "failed": result.failed},
            )
        return result
