"""
Broker transport.

``BrokerTransport`` is the narrow surface the channel needs from an
AMQP-style broker: topic-addressed publish with an optional delivery delay,
fetch, and per-delivery ack/nack.

``InMemoryBroker`` implements it in-process:
- per-topic heap ordered by (ready_at, sequence)
- delivery delay measured on the injected clock, so tests drive backoff by
  advancing a ManualClock instead of sleeping
- fetched-but-unacked deliveries are tracked; ``recover_unacked`` plays the
  role of a broker's visibility timeout after a consumer crash
"""

import heapq
import itertools
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Protocol, Tuple

from campus.logging import get_logger, LogStream
from campus.time import Clock, RealTimeClock, epoch_ms


@dataclass
class Delivery:
    """One fetched message awaiting ack or nack."""
    delivery_tag: int
    topic: str
    body: str
    headers: Dict[str, str] = field(default_factory=dict)
    redelivered: bool = False


@dataclass(frozen=True)
class PublishRecord:
    topic: str
    delay_ms: int
    headers: Tuple[Tuple[str, str], ...]


class BrokerTransport(Protocol):

    def publish(self, topic: str, body: str, headers: Optional[Dict[str, str]] = None, delay_ms: int = 0) -> None:
        ...

    def fetch(self, topic: str, timeout: float = 0.0) -> Optional[Delivery]:
        ...

    def ack(self, delivery: Delivery) -> None:
        ...

    def nack(self, delivery: Delivery, requeue: bool = True) -> None:
        ...


class BrokerError(Exception):
    """Raised on broker transport errors."""
    pass


class InMemoryBroker:
    """
    Thread-safe in-process broker.

    USAGE:
        broker = InMemoryBroker(clock=clock)
        broker.publish("notification.queue", body, delay_ms=1000)
        delivery = broker.fetch("notification.queue", timeout=0.5)
        broker.ack(delivery)
    """

    # Upper bound on a single condition wait; keeps ManualClock-driven
    # delays responsive without a dedicated timer thread
    _POLL_INTERVAL = 0.05

    def __init__(self, clock: Optional[Clock] = None, history_size: int = 10_000):
        self.clock = clock or RealTimeClock()
        self.logger = get_logger(LogStream.MESSAGING)
        self._cond = threading.Condition()
        self._queues: Dict[str, list] = defaultdict(list)
        self._unacked: Dict[int, Delivery] = {}
        self._seq = itertools.count()
        self._tags = itertools.count(1)
        self._history: deque = deque(maxlen=history_size)
        self._published: Dict[str, int] = defaultdict(int)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def publish(self, topic: str, body: str, headers: Optional[Dict[str, str]] = None, delay_ms: int = 0) -> None:
        if delay_ms < 0:
            raise ValueError("delay_ms must be >= 0")
        headers = dict(headers or {})
        ready_at = epoch_ms(self.clock.now()) + delay_ms
        with self._cond:
            heapq.heappush(self._queues[topic], (ready_at, next(self._seq), body, headers, False))
            self._history.append(PublishRecord(topic, delay_ms, tuple(sorted(headers.items()))))
            self._published[topic] += 1
            self._cond.notify_all()

    def fetch(self, topic: str, timeout: float = 0.0) -> Optional[Delivery]:
        """
        Next ready delivery on *topic*, waiting up to *timeout* real seconds.
        """
        deadline = time.monotonic() + max(0.0, timeout)
        with self._cond:
            while True:
                delivery = self._pop_ready(topic)
                if delivery is not None:
                    return delivery
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(min(remaining, self._POLL_INTERVAL))

    def ack(self, delivery: Delivery) -> None:
        with self._cond:
            if self._unacked.pop(delivery.delivery_tag, None) is None:
                raise BrokerError(f"Unknown delivery tag {delivery.delivery_tag}")

    def nack(self, delivery: Delivery, requeue: bool = True) -> None:
        with self._cond:
            if self._unacked.pop(delivery.delivery_tag, None) is None:
                raise BrokerError(f"Unknown delivery tag {delivery.delivery_tag}")
            if requeue:
                ready_at = epoch_ms(self.clock.now())
                heapq.heappush(
                    self._queues[delivery.topic],
                    (ready_at, next(self._seq), delivery.body, delivery.headers, True),
                )
                self._cond.notify_all()

    def _pop_ready(self, topic: str) -> Optional[Delivery]:
        heap = self._queues.get(topic)
        if not heap:
            return None
        ready_at, _, body, headers, redelivered = heap[0]
        if ready_at > epoch_ms(self.clock.now()):
            return None
        heapq.heappop(heap)
        delivery = Delivery(next(self._tags), topic, body, dict(headers), redelivered)
        self._unacked[delivery.delivery_tag] = delivery
        return delivery

    # ------------------------------------------------------------------
    # Operations / inspection
    # ------------------------------------------------------------------

    def recover_unacked(self) -> int:
        """Make every fetched-but-unacked delivery available again."""
        with self._cond:
            pending = list(self._unacked.values())
            self._unacked.clear()
            ready_at = epoch_ms(self.clock.now())
            for delivery in pending:
                heapq.heappush(
                    self._queues[delivery.topic],
                    (ready_at, next(self._seq), delivery.body, delivery.headers, True),
                )
            if pending:
                self._cond.notify_all()
        if pending:
            self.logger.warning("Recovered unacked deliveries", extra={"count": len(pending)})
        return len(pending)

    def depth(self, topic: str) -> int:
        """Messages queued on *topic* (ready or delayed)."""
        with self._cond:
            return len(self._queues.get(topic, ()))

    def unacked_count(self) -> int:
        with self._cond:
            return len(self._unacked)

    def publish_history(self, topic: Optional[str] = None) -> List[PublishRecord]:
        with self._cond:
            return [r for r in self._history if topic is None or r.topic == topic]

    def get_stats(self) -> Dict:
        with self._cond:
            return {
                "published": dict(self._published),
                "depth": {t: len(q) for t, q in self._queues.items()},
                "unacked": len(self._unacked),
            }
