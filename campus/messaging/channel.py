"""
Reliable message channel over a BrokerTransport.

CRITICAL PROPERTIES:
1. At-least-once delivery: a delivery is acked only after its handler
   succeeded, or after the retry / dead-letter copy has been published
2. Bounded retry: on handler failure with retry_count < max_retries the
   message is republished to the SAME topic with retry_count + 1 and an
   exponential delay hint; otherwise it is published unchanged to the
   topic's dead-letter counterpart and never retried again
3. Message identity (message_id, create_time) is preserved across retries
4. Handler failures never escape a worker, and neither do ack / nack
   failures: an unacked delivery is redelivered by the broker
5. One worker thread per subscription; workers block only on broker fetch

USAGE:
    channel = ReliableMessageChannel(broker, RetryPolicy(), clock=clock)
    channel.subscribe(topics.NOTIFICATION, handle_notification)
    channel.set_dead_letter_handler(dead_letter_service.on_dead_letter)
    channel.start()

    channel.publish(topics.NOTIFICATION, Message(MessageType.NOTIFICATION, {...}))

    channel.stop()
"""

import os
import threading
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from campus.logging import get_logger, LogStream, LogContext
from campus.messaging.backoff import RetryPolicy
from campus.messaging.broker import BrokerTransport, Delivery
from campus.messaging.message import Message, MessageType, MessageDecodeError, MessagingError
from campus.messaging.retry_tracker import RetryTracker
from campus.messaging.topics import dead_letter_topic, is_dead_letter_topic, original_topic
from campus.time import Clock, RealTimeClock

Handler = Callable[[Message], None]
DeadLetterHandler = Callable[[Message, str, str], None]

HEADER_ORIGINAL_TOPIC = "x-original-topic"
HEADER_FAILURE_REASON = "x-failure-reason"
HEADER_MESSAGE_ID = "x-message-id"
HEADER_RETRY_COUNT = "x-retry-count"


class ChannelNotRunningError(MessagingError, RuntimeError):
    """Operation requires a started channel."""
    pass


@dataclass
class Subscription:
    topic: str
    handler: Callable
    name: str
    dead_letter: bool = False
    thread: Optional[threading.Thread] = field(default=None, repr=False)


class ReliableMessageChannel:
    """
    Publish / subscribe with retry, backoff and dead-lettering.

    THREAD SAFETY:
    - publish() may be called from any thread
    - subscribe() / bind() must be called before start()
    - handlers run on their subscription's worker thread
    """

    def __init__(
        self,
        broker: BrokerTransport,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[Clock] = None,
        retry_tracker: Optional[RetryTracker] = None,
        fetch_timeout: float = 0.5,
        *,
        daemon: Optional[bool] = None,
    ):
        self.broker = broker
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock or RealTimeClock()
        self.retry_tracker = retry_tracker or RetryTracker(clock=self.clock)
        self.fetch_timeout = fetch_timeout
        self.logger = get_logger(LogStream.MESSAGING)

        self._subscriptions: Dict[str, Subscription] = {}
        self._dlq_subscriptions: Dict[str, Subscription] = {}
        self._bindings: Dict[str, List[str]] = {}
        self._dead_letter_handler: Optional[DeadLetterHandler] = None

        self._stop_event = threading.Event()
        self._running = False

        # Under pytest, stray non-daemon threads can hang the test runner
        if daemon is None:
            daemon = bool(os.environ.get('PYTEST_CURRENT_TEST') or os.environ.get('PYTEST_RUNNING'))
        self._daemon = bool(daemon)

        self._stats_lock = threading.Lock()
        self._stats: Dict[str, int] = {
            "published": 0,
            "delivered": 0,
            "acked": 0,
            "handler_failures": 0,
            "retried": 0,
            "dead_lettered": 0,
            "decode_failures": 0,
            "publish_failures": 0,
            "ack_failures": 0,
            "dispatch_failures": 0,
        }

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def bind(self, exchange: str, topic: str) -> None:
        """Fan out every publish to *exchange* onto *topic* (one copy per bound topic)."""
        if self._running:
            raise RuntimeError("Cannot bind while channel is running")
        bound = self._bindings.setdefault(exchange, [])
        if topic not in bound:
            bound.append(topic)

    def subscribe(self, topic: str, handler: Handler, name: Optional[str] = None) -> None:
        """
        Register the single consumer of *topic*.

        Raises:
            RuntimeError: If the channel is running
            ValueError: If *topic* already has a consumer or is a dead-letter topic
        """
        if self._running:
            raise RuntimeError("Cannot subscribe while channel is running")
        if is_dead_letter_topic(topic):
            raise ValueError("Dead-letter topics are consumed via set_dead_letter_handler()")
        if topic in self._subscriptions:
            raise ValueError(f"Topic {topic} already has a subscriber")

        self._subscriptions[topic] = Subscription(
            topic=topic,
            handler=handler,
            name=name or getattr(handler, "__name__", topic),
        )
        self.logger.debug(f"Subscribed to {topic}", extra={"topic": topic})

    def subscribed_topics(self) -> List[str]:
        return sorted(self._subscriptions)

    def set_dead_letter_handler(self, handler: DeadLetterHandler) -> None:
        """handler(message, original_topic, reason) for every subscribed topic's DLQ."""
        if self._running:
            raise RuntimeError("Cannot change dead-letter handler while channel is running")
        self._dead_letter_handler = handler

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    def publish(self, topic: str, message: Message, delay_ms: int = 0) -> None:
        """
        Publish *message* to *topic* (or to every topic bound to it).

        Raises whatever the broker raises; callers decide whether a failed
        publish is retried.
        """
        targets = self._bindings.get(topic) or [topic]
        body = message.to_json()
        headers = {HEADER_MESSAGE_ID: message.message_id, HEADER_RETRY_COUNT: str(message.retry_count)}

        for target in targets:
            self.broker.publish(target, body, headers=headers, delay_ms=delay_ms)
            self._incr("published")

        self.logger.debug(
            f"Published {message.message_type.value} to {topic}",
            extra={
                "topic": topic,
                "targets": targets,
                "message_id": message.message_id,
                "retry_count": message.retry_count,
                "delay_ms": delay_ms,
            },
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._running:
            raise RuntimeError("Channel already running")

        self._stop_event.clear()
        self._running = True

        for sub in self._all_subscriptions():
            sub.thread = threading.Thread(
                target=self._worker_loop,
                args=(sub,),
                name=f"channel-{sub.topic}",
                daemon=self._daemon,
            )
            sub.thread.start()

        self.logger.info("ReliableMessageChannel started", extra={
            "topics": self.subscribed_topics(),
            "dead_letter_consumer": self._dead_letter_handler is not None,
        })

    def stop(self, timeout: float = 5.0) -> None:
        if not self._running:
            raise ChannelNotRunningError("Channel not running")

        self._stop_event.set()
        for sub in self._all_subscriptions():
            if sub.thread is not None:
                sub.thread.join(timeout=timeout)
                if sub.thread.is_alive():
                    self.logger.warning(
                        f"Worker for {sub.topic} did not stop cleanly",
                        extra={"topic": sub.topic, "timeout": timeout},
                    )
                sub.thread = None

        self._running = False
        self.logger.info("ReliableMessageChannel stopped", extra=self.get_stats())

    @property
    def is_running(self) -> bool:
        return self._running

    def _all_subscriptions(self) -> List[Subscription]:
        subs = list(self._subscriptions.values())
        if self._dead_letter_handler is not None:
            for topic in self._subscriptions:
                subs.append(self._dead_letter_subscription(topic))
        return subs

    def _dead_letter_subscription(self, topic: str) -> Subscription:
        key = dead_letter_topic(topic)
        sub = self._dlq_subscriptions.get(key)
        if sub is None:
            # cached so start() and stop() see the same thread handle
            sub = Subscription(topic=key, handler=self._dead_letter_handler, name=f"dlq:{topic}", dead_letter=True)
            self._dlq_subscriptions[key] = sub
        return sub

    def _worker_loop(self, sub: Subscription) -> None:
        while not self._stop_event.is_set():
            try:
                delivery = self.broker.fetch(sub.topic, timeout=self.fetch_timeout)
            except Exception as e:
                self.logger.error(
                    f"Fetch failed on {sub.topic}",
                    extra={"topic": sub.topic, "error": str(e)},
                    exc_info=True,
                )
                self._stop_event.wait(self.fetch_timeout)
                continue

            if delivery is None:
                continue

            try:
                self._dispatch(sub, delivery)
            except Exception as e:
                self._incr("dispatch_failures")
                self.logger.error(
                    f"Dispatch failed on {sub.topic}; broker will redeliver",
                    extra={"topic": sub.topic, "error": str(e)},
                    exc_info=True,
                )

    # ------------------------------------------------------------------
    # Synchronous processing
    # ------------------------------------------------------------------

    def drain(self, topic: Optional[str] = None, max_deliveries: int = 10_000) -> int:
        """
        Process every delivery that is ready now, on the calling thread.

        Covers *topic* (or all subscribed topics) and the matching dead-letter
        topics. Delayed retries that are not yet due stay queued. Must not be
        combined with running workers.

        Returns:
            Number of deliveries processed
        """
        if self._running:
            raise RuntimeError("drain() is for a stopped channel")

        subs = [s for s in self._all_subscriptions()
                if topic is None or s.topic in (topic, dead_letter_topic(topic))]
        processed = 0
        progressed = True
        while progressed and processed < max_deliveries:
            progressed = False
            for sub in subs:
                delivery = self.broker.fetch(sub.topic, timeout=0.0)
                if delivery is None:
                    continue
                self._dispatch(sub, delivery)
                processed += 1
                progressed = True
        return processed

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, sub: Subscription, delivery: Delivery) -> None:
        self._incr("delivered")
        try:
            message = Message.from_json(delivery.body)
        except MessageDecodeError as e:
            self._incr("decode_failures")
            message = Message(
                message_type=MessageType.UNDECODABLE,
                payload={"raw_body": delivery.body},
                message_id=delivery.headers.get(HEADER_MESSAGE_ID) or str(uuid.uuid4()),
                retry_count=self.retry_policy.max_retries,
            )
            self.logger.error(
                f"Undecodable message on {sub.topic}",
                extra={"topic": sub.topic, "error": str(e)},
            )
            if sub.dead_letter:
                self._handle_dead_letter(sub, delivery, message)
            else:
                self._route_to_dead_letter(sub.topic, delivery, message, f"MessageDecodeError: {e}")
            return

        if sub.dead_letter:
            self._handle_dead_letter(sub, delivery, message)
            return

        with LogContext(message.message_id):
            try:
                sub.handler(message)
            except Exception as e:
                self._incr("handler_failures")
                self._on_handler_failure(sub, delivery, message, e)
                return

        if self._ack(delivery, sub.topic):
            self.retry_tracker.forget(message.message_id)
            self._incr("acked")

    def _on_handler_failure(
        self, sub: Subscription, delivery: Delivery, message: Message, error: Exception
    ) -> None:
        reason = f"{type(error).__name__}: {error}"
        self.retry_tracker.record_failure(message.message_id, sub.topic, reason)

        if self.retry_policy.should_retry(message.retry_count):
            delay_ms = self.retry_policy.backoff.delay_ms(message.retry_count)
            retry = message.next_retry(self.clock.now())
            self.logger.warning(
                f"Handler {sub.name} failed, retry {retry.retry_count}/{self.retry_policy.max_retries} in {delay_ms}ms",
                extra={
                    "topic": sub.topic,
                    "message_id": message.message_id,
                    "retry_count": retry.retry_count,
                    "delay_ms": delay_ms,
                    "error": reason,
                },
                exc_info=(type(error), error, error.__traceback__),
            )
            if self._republish(sub.topic, delivery, retry, delay_ms, headers={}):
                self._incr("retried")
            return

        self._route_to_dead_letter(sub.topic, delivery, message, reason)

    def _route_to_dead_letter(self, topic: str, delivery: Delivery, message: Message, reason: str) -> None:
        dlq = dead_letter_topic(topic)
        self.logger.error(
            f"Message {message.message_id} exhausted retries on {topic}, routing to {dlq}",
            extra={
                "topic": topic,
                "dead_letter_topic": dlq,
                "message_id": message.message_id,
                "retry_count": message.retry_count,
                "reason": reason,
            },
        )
        if self._republish(dlq, delivery, message, 0, headers={
            HEADER_ORIGINAL_TOPIC: topic,
            HEADER_FAILURE_REASON: reason,
        }):
            # tracker entry stays until the dead-letter consumer has recorded it
            self._incr("dead_lettered")

    def _republish(
        self, topic: str, delivery: Delivery, message: Message, delay_ms: int, headers: Dict[str, str]
    ) -> bool:
        """Publish the follow-up copy, then ack the original. On publish failure, requeue the original."""
        all_headers = {
            HEADER_MESSAGE_ID: message.message_id,
            HEADER_RETRY_COUNT: str(message.retry_count),
            **headers,
        }
        try:
            self.broker.publish(topic, message.to_json(), headers=all_headers, delay_ms=delay_ms)
        except Exception as e:
            self._incr("publish_failures")
            self.logger.error(
                f"Republish to {topic} failed; original delivery requeued",
                extra={"topic": topic, "message_id": message.message_id, "error": str(e)},
                exc_info=True,
            )
            self._nack(delivery, topic)
            return False

        # the follow-up copy is out; a failed ack only costs a duplicate later
        self._ack(delivery, topic)
        return True

    def _handle_dead_letter(self, sub: Subscription, delivery: Delivery, message: Message) -> None:
        source = delivery.headers.get(HEADER_ORIGINAL_TOPIC) or original_topic(sub.topic)
        reason = delivery.headers.get(HEADER_FAILURE_REASON, "unknown")
        try:
            sub.handler(message, source, reason)
        except Exception as e:
            # The dead-letter handler is not expected to raise; park the
            # message on its DLQ again with the longest backoff
            self.logger.error(
                f"Dead-letter handler failed for {message.message_id}",
                extra={"topic": sub.topic, "message_id": message.message_id, "error": str(e)},
                exc_info=True,
            )
            self._republish(sub.topic, delivery, message, self.retry_policy.backoff.max_delay_ms, dict(delivery.headers))
            return
        if self._ack(delivery, sub.topic):
            self._incr("acked")

    def _ack(self, delivery: Delivery, topic: str) -> bool:
        try:
            self.broker.ack(delivery)
        except Exception as e:
            self._incr("ack_failures")
            self.logger.error(
                f"Ack failed on {topic}; broker will redeliver",
                extra={"topic": topic, "error": str(e)},
                exc_info=True,
            )
            return False
        return True

    def _nack(self, delivery: Delivery, topic: str) -> None:
        try:
            self.broker.nack(delivery, requeue=True)
        except Exception as e:
            self._incr("ack_failures")
            self.logger.error(
                f"Nack failed on {topic}; broker will redeliver",
                extra={"topic": topic, "error": str(e)},
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def _incr(self, key: str, n: int = 1) -> None:
        with self._stats_lock:
            self._stats[key] += n

    def get_stats(self) -> Dict:
        with self._stats_lock:
            stats = dict(self._stats)
        stats["running"] = self._running
        stats["subscriptions"] = len(self._subscriptions)
        stats["retry_tracker"] = self.retry_tracker.get_stats()
        return stats
