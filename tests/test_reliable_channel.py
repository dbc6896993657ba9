"""
Reliable message channel: retry, backoff, dead-letter.

INVARIANT:
    1. A handler failure with retry_count < max_retries republishes the SAME
       message_id to the SAME topic with retry_count + 1 and delay
       1000 * 2**retry_count ms.
    2. The failure at retry_count == max_retries goes to <topic>.dlq exactly
       once, with the original topic and reason attached, and is never
       redelivered to the main handler.
    3. A delivery is acked only after success or after its follow-up copy
       was published.
    4. Undecodable bodies skip the retry path and go straight to the DLQ.
    5. A broker that fails an ack or nack never kills a worker; the delivery
       stays unacked for the broker to redeliver.

WHY THIS MATTERS:
    Retrying forever blocks a queue; retrying zero times loses notifications.
    The dead-letter copy is the operator's only record of a lost message.
"""

import threading
import time
from datetime import timedelta

import pytest

from campus.messaging import (
    ReliableMessageChannel,
    InMemoryBroker,
    RetryPolicy,
    RetryTracker,
    Message,
    MessageType,
    HEADER_ORIGINAL_TOPIC,
    HEADER_FAILURE_REASON,
    ChannelNotRunningError,
    BrokerError,
)
from campus.messaging import topics


class FlakyHandler:
    """Fails the first *failures* calls, then succeeds."""

    def __init__(self, failures=0):
        self.failures = failures
        self.calls = []
        self.lock = threading.Lock()

    def __call__(self, message):
        with self.lock:
            self.calls.append(message)
            if len(self.calls) <= self.failures:
                raise ConnectionError(f"downstream unavailable (call {len(self.calls)})")


class DeadLetterRecorder:
    def __init__(self):
        self.records = []

    def __call__(self, message, original_topic, reason):
        self.records.append((message, original_topic, reason))


class FailingPublishBroker(InMemoryBroker):
    """Rejects publishes to topics in *broken*."""

    def __init__(self, clock, broken):
        super().__init__(clock=clock)
        self.broken = set(broken)

    def publish(self, topic, body, headers=None, delay_ms=0):
        if topic in self.broken:
            raise ConnectionError("broker connection lost")
        super().publish(topic, body, headers=headers, delay_ms=delay_ms)


class FailingAckBroker(FailingPublishBroker):
    """The first *ack_failures* acks and *nack_failures* nacks raise, leaving the delivery unacked."""

    def __init__(self, clock, ack_failures=0, nack_failures=0, broken=()):
        super().__init__(clock, broken)
        self.ack_failures = ack_failures
        self.nack_failures = nack_failures

    def ack(self, delivery):
        if self.ack_failures > 0:
            self.ack_failures -= 1
            raise BrokerError("channel closed during ack")
        super().ack(delivery)

    def nack(self, delivery, requeue=True):
        if self.nack_failures > 0:
            self.nack_failures -= 1
            raise BrokerError("channel closed during nack")
        super().nack(delivery, requeue=requeue)


class ForgetfulTracker(RetryTracker):
    """Raises once from forget(), outside every handler-level guard."""

    def __init__(self, clock):
        super().__init__(clock=clock)
        self.raised = False

    def forget(self, message_id):
        if not self.raised:
            self.raised = True
            raise KeyError(message_id)
        super().forget(message_id)


@pytest.fixture
def broker(clock):
    return InMemoryBroker(clock=clock)


@pytest.fixture
def dead_letters():
    return DeadLetterRecorder()


def _channel(broker, clock, handler, dead_letters=None, topic=topics.NOTIFICATION):
    channel = ReliableMessageChannel(broker, RetryPolicy(), clock=clock, retry_tracker=RetryTracker(clock=clock))
    channel.subscribe(topic, handler)
    if dead_letters is not None:
        channel.set_dead_letter_handler(dead_letters)
    return channel


def _drain_with_backoff(channel, clock, rounds=6):
    """Drain, then step the clock past the longest pending delay, repeatedly."""
    total = channel.drain()
    for _ in range(rounds):
        clock.advance(seconds=5)
        total += channel.drain()
    return total


def _notification():
    return Message(MessageType.NOTIFICATION, {"user_id": 7, "content": "hello"})


# ===================================================================
# 1. Success path
# ===================================================================

class TestSuccess:

    def test_delivered_once_and_acked(self, broker, clock):
        handler = FlakyHandler()
        channel = _channel(broker, clock, handler)
        message = _notification()

        channel.publish(topics.NOTIFICATION, message)
        assert channel.drain() == 1

        assert [m.message_id for m in handler.calls] == [message.message_id]
        assert broker.unacked_count() == 0
        assert channel.get_stats()["acked"] == 1

    def test_recovery_after_transient_failure(self, broker, clock, dead_letters):
        handler = FlakyHandler(failures=2)
        channel = _channel(broker, clock, handler, dead_letters)
        channel.publish(topics.NOTIFICATION, _notification())

        _drain_with_backoff(channel, clock)

        assert [m.retry_count for m in handler.calls] == [0, 1, 2]
        assert dead_letters.records == []
        assert len(channel.retry_tracker) == 0


# ===================================================================
# 2. Retry schedule and dead-lettering
# ===================================================================

class TestRetryExhaustion:

    def test_four_deliveries_then_dead_letter(self, broker, clock, dead_letters):
        handler = FlakyHandler(failures=100)
        channel = _channel(broker, clock, handler, dead_letters)
        message = _notification()
        channel.publish(topics.NOTIFICATION, message)

        _drain_with_backoff(channel, clock)

        assert [m.retry_count for m in handler.calls] == [0, 1, 2, 3]
        assert {m.message_id for m in handler.calls} == {message.message_id}
        assert {m.create_time for m in handler.calls} == {message.create_time}

        assert len(dead_letters.records) == 1
        dead, source, reason = dead_letters.records[0]
        assert dead.message_id == message.message_id
        assert dead.retry_count == 3
        assert source == topics.NOTIFICATION
        assert reason.startswith("ConnectionError")

        stats = channel.get_stats()
        assert stats["retried"] == 3
        assert stats["dead_lettered"] == 1
        assert stats["handler_failures"] == 4

    def test_retry_delays_follow_backoff(self, broker, clock, dead_letters):
        channel = _channel(broker, clock, FlakyHandler(failures=100), dead_letters)
        channel.publish(topics.NOTIFICATION, _notification())

        _drain_with_backoff(channel, clock)

        delays = [r.delay_ms for r in broker.publish_history(topics.NOTIFICATION)]
        assert delays == [0, 1000, 2000, 4000]

        dlq_history = broker.publish_history(topics.dead_letter_topic(topics.NOTIFICATION))
        assert len(dlq_history) == 1
        headers = dict(dlq_history[0].headers)
        assert headers[HEADER_ORIGINAL_TOPIC] == topics.NOTIFICATION
        assert HEADER_FAILURE_REASON in headers

    def test_retry_not_delivered_before_its_delay(self, broker, clock):
        handler = FlakyHandler(failures=1)
        channel = _channel(broker, clock, handler)
        channel.publish(topics.NOTIFICATION, _notification())

        channel.drain()
        clock.advance(milliseconds=999)
        assert channel.drain() == 0
        clock.advance(milliseconds=1)
        assert channel.drain() == 1
        assert len(handler.calls) == 2

    def test_no_redelivery_after_dead_letter(self, broker, clock, dead_letters):
        handler = FlakyHandler(failures=100)
        channel = _channel(broker, clock, handler, dead_letters)
        channel.publish(topics.NOTIFICATION, _notification())

        _drain_with_backoff(channel, clock)
        calls = len(handler.calls)
        clock.advance(hours=1)
        assert channel.drain() == 0
        assert len(handler.calls) == calls
        assert broker.depth(topics.NOTIFICATION) == 0

    def test_dead_letter_waits_on_dlq_without_handler(self, broker, clock):
        channel = _channel(broker, clock, FlakyHandler(failures=100))
        channel.publish(topics.NOTIFICATION, _notification())

        _drain_with_backoff(channel, clock)
        assert broker.depth(topics.dead_letter_topic(topics.NOTIFICATION)) == 1

    def test_tracker_entry_kept_for_dead_letter_consumer(self, broker, clock, dead_letters):
        channel = _channel(broker, clock, FlakyHandler(failures=100), dead_letters)
        message = _notification()
        channel.publish(topics.NOTIFICATION, message)

        _drain_with_backoff(channel, clock)
        entry = channel.retry_tracker.get(message.message_id)
        assert entry.failures == 4
        assert entry.first_failure_time < entry.last_failure_time


# ===================================================================
# 3. Poison messages and publish failures
# ===================================================================

class TestPoisonAndBrokerFailures:

    def test_undecodable_body_goes_straight_to_dead_letter(self, broker, clock, dead_letters):
        handler = FlakyHandler()
        channel = _channel(broker, clock, handler, dead_letters)

        broker.publish(topics.NOTIFICATION, "{not json", headers={"x-message-id": "raw-1"})
        channel.drain()

        assert handler.calls == []
        dead, source, reason = dead_letters.records[0]
        assert dead.message_type is MessageType.UNDECODABLE
        assert dead.message_id == "raw-1"
        assert dead.payload["raw_body"] == "{not json"
        assert source == topics.NOTIFICATION
        assert reason.startswith("MessageDecodeError")
        assert channel.get_stats()["decode_failures"] == 1

    def test_failed_retry_publish_requeues_original(self, clock):
        broker = FailingPublishBroker(clock, broken=set())
        handler = FlakyHandler(failures=1)
        channel = _channel(broker, clock, handler)
        channel.publish(topics.NOTIFICATION, _notification())

        broker.broken.add(topics.NOTIFICATION)
        channel.drain(max_deliveries=1)
        assert channel.get_stats()["publish_failures"] == 1
        assert broker.depth(topics.NOTIFICATION) == 1

        broker.broken.clear()
        channel.drain()
        assert len(handler.calls) == 2
        assert broker.unacked_count() == 0

    def test_dead_letter_handler_failure_parks_message(self, broker, clock):
        def broken_dead_letter_handler(message, original_topic, reason):
            raise RuntimeError("audit store down")

        channel = _channel(broker, clock, FlakyHandler(failures=100), broken_dead_letter_handler)
        channel.publish(topics.NOTIFICATION, _notification())

        channel.drain()
        for _ in range(3):
            clock.advance(seconds=5)
            channel.drain()

        dlq = topics.dead_letter_topic(topics.NOTIFICATION)
        assert broker.depth(dlq) == 1
        assert broker.publish_history(dlq)[-1].delay_ms == RetryPolicy().backoff.max_delay_ms

    def test_ack_failure_leaves_delivery_for_redelivery(self, clock):
        broker = FailingAckBroker(clock, ack_failures=1)
        handler = FlakyHandler()
        channel = _channel(broker, clock, handler)
        message = _notification()
        channel.publish(topics.NOTIFICATION, message)

        assert channel.drain() == 1
        stats = channel.get_stats()
        assert stats["ack_failures"] == 1
        assert stats["acked"] == 0
        assert broker.unacked_count() == 1

        assert broker.recover_unacked() == 1
        channel.drain()
        assert [m.message_id for m in handler.calls] == [message.message_id] * 2
        assert channel.get_stats()["acked"] == 1
        assert broker.unacked_count() == 0

    def test_nack_failure_after_failed_republish_is_contained(self, clock):
        broker = FailingAckBroker(clock, nack_failures=1)
        channel = _channel(broker, clock, FlakyHandler(failures=1))
        channel.publish(topics.NOTIFICATION, _notification())
        broker.broken.add(topics.NOTIFICATION)

        channel.drain(max_deliveries=1)

        stats = channel.get_stats()
        assert stats["publish_failures"] == 1
        assert stats["ack_failures"] == 1
        assert stats["retried"] == 0
        assert broker.unacked_count() == 1

    def test_ack_failure_on_dead_letter_topic_is_contained(self, clock, dead_letters):
        broker = FailingAckBroker(clock, ack_failures=1)
        channel = _channel(broker, clock, FlakyHandler(), dead_letters)
        dlq = topics.dead_letter_topic(topics.NOTIFICATION)
        broker.publish(dlq, _notification().to_json(), headers={
            HEADER_ORIGINAL_TOPIC: topics.NOTIFICATION,
            HEADER_FAILURE_REASON: "ConnectionError: downstream unavailable",
        })

        assert channel.drain() == 1

        assert len(dead_letters.records) == 1
        assert channel.get_stats()["ack_failures"] == 1
        assert broker.unacked_count() == 1


# ===================================================================
# 4. Fan-out and setup rules
# ===================================================================

class TestBindingAndSetup:

    def test_bound_exchange_fans_out(self, broker, clock):
        notify, stats = FlakyHandler(), FlakyHandler()
        channel = ReliableMessageChannel(broker, clock=clock)
        channel.bind(topics.TIMEOUT_EVENTS, topics.TIMEOUT_NOTIFY)
        channel.bind(topics.TIMEOUT_EVENTS, topics.TIMEOUT_STATISTICS)
        channel.subscribe(topics.TIMEOUT_NOTIFY, notify)
        channel.subscribe(topics.TIMEOUT_STATISTICS, stats)

        message = Message(MessageType.TIMEOUT_EVENT, {})
        channel.publish(topics.TIMEOUT_EVENTS, message)
        channel.drain()

        assert [m.message_id for m in notify.calls] == [message.message_id]
        assert [m.message_id for m in stats.calls] == [message.message_id]

    def test_one_failing_queue_does_not_redeliver_to_the_other(self, broker, clock):
        notify, stats = FlakyHandler(failures=1), FlakyHandler()
        channel = ReliableMessageChannel(broker, clock=clock)
        channel.bind(topics.TIMEOUT_EVENTS, topics.TIMEOUT_NOTIFY)
        channel.bind(topics.TIMEOUT_EVENTS, topics.TIMEOUT_STATISTICS)
        channel.subscribe(topics.TIMEOUT_NOTIFY, notify)
        channel.subscribe(topics.TIMEOUT_STATISTICS, stats)

        channel.publish(topics.TIMEOUT_EVENTS, Message(MessageType.TIMEOUT_EVENT, {}))
        _drain_with_backoff(channel, clock, rounds=2)

        assert len(notify.calls) == 2
        assert len(stats.calls) == 1

    def test_single_consumer_per_topic(self, broker, clock):
        channel = _channel(broker, clock, FlakyHandler())
        with pytest.raises(ValueError):
            channel.subscribe(topics.NOTIFICATION, FlakyHandler())
        with pytest.raises(ValueError):
            channel.subscribe("notification.queue.dlq", FlakyHandler())

    def test_stop_requires_start(self, broker, clock):
        channel = _channel(broker, clock, FlakyHandler())
        with pytest.raises(ChannelNotRunningError):
            channel.stop()


# ===================================================================
# 5. Worker threads
# ===================================================================

def test_workers_process_and_stop(clock):
    broker = InMemoryBroker(clock=clock)
    handler = FlakyHandler()
    channel = ReliableMessageChannel(broker, clock=clock, fetch_timeout=0.05, daemon=True)
    channel.subscribe(topics.NOTIFICATION, handler)
    channel.start()
    try:
        with pytest.raises(RuntimeError):
            channel.drain()
        for _ in range(3):
            channel.publish(topics.NOTIFICATION, _notification())

        deadline = time.monotonic() + 5
        while len(handler.calls) < 3 and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        channel.stop(timeout=2)

    assert len(handler.calls) == 3
    assert not channel.is_running


def test_workers_pick_up_retry_when_clock_advances(clock):
    broker = InMemoryBroker(clock=clock)
    handler = FlakyHandler(failures=1)
    channel = ReliableMessageChannel(broker, clock=clock, fetch_timeout=0.05, daemon=True)
    channel.subscribe(topics.NOTIFICATION, handler)
    channel.start()
    try:
        channel.publish(topics.NOTIFICATION, _notification())
        deadline = time.monotonic() + 5
        while channel.get_stats()["retried"] < 1 and time.monotonic() < deadline:
            time.sleep(0.01)

        clock.advance(timedelta(seconds=1))
        deadline = time.monotonic() + 5
        while len(handler.calls) < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        channel.stop(timeout=2)

    assert [m.retry_count for m in handler.calls] == [0, 1]


def test_worker_survives_ack_failure(clock):
    broker = FailingAckBroker(clock, ack_failures=1)
    handler = FlakyHandler()
    channel = ReliableMessageChannel(broker, clock=clock, fetch_timeout=0.05, daemon=True)
    channel.subscribe(topics.NOTIFICATION, handler)
    channel.start()
    try:
        for _ in range(3):
            channel.publish(topics.NOTIFICATION, _notification())
        deadline = time.monotonic() + 5
        while channel.get_stats()["acked"] < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert channel.is_running
        assert all(sub.thread.is_alive() for sub in channel._all_subscriptions())
    finally:
        channel.stop(timeout=2)

    assert len(handler.calls) == 3
    stats = channel.get_stats()
    assert stats["ack_failures"] == 1
    assert stats["acked"] == 2


def test_worker_survives_unexpected_dispatch_error(clock):
    broker = InMemoryBroker(clock=clock)
    handler = FlakyHandler()
    channel = ReliableMessageChannel(
        broker, clock=clock, retry_tracker=ForgetfulTracker(clock), fetch_timeout=0.05, daemon=True,
    )
    channel.subscribe(topics.NOTIFICATION, handler)
    channel.start()
    try:
        channel.publish(topics.NOTIFICATION, _notification())
        channel.publish(topics.NOTIFICATION, _notification())
        deadline = time.monotonic() + 5
        while len(handler.calls) < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        channel.stop(timeout=2)

    assert len(handler.calls) == 2
    assert channel.get_stats()["dispatch_failures"] == 1
