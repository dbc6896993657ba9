"""
Timeout notification consumer.

INVARIANT:
    Recipients follow the phase: warnings reach the handler, timeouts the
    handler and owner, confirmation-phase transitions the owner only, and an
    intervention reaches both. A messenger failure propagates so the channel
    can retry.
"""

import pytest

from campus.messaging import (
    Message,
    MessageType,
    MessagingError,
    TimeoutNotificationConsumer,
    NotificationConsumer,
    IdempotentHandler,
)
from campus.messaging.notifications import (
    UnexpectedMessageTypeError,
    CATEGORY_TIMEOUT,
    CATEGORY_TIMEOUT_WARNING,
    CATEGORY_INTERVENTION,
)
from campus.timeout import TimeoutTransitionEvent, TimeoutStatus, OrderType
from tests.conftest import START

OWNER, HANDLER = 100, 200


def _event_message(to_status, from_status=TimeoutStatus.NORMAL, handler=HANDLER, intervention=False, count=0):
    event = TimeoutTransitionEvent(
        order_number="MA-00001",
        order_type=OrderType.MAIL,
        from_status=from_status,
        to_status=to_status,
        timestamp=START,
        order_id=1,
        owning_user=OWNER,
        assigned_handler=handler,
        timeout_count=count,
        intervention_triggered=intervention,
    )
    return Message(MessageType.TIMEOUT_EVENT, event.to_dict())


@pytest.fixture
def consumer(messenger):
    return TimeoutNotificationConsumer(messenger)


class TestRecipients:

    def test_pickup_warning_goes_to_handler(self, consumer, messenger):
        consumer(_event_message(TimeoutStatus.PICKUP_TIMEOUT_WARNING))
        assert messenger.recipients() == [HANDLER]
        assert messenger.sent[0][2] == CATEGORY_TIMEOUT_WARNING
        assert "MA-00001" in messenger.sent[0][1]

    def test_unassigned_warning_falls_back_to_owner(self, consumer, messenger):
        consumer(_event_message(TimeoutStatus.PICKUP_TIMEOUT_WARNING, handler=None))
        assert messenger.recipients() == [OWNER]

    def test_delivery_timeout_goes_to_handler_and_owner(self, consumer, messenger):
        consumer(_event_message(TimeoutStatus.DELIVERY_TIMEOUT, count=1))
        assert messenger.recipients() == [HANDLER, OWNER]
        assert {category for _, _, category in messenger.sent} == {CATEGORY_TIMEOUT}

    @pytest.mark.parametrize("status", [
        TimeoutStatus.CONFIRMATION_TIMEOUT_WARNING,
        TimeoutStatus.CONFIRMATION_TIMEOUT,
    ])
    def test_confirmation_phase_goes_to_owner(self, consumer, messenger, status):
        consumer(_event_message(status))
        assert messenger.recipients() == [OWNER]

    def test_intervention_goes_to_both(self, consumer, messenger):
        consumer(_event_message(TimeoutStatus.PICKUP_TIMEOUT, intervention=True, count=3))
        assert messenger.recipients() == [HANDLER, OWNER]
        assert all(category == CATEGORY_INTERVENTION for _, _, category in messenger.sent)
        assert "3 times" in messenger.sent[0][1]

    def test_reset_to_normal_sends_nothing(self, consumer, messenger):
        consumer(_event_message(TimeoutStatus.NORMAL, from_status=TimeoutStatus.PICKUP_TIMEOUT))
        assert messenger.sent == []


class TestFailures:

    def test_wrong_message_type_rejected(self, consumer):
        with pytest.raises(UnexpectedMessageTypeError):
            consumer(Message(MessageType.CHAT, {}))

    def test_messenger_failure_propagates(self, consumer, messenger):
        messenger.failures_remaining = 1
        with pytest.raises(ConnectionError):
            consumer(_event_message(TimeoutStatus.PICKUP_TIMEOUT_WARNING))


class TestNotificationConsumer:

    def test_delivers_payload(self, messenger):
        NotificationConsumer(messenger)(
            Message(MessageType.NOTIFICATION, {"user_id": 5, "content": "hi", "category": "ORDER"})
        )
        assert messenger.sent == [(5, "hi", "ORDER")]

    def test_missing_field_is_an_error(self, messenger):
        with pytest.raises(MessagingError):
            NotificationConsumer(messenger)(Message(MessageType.NOTIFICATION, {"content": "hi"}))


class TestIdempotentHandler:

    def test_duplicate_delivery_skipped(self, messenger):
        handler = IdempotentHandler(TimeoutNotificationConsumer(messenger))
        message = _event_message(TimeoutStatus.PICKUP_TIMEOUT_WARNING)

        handler(message)
        handler(message.next_retry(START))
        assert messenger.recipients() == [HANDLER]
        assert handler.duplicates_skipped == 1

    def test_failed_attempt_not_remembered(self, messenger):
        handler = IdempotentHandler(TimeoutNotificationConsumer(messenger))
        message = _event_message(TimeoutStatus.PICKUP_TIMEOUT_WARNING)
        messenger.failures_remaining = 1

        with pytest.raises(ConnectionError):
            handler(message)
        assert not handler.seen(message.message_id)

        handler(message.next_retry(START))
        assert messenger.recipients() == [HANDLER]
