"""
Notification consumers.

``TimeoutNotificationConsumer`` turns timeout transitions into user messages;
``NotificationConsumer`` delivers generic notification-queue messages,
``ChatConsumer`` chat messages and ``PaymentTimeoutConsumer`` the notice for
an order closed unpaid. All of them reach users only through the
``UserMessenger`` collaborator. A messenger failure propagates to the
channel, which retries and eventually dead-letters the message.
"""

from typing import Protocol, List, Optional, Dict, Any

from campus.logging import get_logger, LogStream
from campus.messaging.message import Message, MessageType, MessagingError
from campus.timeout.events import TimeoutTransitionEvent
from campus.timeout.status import TimeoutPhase


class UserMessenger(Protocol):
    def send_user_message(self, user_id: int, content: str, category: str) -> None:
        ...


class LoggingUserMessenger:
    """Messenger that only logs; used when no delivery transport is wired."""

    def __init__(self):
        self.logger = get_logger(LogStream.MESSAGING)

    def send_user_message(self, user_id: int, content: str, category: str) -> None:
        self.logger.info(
            f"User message to {user_id}: {content}",
            extra={"user_id": user_id, "category": category},
        )


class UnexpectedMessageTypeError(MessagingError):
    pass


CATEGORY_TIMEOUT_WARNING = "TIMEOUT_WARNING"
CATEGORY_TIMEOUT = "ORDER_TIMEOUT"
CATEGORY_INTERVENTION = "PLATFORM_INTERVENTION"
CATEGORY_CHAT = "CHAT"
CATEGORY_PAYMENT_TIMEOUT = "ORDER_PAYMENT_TIMEOUT"


class TimeoutNotificationConsumer:
    """
    Handler for the timeout notification queue.

    Who is told:
    - pickup / delivery warnings: the assigned handler
    - pickup / delivery timeouts: the handler and the order owner
    - confirmation phase: the order owner (they have to confirm receipt)
    - intervention: the owner and the handler
    """

    def __init__(self, messenger: UserMessenger):
        self.messenger = messenger
        self.logger = get_logger(LogStream.MESSAGING)

    def __call__(self, message: Message) -> None:
        if message.message_type is not MessageType.TIMEOUT_EVENT:
            raise UnexpectedMessageTypeError(
                f"Expected TIMEOUT_EVENT, got {message.message_type.value}"
            )
        event = TimeoutTransitionEvent.from_dict(message.payload)

        if event.intervention_triggered:
            content = (
                f"Order {event.order_number} has timed out {event.timeout_count} times "
                f"and has been handed over to the platform."
            )
            for user_id in self._recipients(event, include_owner=True):
                self.messenger.send_user_message(user_id, content, CATEGORY_INTERVENTION)
            return

        status = event.to_status
        if not status.requires_notification:
            return

        content = (
            f"Order {event.order_number}: {status.label}. {status.message}. "
            f"Suggested action: {status.handling_suggestion}."
        )
        category = CATEGORY_TIMEOUT if status.is_timeout else CATEGORY_TIMEOUT_WARNING

        if status.phase is TimeoutPhase.CONFIRMATION:
            recipients = [event.owning_user]
        else:
            recipients = self._recipients(event, include_owner=status.is_timeout)

        for user_id in recipients:
            self.messenger.send_user_message(user_id, content, category)

        self.logger.debug(
            f"Timeout notification sent for {event.order_number}",
            extra={"order_number": event.order_number, "recipients": recipients, "category": category},
        )

    @staticmethod
    def _recipients(event: TimeoutTransitionEvent, include_owner: bool) -> List[int]:
        recipients = []
        if event.assigned_handler is not None:
            recipients.append(event.assigned_handler)
        if include_owner or not recipients:
            if event.owning_user not in recipients:
                recipients.append(event.owning_user)
        return recipients


class NotificationConsumer:
    """Handler for the generic notification queue."""

    def __init__(self, messenger: UserMessenger):
        self.messenger = messenger

    def __call__(self, message: Message) -> None:
        if message.message_type is not MessageType.NOTIFICATION:
            raise UnexpectedMessageTypeError(
                f"Expected NOTIFICATION, got {message.message_type.value}"
            )
        payload = message.payload
        user_id, content = _require(payload, "user_id", "content")
        self.messenger.send_user_message(user_id, content, payload.get("category", "SYSTEM"))


class ChatConsumer:
    """Handler for the chat queue: delivers one chat line to its receiver."""

    def __init__(self, messenger: UserMessenger):
        self.messenger = messenger

    def __call__(self, message: Message) -> None:
        if message.message_type is not MessageType.CHAT:
            raise UnexpectedMessageTypeError(
                f"Expected CHAT, got {message.message_type.value}"
            )
        receiver_id, content = _require(message.payload, "receiver_id", "content")
        self.messenger.send_user_message(receiver_id, content, CATEGORY_CHAT)


class PaymentOrders(Protocol):
    def close_unpaid(self, order_number: str) -> bool:
        """
        Close the order for non-payment if it is still waiting.

        True when the order ends up closed for non-payment, including by an
        earlier delivery of the same message; False when it was paid.
        """
        ...


class PaymentTimeoutConsumer:
    """
    Handler for the payment-timeout queue.

    The payment side (gateway call, local order status) is a collaborator;
    without one every message is treated as a closed order. An order that was
    paid in the meantime gets no notice. A redelivery after a failed notice
    finds the order already closed and sends the notice again.
    """

    def __init__(self, messenger: UserMessenger, payments: Optional[PaymentOrders] = None):
        self.messenger = messenger
        self.payments = payments
        self.logger = get_logger(LogStream.MESSAGING)

    def __call__(self, message: Message) -> None:
        if message.message_type is not MessageType.PAYMENT_TIMEOUT:
            raise UnexpectedMessageTypeError(
                f"Expected PAYMENT_TIMEOUT, got {message.message_type.value}"
            )
        order_number, user_id = _require(message.payload, "order_number", "user_id")

        if self.payments is not None and not self.payments.close_unpaid(order_number):
            self.logger.info(
                f"Order {order_number} was paid, no cancellation notice",
                extra={"order_number": order_number},
            )
            return

        self.messenger.send_user_message(
            user_id,
            f"Order #{order_number} was cancelled because it was not paid in time.",
            CATEGORY_PAYMENT_TIMEOUT,
        )


def _require(payload: Dict[str, Any], *keys: str) -> List[Any]:
    try:
        return [payload[key] for key in keys]
    except KeyError as e:
        raise MessagingError(f"Payload missing {e}") from e
