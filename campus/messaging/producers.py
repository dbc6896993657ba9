"""
Typed producers.

Each helper builds a Message of the right category and publishes it to that
category's topic, so callers never pick topics by hand.
"""

from decimal import Decimal
from typing import Optional, Dict, Any

from campus.messaging.channel import ReliableMessageChannel
from campus.messaging.message import Message, MessageType
from campus.messaging.topics import topic_for, TIMEOUT_EVENTS
from campus.timeout.events import TimeoutTransitionEvent


class MessageProducer:

    def __init__(self, channel: ReliableMessageChannel):
        self.channel = channel

    def send(self, message_type: MessageType, payload: Dict[str, Any], description: str = "") -> Message:
        message = Message(message_type=message_type, payload=payload, description=description)
        self.channel.publish(topic_for(message_type), message)
        return message

    # -- notifications / chat -------------------------------------------

    def send_notification(self, user_id: int, content: str, category: str = "SYSTEM") -> Message:
        return self.send(
            MessageType.NOTIFICATION,
            {"user_id": user_id, "content": content, "category": category},
            description=f"{category} notification",
        )

    def send_chat(self, sender_id: int, receiver_id: int, content: str, conversation_id: Optional[str] = None) -> Message:
        return self.send(
            MessageType.CHAT,
            {
                "sender_id": sender_id,
                "receiver_id": receiver_id,
                "content": content,
                "conversation_id": conversation_id,
            },
        )

    def send_payment_timeout(self, order_number: str, user_id: int) -> Message:
        return self.send(
            MessageType.PAYMENT_TIMEOUT,
            {"order_number": order_number, "user_id": user_id},
        )

    # -- wallet ----------------------------------------------------------

    def send_wallet_init(self, user_id: int) -> Message:
        return self.send(MessageType.WALLET_INIT, {"user_id": user_id})

    def send_balance_change(self, user_id: int, amount: Decimal, reason: str, order_number: Optional[str] = None) -> Message:
        return self.send(
            MessageType.BALANCE_CHANGE,
            {"user_id": user_id, "amount": str(amount), "reason": reason, "order_number": order_number},
        )

    def send_transfer(self, from_user: int, to_user: int, amount: Decimal, reason: str) -> Message:
        return self.send(
            MessageType.TRANSFER,
            {"from_user": from_user, "to_user": to_user, "amount": str(amount), "reason": reason},
        )

    def send_withdrawal(self, user_id: int, amount: Decimal, channel: str) -> Message:
        return self.send(
            MessageType.WITHDRAWAL,
            {"user_id": user_id, "amount": str(amount), "channel": channel},
        )

    def send_refund(self, user_id: int, amount: Decimal, order_number: str) -> Message:
        return self.send(
            MessageType.REFUND,
            {"user_id": user_id, "amount": str(amount), "order_number": order_number},
        )

    def send_pending_release(self, user_id: int, amount: Decimal, order_number: str) -> Message:
        return self.send(
            MessageType.PENDING_RELEASE,
            {"user_id": user_id, "amount": str(amount), "order_number": order_number},
        )

    def send_wallet_audit(self, user_id: int, action: str, details: Dict[str, Any]) -> Message:
        return self.send(
            MessageType.WALLET_AUDIT,
            {"user_id": user_id, "action": action, "details": details},
        )

    # -- timeout events --------------------------------------------------

    def publish_timeout_event(self, event: TimeoutTransitionEvent) -> Message:
        """
        Fan a committed transition out to every queue bound to the timeout exchange.

        The message id is the event id, so an outbox replay of the same
        transition is dropped by idempotent consumers.
        """
        message = Message(
            message_type=MessageType.TIMEOUT_EVENT,
            message_id=event.event_id,
            payload=event.to_dict(),
            description=f"{event.order_number} {event.from_status.code}->{event.to_status.code}",
        )
        self.channel.publish(TIMEOUT_EVENTS, message)
        return message
