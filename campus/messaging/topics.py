"""Topic names and their dead-letter counterparts."""

from typing import Dict

from campus.messaging.message import MessageType

# Fan-out exchange for timeout transitions and the queues bound to it
TIMEOUT_EVENTS = "timeout.events"
TIMEOUT_NOTIFY = "timeout.notify.queue"
TIMEOUT_STATISTICS = "timeout.statistics.queue"

NOTIFICATION = "notification.queue"
CHAT = "chat.queue"
PAYMENT_TIMEOUT = "pay.timeout.queue"
WALLET_INIT = "wallet.init.queue"
WALLET_BALANCE = "wallet.balance.queue"
WALLET_TRANSFER = "wallet.transfer.queue"
WALLET_WITHDRAW = "wallet.withdraw.queue"
WALLET_AUDIT = "wallet.audit.queue"

DLQ_SUFFIX = ".dlq"

TOPIC_BY_MESSAGE_TYPE: Dict[MessageType, str] = {
    MessageType.WALLET_INIT: WALLET_INIT,
    MessageType.BALANCE_CHANGE: WALLET_BALANCE,
    MessageType.REFUND: WALLET_BALANCE,
    MessageType.PENDING_RELEASE: WALLET_BALANCE,
    MessageType.TRANSFER: WALLET_TRANSFER,
    MessageType.WITHDRAWAL: WALLET_WITHDRAW,
    MessageType.WALLET_AUDIT: WALLET_AUDIT,
    MessageType.CHAT: CHAT,
    MessageType.NOTIFICATION: NOTIFICATION,
    MessageType.PAYMENT_TIMEOUT: PAYMENT_TIMEOUT,
    MessageType.TIMEOUT_EVENT: TIMEOUT_EVENTS,
}


def is_dead_letter_topic(topic: str) -> bool:
    return topic.endswith(DLQ_SUFFIX)


def dead_letter_topic(topic: str) -> str:
    """Dead-letter counterpart of a main topic."""
    if is_dead_letter_topic(topic):
        raise ValueError(f"{topic} is already a dead-letter topic")
    return topic + DLQ_SUFFIX


def original_topic(dlq_topic: str) -> str:
    if not is_dead_letter_topic(dlq_topic):
        raise ValueError(f"{dlq_topic} is not a dead-letter topic")
    return dlq_topic[: -len(DLQ_SUFFIX)]


def topic_for(message_type: MessageType) -> str:
    return TOPIC_BY_MESSAGE_TYPE[message_type]
