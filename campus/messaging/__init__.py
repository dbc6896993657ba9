"""
Reliable asynchronous messaging.

Message envelope, topics, retry policy, broker transport, the channel that
retries with backoff and dead-letters exhausted messages, and the queue
consumers.
"""

from .message import Message, MessageType, MessagingError, MessageDecodeError
from .backoff import ExponentialBackoff, RetryPolicy
from .broker import BrokerTransport, Delivery, InMemoryBroker, BrokerError
from .retry_tracker import RetryTracker, RetryEntry
from .channel import (
    ReliableMessageChannel,
    ChannelNotRunningError,
    HEADER_ORIGINAL_TOPIC,
    HEADER_FAILURE_REASON,
)
from .idempotency import IdempotentHandler
from .producers import MessageProducer
from .notifications import (
    UserMessenger,
    LoggingUserMessenger,
    TimeoutNotificationConsumer,
    NotificationConsumer,
    ChatConsumer,
    PaymentTimeoutConsumer,
    PaymentOrders,
)
from .wallet import (
    WalletLedger,
    WalletAuditSink,
    LoggingWalletLedger,
    LoggingWalletAuditSink,
    WalletConsumer,
    WalletAuditConsumer,
)
from . import topics

__all__ = [
    "Message",
    "MessageType",
    "MessagingError",
    "MessageDecodeError",
    "ExponentialBackoff",
    "RetryPolicy",
    "BrokerTransport",
    "Delivery",
    "InMemoryBroker",
    "BrokerError",
    "RetryTracker",
    "RetryEntry",
    "ReliableMessageChannel",
    "ChannelNotRunningError",
    "HEADER_ORIGINAL_TOPIC",
    "HEADER_FAILURE_REASON",
    "IdempotentHandler",
    "MessageProducer",
    "UserMessenger",
    "LoggingUserMessenger",
    "TimeoutNotificationConsumer",
    "NotificationConsumer",
    "ChatConsumer",
    "PaymentTimeoutConsumer",
    "PaymentOrders",
    "WalletLedger",
    "WalletAuditSink",
    "LoggingWalletLedger",
    "LoggingWalletAuditSink",
    "WalletConsumer",
    "WalletAuditConsumer",
    "topics",
]
