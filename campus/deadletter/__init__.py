"""
Dead-letter handling: durable audit records plus operator alerts.
"""

from .records import DeadLetterRecord
from .store import (
    DeadLetterStore,
    DeadLetterLog,
    InMemoryDeadLetterStore,
    DeadLetterLogError,
    DeadLetterLogCorruptionError,
    DeadLetterNotFoundError,
)
from .alerts import AlertTransport, LoggingAlertTransport, WebhookAlertTransport, AlertDeliveryError
from .service import DeadLetterService

__all__ = [
    "DeadLetterRecord",
    "DeadLetterStore",
    "DeadLetterLog",
    "InMemoryDeadLetterStore",
    "DeadLetterLogError",
    "DeadLetterLogCorruptionError",
    "DeadLetterNotFoundError",
    "AlertTransport",
    "LoggingAlertTransport",
    "WebhookAlertTransport",
    "AlertDeliveryError",
    "DeadLetterService",
]
