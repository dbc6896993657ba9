"""
Timeout status state machine.

NORMAL -> {PICKUP|DELIVERY|CONFIRMATION}_TIMEOUT_WARNING -> *_TIMEOUT

A status carries its own classification (warning / timeout / severity) so
that consumers never re-derive it from the name.
"""

from enum import Enum
from typing import Optional


class TimeoutPhase(Enum):
    """Lifecycle phase an order's timeout clock is measured in."""
    PICKUP = "PICKUP"
    DELIVERY = "DELIVERY"
    CONFIRMATION = "CONFIRMATION"


class Severity(Enum):
    """Notification severity level."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class TimeoutStatus(Enum):
    """
    Timeout state of an order.

    Value is the persisted code; label and message are user-facing.
    """

    NORMAL = ("NORMAL", "Normal", "Order is within its time limit", False, False, None)

    PICKUP_TIMEOUT_WARNING = (
        "PICKUP_WARNING", "Pickup timeout warning",
        "Pickup deadline is approaching, please pick up soon",
        True, False, TimeoutPhase.PICKUP,
    )
    DELIVERY_TIMEOUT_WARNING = (
        "DELIVERY_WARNING", "Delivery timeout warning",
        "Delivery deadline is approaching, please speed up delivery",
        True, False, TimeoutPhase.DELIVERY,
    )
    CONFIRMATION_TIMEOUT_WARNING = (
        "CONFIRMATION_WARNING", "Confirmation timeout warning",
        "Please confirm receipt before the order completes automatically",
        True, False, TimeoutPhase.CONFIRMATION,
    )

    PICKUP_TIMEOUT = (
        "PICKUP_TIMEOUT", "Pickup timeout",
        "Pickup deadline exceeded, handled by the platform",
        False, True, TimeoutPhase.PICKUP,
    )
    DELIVERY_TIMEOUT = (
        "DELIVERY_TIMEOUT", "Delivery timeout",
        "Delivery deadline exceeded, moved to exception handling",
        False, True, TimeoutPhase.DELIVERY,
    )
    CONFIRMATION_TIMEOUT = (
        "CONFIRMATION_TIMEOUT", "Confirmation timeout",
        "Confirmation deadline exceeded, order completed automatically",
        False, True, TimeoutPhase.CONFIRMATION,
    )

    def __init__(self, code, label, message, is_warning, is_timeout, phase):
        self.code = code
        self.label = label
        self.message = message
        self.is_warning = is_warning
        self.is_timeout = is_timeout
        self.phase = phase

    @property
    def requires_notification(self) -> bool:
        return self.is_warning or self.is_timeout

    @property
    def severity(self) -> Severity:
        if self.is_timeout:
            return Severity.HIGH
        if self.is_warning:
            return Severity.MEDIUM
        return Severity.LOW

    @property
    def is_critical(self) -> bool:
        return self in (TimeoutStatus.PICKUP_TIMEOUT, TimeoutStatus.DELIVERY_TIMEOUT)

    @property
    def handling_suggestion(self) -> str:
        return _SUGGESTIONS.get(self, "No action required")

    @classmethod
    def from_code(cls, code: Optional[str]) -> "TimeoutStatus":
        """Parse a persisted code (or enum name); unknown or empty -> NORMAL."""
        if not code:
            return cls.NORMAL
        for status in cls:
            if status.code == code or status.name == code:
                return status
        return cls.NORMAL

    @classmethod
    def warning_for(cls, phase: TimeoutPhase) -> "TimeoutStatus":
        return _WARNING_BY_PHASE[phase]

    @classmethod
    def timeout_for(cls, phase: TimeoutPhase) -> "TimeoutStatus":
        return _TIMEOUT_BY_PHASE[phase]


_WARNING_BY_PHASE = {
    TimeoutPhase.PICKUP: TimeoutStatus.PICKUP_TIMEOUT_WARNING,
    TimeoutPhase.DELIVERY: TimeoutStatus.DELIVERY_TIMEOUT_WARNING,
    TimeoutPhase.CONFIRMATION: TimeoutStatus.CONFIRMATION_TIMEOUT_WARNING,
}

_TIMEOUT_BY_PHASE = {
    TimeoutPhase.PICKUP: TimeoutStatus.PICKUP_TIMEOUT,
    TimeoutPhase.DELIVERY: TimeoutStatus.DELIVERY_TIMEOUT,
    TimeoutPhase.CONFIRMATION: TimeoutStatus.CONFIRMATION_TIMEOUT,
}

_SUGGESTIONS = {
    TimeoutStatus.PICKUP_TIMEOUT_WARNING: "Courier should head to the pickup point now",
    TimeoutStatus.DELIVERY_TIMEOUT_WARNING: "Courier should optimise the delivery route",
    TimeoutStatus.CONFIRMATION_TIMEOUT_WARNING: "Send the recipient a confirmation reminder",
    TimeoutStatus.PICKUP_TIMEOUT: "Reassign the order",
    TimeoutStatus.DELIVERY_TIMEOUT: "Platform intervention recommended",
    TimeoutStatus.CONFIRMATION_TIMEOUT: "Complete the order automatically",
}
