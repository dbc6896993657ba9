"""
Timeout policy table.

Static, immutable per-order-type configuration: how long each phase may take,
when to warn, how many timeouts escalate to intervention, and sweep priority.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Dict, Mapping, List

from campus.timeout.status import TimeoutPhase


class OrderType(Enum):
    """Closed set of order types handled by the timeout engine."""
    MAIL = "MAIL"
    SHOPPING = "SHOPPING"
    PURCHASE_REQUEST = "PURCHASE_REQUEST"


class TimeoutEngineError(Exception):
    """Base exception for timeout engine errors."""
    pass


class PolicyNotFoundError(TimeoutEngineError):
    """No policy configured for an order type."""
    pass


@dataclass(frozen=True)
class TimeoutPolicy:
    """Immutable timeout policy for one order type."""
    order_type: OrderType
    default_timeout_minutes: int
    warning_threshold_ratio: float
    archive_threshold: int
    priority: int
    phase_timeout_minutes: Mapping[TimeoutPhase, int] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        if self.default_timeout_minutes < 1:
            raise ValueError("default_timeout_minutes must be >= 1")
        if not 0.0 < self.warning_threshold_ratio < 1.0:
            raise ValueError("warning_threshold_ratio must be in (0, 1)")
        if self.archive_threshold < 1:
            raise ValueError("archive_threshold must be >= 1")

    def timeout_for(self, phase: TimeoutPhase) -> timedelta:
        minutes = self.phase_timeout_minutes.get(phase, self.default_timeout_minutes)
        return timedelta(minutes=minutes)

    def warning_for(self, phase: TimeoutPhase) -> timedelta:
        return self.timeout_for(phase) * self.warning_threshold_ratio


DEFAULT_POLICIES: Dict[OrderType, TimeoutPolicy] = {
    OrderType.MAIL: TimeoutPolicy(OrderType.MAIL, 60, 0.8, 3, 3),
    OrderType.SHOPPING: TimeoutPolicy(
        OrderType.SHOPPING, 90, 0.7, 4, 2,
        phase_timeout_minutes={TimeoutPhase.PICKUP: 45, TimeoutPhase.CONFIRMATION: 24 * 60},
    ),
    OrderType.PURCHASE_REQUEST: TimeoutPolicy(
        OrderType.PURCHASE_REQUEST, 120, 0.75, 5, 1,
        phase_timeout_minutes={TimeoutPhase.PICKUP: 40, TimeoutPhase.CONFIRMATION: 24 * 60},
    ),
}


class PolicyTable:
    """Lookup of TimeoutPolicy by order type."""

    def __init__(self, policies: Mapping[OrderType, TimeoutPolicy] = None):
        self._policies = dict(DEFAULT_POLICIES if policies is None else policies)

    def get(self, order_type: OrderType) -> TimeoutPolicy:
        try:
            return self._policies[order_type]
        except KeyError:
            raise PolicyNotFoundError(f"No timeout policy for order type {order_type}") from None

    def order_types_by_priority(self) -> List[OrderType]:
        """Supported order types, highest priority first."""
        return sorted(self._policies, key=lambda t: self._policies[t].priority, reverse=True)

    @classmethod
    def from_config(cls, timeout_config) -> "PolicyTable":
        """Build from a validated TimeoutConfig."""
        policies = {}
        for key, cfg in timeout_config.policies.items():
            order_type = OrderType(key)
            policies[order_type] = TimeoutPolicy(
                order_type=order_type,
                default_timeout_minutes=cfg.default_timeout_minutes,
                warning_threshold_ratio=cfg.warning_threshold_ratio,
                archive_threshold=cfg.archive_threshold,
                priority=cfg.priority,
                phase_timeout_minutes={
                    TimeoutPhase(phase): minutes
                    for phase, minutes in cfg.phase_timeout_minutes.items()
                },
            )
        return cls(policies)
