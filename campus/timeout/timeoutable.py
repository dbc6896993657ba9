"""
Timeoutable capability.

Any order-like entity that exposes the attributes below can be swept by the
detection engine. Each order type supplies an OrderAdapter that maps its
business status onto a timeout phase and picks the phase's reference time,
so the engine itself never branches on order type.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional, Protocol, Mapping, FrozenSet, Dict, runtime_checkable

from campus.timeout.policy import OrderType
from campus.timeout.status import TimeoutStatus, TimeoutPhase


@runtime_checkable
class Timeoutable(Protocol):
    """Attributes the timeout engine reads from an order."""
    id: int
    order_number: str
    order_type: OrderType
    order_status: str
    created_time: datetime
    expected_completion_time: Optional[datetime]
    completed_time: Optional[datetime]
    assigned_time: Optional[datetime]
    delivered_time: Optional[datetime]
    timeout_status: TimeoutStatus
    timeout_warning_sent: bool
    timeout_count: int
    intervention_time: Optional[datetime]
    owning_user: int
    assigned_handler: Optional[int]
    version: int


@dataclass
class TimeoutableOrder:
    """
    Plain order record carrying the timeout fields.

    The business entity owns everything but the timeout fields; the engine
    only ever changes timeout_status, timeout_warning_sent, timeout_count,
    intervention_time (and version, through the store).
    """
    id: int
    order_number: str
    order_type: OrderType
    order_status: str
    created_time: datetime
    owning_user: int
    assigned_handler: Optional[int] = None
    expected_completion_time: Optional[datetime] = None
    completed_time: Optional[datetime] = None
    assigned_time: Optional[datetime] = None
    delivered_time: Optional[datetime] = None
    timeout_status: TimeoutStatus = TimeoutStatus.NORMAL
    timeout_warning_sent: bool = False
    timeout_count: int = 0
    intervention_time: Optional[datetime] = None
    version: int = 0

    def copy(self) -> "TimeoutableOrder":
        return replace(self)

    @property
    def is_archived(self) -> bool:
        return self.intervention_time is not None


@dataclass(frozen=True)
class OrderAdapter:
    """Per-order-type mapping from business status to timeout phase."""
    order_type: OrderType
    phase_by_status: Mapping[str, TimeoutPhase]
    terminal_statuses: FrozenSet[str] = field(default_factory=frozenset)

    def phase_of(self, order: Timeoutable) -> Optional[TimeoutPhase]:
        """Phase whose clock is running, or None if the status is not checked."""
        return self.phase_by_status.get(order.order_status)

    def reference_time(self, order: Timeoutable, phase: TimeoutPhase) -> Optional[datetime]:
        if phase is TimeoutPhase.PICKUP:
            return order.created_time
        if phase is TimeoutPhase.DELIVERY:
            return order.assigned_time
        return order.delivered_time

    def is_open(self, order: Timeoutable) -> bool:
        return order.order_status not in self.terminal_statuses and order.intervention_time is None


_TERMINAL = frozenset({
    "COMPLETED", "CANCELLED", "PAYMENT_PENDING", "PAYMENT_TIMEOUT",
    "PLATFORM_INTERVENTION", "REFUNDING", "REFUNDED", "LOCKED",
})

ADAPTERS: Dict[OrderType, OrderAdapter] = {
    OrderType.MAIL: OrderAdapter(
        OrderType.MAIL,
        {
            "PENDING": TimeoutPhase.PICKUP,
            "ASSIGNED": TimeoutPhase.PICKUP,
            "IN_TRANSIT": TimeoutPhase.DELIVERY,
            "DELIVERED": TimeoutPhase.CONFIRMATION,
        },
        _TERMINAL,
    ),
    OrderType.SHOPPING: OrderAdapter(
        OrderType.SHOPPING,
        {
            "ASSIGNED": TimeoutPhase.PICKUP,
            "IN_TRANSIT": TimeoutPhase.DELIVERY,
            "DELIVERED": TimeoutPhase.CONFIRMATION,
        },
        _TERMINAL,
    ),
    OrderType.PURCHASE_REQUEST: OrderAdapter(
        OrderType.PURCHASE_REQUEST,
        {
            "ASSIGNED": TimeoutPhase.PICKUP,
            "IN_TRANSIT": TimeoutPhase.DELIVERY,
            "DELIVERED": TimeoutPhase.CONFIRMATION,
        },
        _TERMINAL,
    ),
}


def adapter_for(order_type: OrderType) -> OrderAdapter:
    return ADAPTERS[order_type]
