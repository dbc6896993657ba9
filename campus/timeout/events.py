"""Domain events emitted by the timeout engine."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any

from campus.time import ensure_utc
from campus.timeout.policy import OrderType
from campus.timeout.status import TimeoutStatus


@dataclass(frozen=True)
class TimeoutTransitionEvent:
    """
    One committed timeout transition.

    Emitted exactly once per committed write; a re-sweep of an unchanged order
    commits nothing and therefore emits nothing. ``event_id`` is fixed at
    commit time, so a replay from the store outbox carries the same id.
    """
    order_number: str
    order_type: OrderType
    from_status: TimeoutStatus
    to_status: TimeoutStatus
    timestamp: datetime
    order_id: int
    owning_user: int
    assigned_handler: Optional[int] = None
    timeout_count: int = 0
    intervention_triggered: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()), compare=False)

    @property
    def responsible_user(self) -> int:
        """User the transition is attributed to: the handler if assigned."""
        return self.assigned_handler if self.assigned_handler is not None else self.owning_user

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": "TimeoutTransition",
            "event_id": self.event_id,
            "order_number": self.order_number,
            "order_type": self.order_type.value,
            "from_status": self.from_status.code,
            "to_status": self.to_status.code,
            "timestamp": ensure_utc(self.timestamp).isoformat(),
            "order_id": self.order_id,
            "owning_user": self.owning_user,
            "assigned_handler": self.assigned_handler,
            "timeout_count": self.timeout_count,
            "intervention_triggered": self.intervention_triggered,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimeoutTransitionEvent":
        return cls(
            order_number=data["order_number"],
            order_type=OrderType(data["order_type"]),
            from_status=TimeoutStatus.from_code(data["from_status"]),
            to_status=TimeoutStatus.from_code(data["to_status"]),
            timestamp=ensure_utc(datetime.fromisoformat(data["timestamp"])),
            order_id=data["order_id"],
            owning_user=data["owning_user"],
            assigned_handler=data.get("assigned_handler"),
            timeout_count=data.get("timeout_count", 0),
            intervention_triggered=data.get("intervention_triggered", False),
            metadata=dict(data.get("metadata") or {}),
            event_id=data.get("event_id") or str(uuid.uuid4()),
        )
