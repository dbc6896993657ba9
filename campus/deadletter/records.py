"""Dead-letter record model."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional, Dict, Any

from campus.time import ensure_utc


@dataclass(frozen=True)
class DeadLetterRecord:
    """
    Audit record of a message that exhausted its retries.

    Created once per message_id, updated only by resolution, never deleted.
    """
    message_id: str
    original_topic: str
    failure_reason: str
    first_failure_time: datetime
    final_retry_count: int
    message_type: str
    dead_lettered_time: datetime
    payload: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    description: str = ""
    resolved: bool = False
    resolution_note: Optional[str] = None
    resolved_time: Optional[datetime] = None
    resolved_by: Optional[str] = None

    def resolve(self, note: str, at: datetime, by: str) -> "DeadLetterRecord":
        return replace(self, resolved=True, resolution_note=note, resolved_time=ensure_utc(at), resolved_by=by)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "original_topic": self.original_topic,
            "failure_reason": self.failure_reason,
            "first_failure_time": ensure_utc(self.first_failure_time).isoformat(),
            "final_retry_count": self.final_retry_count,
            "message_type": self.message_type,
            "dead_lettered_time": ensure_utc(self.dead_lettered_time).isoformat(),
            "payload": self.payload,
            "description": self.description,
            "resolved": self.resolved,
            "resolution_note": self.resolution_note,
            "resolved_time": ensure_utc(self.resolved_time).isoformat() if self.resolved_time else None,
            "resolved_by": self.resolved_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeadLetterRecord":
        resolved_time = data.get("resolved_time")
        return cls(
            message_id=data["message_id"],
            original_topic=data["original_topic"],
            failure_reason=data["failure_reason"],
            first_failure_time=ensure_utc(datetime.fromisoformat(data["first_failure_time"])),
            final_retry_count=int(data["final_retry_count"]),
            message_type=data["message_type"],
            dead_lettered_time=ensure_utc(datetime.fromisoformat(data["dead_lettered_time"])),
            payload=dict(data.get("payload") or {}),
            description=data.get("description") or "",
            resolved=bool(data.get("resolved", False)),
            resolution_note=data.get("resolution_note"),
            resolved_time=ensure_utc(datetime.fromisoformat(resolved_time)) if resolved_time else None,
            resolved_by=data.get("resolved_by"),
        )
