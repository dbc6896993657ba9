"""
Message envelope shared by every asynchronous event.

The envelope's identity (message_id, create_time) survives retries and
dead-lettering; only retry_count and last_retry_time change between
deliveries.
"""

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any

from campus.time import utc_now, ensure_utc


class MessagingError(Exception):
    """Base exception for messaging errors."""
    pass


class MessageDecodeError(MessagingError):
    """Body could not be decoded into a Message."""
    pass


class MessageType(Enum):
    """Categories of asynchronous message."""
    WALLET_INIT = "WALLET_INIT"
    BALANCE_CHANGE = "BALANCE_CHANGE"
    TRANSFER = "TRANSFER"
    WITHDRAWAL = "WITHDRAWAL"
    REFUND = "REFUND"
    PENDING_RELEASE = "PENDING_RELEASE"
    WALLET_AUDIT = "WALLET_AUDIT"
    CHAT = "CHAT"
    NOTIFICATION = "NOTIFICATION"
    PAYMENT_TIMEOUT = "PAYMENT_TIMEOUT"
    TIMEOUT_EVENT = "TIMEOUT_EVENT"
    # Body that could not be decoded; raw text kept in payload["raw_body"]
    UNDECODABLE = "UNDECODABLE"


def _new_message_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class Message:
    """Envelope for every asynchronous event."""
    message_type: MessageType
    payload: Dict[str, Any] = field(default_factory=dict, hash=False)
    message_id: str = field(default_factory=_new_message_id)
    create_time: datetime = field(default_factory=utc_now)
    retry_count: int = 0
    last_retry_time: Optional[datetime] = None
    description: str = ""

    def next_retry(self, at: datetime) -> "Message":
        """Copy for redelivery: same identity, one more retry recorded."""
        return replace(self, retry_count=self.retry_count + 1, last_retry_time=ensure_utc(at))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "message_type": self.message_type.value,
            "create_time": ensure_utc(self.create_time).isoformat(),
            "retry_count": self.retry_count,
            "last_retry_time": ensure_utc(self.last_retry_time).isoformat() if self.last_retry_time else None,
            "description": self.description,
            "payload": self.payload,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        try:
            last_retry = data.get("last_retry_time")
            return cls(
                message_type=MessageType(data["message_type"]),
                payload=dict(data.get("payload") or {}),
                message_id=str(data["message_id"]),
                create_time=ensure_utc(datetime.fromisoformat(data["create_time"])),
                retry_count=int(data.get("retry_count", 0)),
                last_retry_time=ensure_utc(datetime.fromisoformat(last_retry)) if last_retry else None,
                description=data.get("description") or "",
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MessageDecodeError(f"Invalid message envelope: {e}") from e

    @classmethod
    def from_json(cls, body) -> "Message":
        if isinstance(body, bytes):
            body = body.decode("utf-8")
        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise MessageDecodeError(f"Message body is not JSON: {e}") from e
        if not isinstance(data, dict):
            raise MessageDecodeError("Message body must be a JSON object")
        return cls.from_dict(data)
