"""
Dead-letter consumer.

CRITICAL PROPERTIES:
1. on_dead_letter() never raises back into the channel; persistence and
   alert failures are logged and the message is acked regardless
2. One record per message_id; a redelivered dead letter keeps the first
3. Records are never deleted, only marked resolved
4. Exactly one operator alert per new record (best effort)
"""

from datetime import datetime
from typing import Optional, Callable, Dict, List, Any
import threading

from campus.deadletter.alerts import AlertTransport, LoggingAlertTransport
from campus.deadletter.records import DeadLetterRecord
from campus.deadletter.store import DeadLetterStore, InMemoryDeadLetterStore, DeadLetterNotFoundError
from campus.logging import get_logger, LogStream
from campus.messaging.message import Message
from campus.messaging.retry_tracker import RetryTracker
from campus.time import Clock, RealTimeClock

ReconcileHandler = Callable[[DeadLetterRecord], Optional[str]]


class DeadLetterService:
    """
    Records dead-lettered messages, alerts operators, and tracks resolution.

    USAGE:
        service = DeadLetterService(DeadLetterLog(path), WebhookAlertTransport(url))
        channel.set_dead_letter_handler(service.on_dead_letter)
        ...
        service.resolve(message_id, "refund re-issued manually")
    """

    def __init__(
        self,
        store: Optional[DeadLetterStore] = None,
        alert_transport: Optional[AlertTransport] = None,
        retry_tracker: Optional[RetryTracker] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store if store is not None else InMemoryDeadLetterStore()
        self.alert_transport = alert_transport or LoggingAlertTransport()
        self.retry_tracker = retry_tracker
        self.clock = clock or RealTimeClock()
        self.logger = get_logger(LogStream.DEADLETTER)

        self._stats_lock = threading.Lock()
        self._stats = {
            "received": 0,
            "recorded": 0,
            "duplicates": 0,
            "persist_failures": 0,
            "alerts_sent": 0,
            "alert_failures": 0,
            "resolved": 0,
        }

    # ------------------------
    # Channel callback
    # ------------------------

    def on_dead_letter(self, message: Message, original_topic: str, reason: str) -> Optional[DeadLetterRecord]:
        """
        Record *message* and alert. Returns the stored record, or None if it
        could not be persisted.
        """
        self._incr("received")
        now = self.clock.now()
        record = DeadLetterRecord(
            message_id=message.message_id,
            original_topic=original_topic,
            failure_reason=reason,
            first_failure_time=self._first_failure_time(message, now),
            final_retry_count=message.retry_count,
            message_type=message.message_type.value,
            dead_lettered_time=now,
            payload=dict(message.payload),
            description=message.description,
        )

        try:
            created = self.store.append_record(record)
        except Exception as e:
            self._incr("persist_failures")
            self.logger.critical(
                f"Failed to persist dead letter {message.message_id}",
                extra={"message_id": message.message_id, "topic": original_topic, "error": str(e)},
                exc_info=True,
            )
            # the alert carries the full body so nothing is lost with the record
            self._send_alert(self._alert_text(record, persisted=False, body=message.to_json()))
            return None

        if not created:
            self._incr("duplicates")
            self.logger.warning(
                f"Dead letter {message.message_id} already recorded, keeping first record",
                extra={"message_id": message.message_id, "topic": original_topic},
            )
            return self.store.get(message.message_id)

        self._incr("recorded")
        if self.retry_tracker is not None:
            self.retry_tracker.forget(message.message_id)

        self.logger.error(
            f"Dead letter recorded: {message.message_id} from {original_topic}",
            extra={
                "message_id": message.message_id,
                "topic": original_topic,
                "message_type": record.message_type,
                "retry_count": record.final_retry_count,
                "reason": reason,
            },
        )
        self._send_alert(self._alert_text(record))
        return record

    def _first_failure_time(self, message: Message, now: datetime) -> datetime:
        if self.retry_tracker is not None:
            entry = self.retry_tracker.get(message.message_id)
            if entry is not None:
                return entry.first_failure_time
        return message.last_retry_time or now

    @staticmethod
    def _alert_text(record: DeadLetterRecord, persisted: bool = True, body: Optional[str] = None) -> str:
        lines = [
            "Message dead-lettered" if persisted else "Message dead-lettered (NOT PERSISTED)",
            f"message_id: {record.message_id}",
            f"queue: {record.original_topic}",
            f"type: {record.message_type}",
            f"reason: {record.failure_reason}",
            f"retry_count: {record.final_retry_count}",
            f"first_failure: {record.first_failure_time.isoformat()}",
        ]
        if body is not None:
            lines.append(f"body: {body}")
        return "\n".join(lines)

    def _send_alert(self, text: str) -> None:
        try:
            self.alert_transport.send_alert(text)
        except Exception as e:
            self._incr("alert_failures")
            self.logger.error(
                "Dead-letter alert delivery failed",
                extra={"error": str(e)},
                exc_info=True,
            )
            return
        self._incr("alerts_sent")

    # ------------------------
    # Operator surface
    # ------------------------

    def resolve(self, message_id: str, note: str, resolved_by: str = "operator") -> DeadLetterRecord:
        """
        Mark a record resolved.

        Raises:
            DeadLetterNotFoundError: No record for message_id
        """
        existing = self.store.get(message_id)
        if existing is None:
            raise DeadLetterNotFoundError(message_id)
        if existing.resolved:
            self.logger.info(f"Dead letter {message_id} already resolved", extra={"message_id": message_id})
            return existing

        record = self.store.append_resolution(message_id, note, self.clock.now(), resolved_by)
        self._incr("resolved")
        self.logger.info(
            f"Dead letter {message_id} resolved",
            extra={"message_id": message_id, "resolved_by": resolved_by, "note": note},
        )
        return record

    def reconcile(self, handler: ReconcileHandler, resolved_by: str = "reconciler") -> Dict[str, int]:
        """
        Offer every unresolved record to *handler*.

        The handler returns a resolution note to resolve the record, or None
        to leave it open. Handler exceptions leave the record open.
        """
        result = {"examined": 0, "resolved": 0, "failed": 0}
        for record in self.store.unresolved():
            result["examined"] += 1
            try:
                note = handler(record)
            except Exception as e:
                result["failed"] += 1
                self.logger.warning(
                    f"Reconcile handler failed for {record.message_id}",
                    extra={"message_id": record.message_id, "error": str(e)},
                    exc_info=True,
                )
                continue
            if note is not None:
                self.resolve(record.message_id, note, resolved_by=resolved_by)
                result["resolved"] += 1

        if result["examined"]:
            self.logger.info("Dead-letter reconcile pass complete", extra=result)
        return result

    def get(self, message_id: str) -> Optional[DeadLetterRecord]:
        return self.store.get(message_id)

    def unresolved(self) -> List[DeadLetterRecord]:
        return self.store.unresolved()

    def all(self) -> List[DeadLetterRecord]:
        return self.store.all()

    def cleanup_retry_bookkeeping(self) -> int:
        """Drop stale retry-tracker entries (periodic task). Returns count removed."""
        if self.retry_tracker is None:
            return 0
        removed = self.retry_tracker.clear_stale(self.clock.now())
        if removed:
            self.logger.info(f"Cleared {removed} stale retry entries", extra={"removed": removed})
        return removed

    # ------------------------
    # Stats
    # ------------------------

    def _incr(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = dict(self._stats)
        stats["unresolved"] = len(self.store.unresolved())
        return stats
