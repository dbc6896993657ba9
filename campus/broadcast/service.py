"""
Statistics push to live subscribers.

Each broadcast serializes its envelope once:

    {"type": "user" | "system" | "recommendations", "data": {...}, "timestamp": <epoch ms>}

and sends that text to every open target connection. Closed connections are
skipped; a connection whose send fails is logged and pruned. No failure
escapes to the caller.
"""

import json
import threading
from datetime import datetime
from typing import List, Optional, Dict, Any

from campus.broadcast.registry import Connection, ConnectionRegistry
from campus.logging import get_logger, LogStream
from campus.statistics.aggregator import StatisticsSnapshot, StatisticsPeriod
from campus.time import Clock, RealTimeClock, epoch_ms

TYPE_USER = "user"
TYPE_SYSTEM = "system"
TYPE_RECOMMENDATIONS = "recommendations"


class BroadcastService:

    def __init__(self, registry: Optional[ConnectionRegistry] = None, clock: Optional[Clock] = None):
        self.registry = registry or ConnectionRegistry()
        self.clock = clock or RealTimeClock()
        self.logger = get_logger(LogStream.BROADCAST)
        self._stats_lock = threading.Lock()
        self._stats = {"broadcasts": 0, "sent": 0, "skipped_closed": 0, "send_failures": 0}

    # ------------------------
    # Registration
    # ------------------------

    def register_user(self, user_id: int, conn: Connection) -> None:
        self.registry.add_user(user_id, conn)
        self.logger.info(f"User {user_id} subscribed", extra={
            "user_id": user_id, "connection_id": conn.connection_id,
        })

    def register_admin(self, conn: Connection) -> None:
        self.registry.add_admin(conn)
        self.logger.info("Admin subscribed", extra={"connection_id": conn.connection_id})

    def remove(self, conn: Connection) -> None:
        if self.registry.remove(conn):
            self.logger.info("Subscriber removed", extra={"connection_id": conn.connection_id})

    # ------------------------
    # Broadcasts
    # ------------------------

    def broadcast_user_update(self, user_id: int, snapshot: StatisticsSnapshot) -> int:
        return self._send_all(self.registry.user_connections(user_id), TYPE_USER, snapshot.to_dict())

    def broadcast_system_update(self, snapshot: StatisticsSnapshot) -> int:
        return self._send_all(self.registry.admin_connections(), TYPE_SYSTEM, snapshot.to_dict())

    def broadcast_recommendations(
        self, recommendations: List[str], period: StatisticsPeriod, user_id: Optional[int] = None
    ) -> int:
        """To *user_id*'s connections if given, otherwise to admins."""
        targets = (
            self.registry.user_connections(user_id) if user_id is not None
            else self.registry.admin_connections()
        )
        data = {"user_id": user_id, "period": period.to_dict(), "recommendations": list(recommendations)}
        return self._send_all(targets, TYPE_RECOMMENDATIONS, data)

    def _envelope(self, kind: str, data: Dict[str, Any]) -> str:
        return json.dumps(
            {"type": kind, "data": data, "timestamp": epoch_ms(self.clock.now())},
            separators=(",", ":"),
            ensure_ascii=False,
            default=_json_default,
        )

    def _send_all(self, targets: List[Connection], kind: str, data: Dict[str, Any]) -> int:
        """Returns the number of connections the envelope reached."""
        self._incr("broadcasts")
        if not targets:
            return 0

        text = self._envelope(kind, data)
        sent = 0
        for conn in targets:
            if not conn.is_open:
                self._incr("skipped_closed")
                continue
            try:
                conn.send_text(text)
            except Exception as e:
                self._incr("send_failures")
                self.logger.warning(
                    f"Send to {conn.connection_id} failed, pruning connection",
                    extra={"connection_id": conn.connection_id, "type": kind, "error": str(e)},
                )
                self.registry.remove(conn)
                continue
            sent += 1
        self._incr("sent", sent)
        return sent

    def _incr(self, key: str, n: int = 1) -> None:
        with self._stats_lock:
            self._stats[key] += n

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = dict(self._stats)
        stats.update(self.registry.get_stats())
        return stats


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
