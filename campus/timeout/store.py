"""
Order persistence collaborator for the timeout engine.

The engine touches only the timeout fields of an order and only through
``cas_update_timeout_status``: the write succeeds iff the stored version still
equals ``expected_version``, and bumps the version on success. Concurrent
writers (two sweeps, a sweep and a manual intervention) therefore never
silently overwrite each other.

A write may carry the TimeoutTransitionEvent it produced. The store keeps that
event in an outbox in the same transaction as the field update, until the
writer calls ``mark_event_published``. A crash or broker outage between the
write and the publish therefore leaves the event pending, never lost.

Two implementations:
- InMemoryOrderStore: dict + lock, hands out copies
- SQLiteOrderStore: WAL database, thread-local connections,
  ``UPDATE ... WHERE id = ? AND version = ?``
"""

import json
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Dict, Protocol, Iterable

from campus.logging import get_logger, LogStream
from campus.time import ensure_utc
from campus.timeout.events import TimeoutTransitionEvent
from campus.timeout.policy import OrderType
from campus.timeout.status import TimeoutStatus
from campus.timeout.timeoutable import TimeoutableOrder, adapter_for


@dataclass(frozen=True)
class TimeoutUpdate:
    """New values for the timeout fields of one order."""
    timeout_status: TimeoutStatus
    timeout_warning_sent: bool
    timeout_count: int
    intervention_time: Optional[datetime]


class OrderStoreError(Exception):
    """Raised on order store errors."""
    pass


class OrderNotFoundError(OrderStoreError):
    pass


class OrderStore(Protocol):

    def find_open_orders_for_sweep(self, order_type: OrderType) -> List[TimeoutableOrder]:
        ...

    def get(self, order_id: int) -> Optional[TimeoutableOrder]:
        ...

    def cas_update_timeout_status(
        self,
        order_id: int,
        expected_version: int,
        update: TimeoutUpdate,
        event: Optional[TimeoutTransitionEvent] = None,
    ) -> bool:
        ...

    def pending_events(self) -> List[TimeoutTransitionEvent]:
        ...

    def mark_event_published(self, event_id: str) -> None:
        ...


# ============================================================================
# IN-MEMORY STORE
# ============================================================================

class InMemoryOrderStore:
    """
    Thread-safe in-memory order store.

    Reads return copies, so a caller holding an order never sees a concurrent
    writer's changes until it re-reads.
    """

    def __init__(self, orders: Iterable[TimeoutableOrder] = ()):
        self._lock = threading.Lock()
        self._orders: Dict[int, TimeoutableOrder] = {}
        self._outbox: Dict[str, TimeoutTransitionEvent] = {}
        for order in orders:
            self.add(order)

    def add(self, order: TimeoutableOrder) -> None:
        with self._lock:
            self._orders[order.id] = order.copy()

    def remove(self, order_id: int) -> bool:
        with self._lock:
            return self._orders.pop(order_id, None) is not None

    def get(self, order_id: int) -> Optional[TimeoutableOrder]:
        with self._lock:
            order = self._orders.get(order_id)
            return order.copy() if order else None

    def all(self) -> List[TimeoutableOrder]:
        with self._lock:
            return [o.copy() for o in self._orders.values()]

    def find_open_orders_for_sweep(self, order_type: OrderType) -> List[TimeoutableOrder]:
        adapter = adapter_for(order_type)
        with self._lock:
            return [
                o.copy() for o in self._orders.values()
                if o.order_type is order_type and adapter.is_open(o)
            ]

    def update_business_status(self, order_id: int, order_status: str, **timestamps) -> None:
        """Business-side status change (not a timeout field; no version bump)."""
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFoundError(f"Order {order_id} not found")
            order.order_status = order_status
            for name, value in timestamps.items():
                setattr(order, name, value)

    def cas_update_timeout_status(
        self,
        order_id: int,
        expected_version: int,
        update: TimeoutUpdate,
        event: Optional[TimeoutTransitionEvent] = None,
    ) -> bool:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.version != expected_version:
                return False
            order.timeout_status = update.timeout_status
            order.timeout_warning_sent = update.timeout_warning_sent
            order.timeout_count = update.timeout_count
            order.intervention_time = update.intervention_time
            order.version += 1
            if event is not None:
                self._outbox[event.event_id] = event
            return True

    def pending_events(self) -> List[TimeoutTransitionEvent]:
        """Unpublished events, oldest commit first."""
        with self._lock:
            return list(self._outbox.values())

    def mark_event_published(self, event_id: str) -> None:
        with self._lock:
            self._outbox.pop(event_id, None)


# ============================================================================
# SQLITE STORE
# ============================================================================

class SQLiteOrderStore:
    """
    SQLite-backed order store.

    THREAD SAFETY:
    - Thread-local connections
    - WAL mode allows concurrent readers
    - The CAS write is a single UPDATE guarded by the version column; the
      outbox row for its event is inserted in the same IMMEDIATE transaction
    """

    SCHEMA_VERSION = 2

    CREATE_TABLE_SQL = """
        CREATE TABLE IF NOT EXISTS timeout_orders (
            id INTEGER PRIMARY KEY,
            order_number TEXT NOT NULL UNIQUE,
            order_type TEXT NOT NULL,
            order_status TEXT NOT NULL,
            created_time TEXT NOT NULL,
            expected_completion_time TEXT,
            completed_time TEXT,
            assigned_time TEXT,
            delivered_time TEXT,
            owning_user INTEGER NOT NULL,
            assigned_handler INTEGER,
            timeout_status TEXT NOT NULL DEFAULT 'NORMAL',
            timeout_warning_sent INTEGER NOT NULL DEFAULT 0,
            timeout_count INTEGER NOT NULL DEFAULT 0,
            intervention_time TEXT,
            version INTEGER NOT NULL DEFAULT 0
        )
    """

    CREATE_INDEX_SQL = """
        CREATE INDEX IF NOT EXISTS idx_timeout_orders_type_status
        ON timeout_orders (order_type, order_status)
    """

    CREATE_OUTBOX_SQL = """
        CREATE TABLE IF NOT EXISTS pending_transition_events (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            event_id TEXT NOT NULL UNIQUE,
            order_id INTEGER NOT NULL,
            payload TEXT NOT NULL
        )
    """

    CREATE_VERSION_TABLE_SQL = """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY
        )
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.logger = get_logger(LogStream.TIMEOUT)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._initialize_db()

        self.logger.info("SQLiteOrderStore initialized", extra={
            "db_path": str(self.db_path),
            "schema_version": self.SCHEMA_VERSION
        })

    def _get_connection(self) -> sqlite3.Connection:
        if not hasattr(self._local, 'connection'):
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=10.0)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.isolation_level = None
            conn.row_factory = sqlite3.Row
            self._local.connection = conn
            with self._connections_lock:
                self._connections.append(conn)
        return self._local.connection

    def _initialize_db(self):
        conn = self._get_connection()
        conn.execute(self.CREATE_TABLE_SQL)
        conn.execute(self.CREATE_INDEX_SQL)
        conn.execute(self.CREATE_OUTBOX_SQL)
        conn.execute(self.CREATE_VERSION_TABLE_SQL)

        row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        if row is None:
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (self.SCHEMA_VERSION,)
            )
        elif row['version'] < self.SCHEMA_VERSION:
            conn.execute("UPDATE schema_version SET version = ?", (self.SCHEMA_VERSION,))

    def add(self, order: TimeoutableOrder) -> None:
        conn = self._get_connection()
        try:
            conn.execute("BEGIN")
            conn.execute("""
                INSERT INTO timeout_orders (
                    id, order_number, order_type, order_status, created_time,
                    expected_completion_time, completed_time, assigned_time, delivered_time,
                    owning_user, assigned_handler, timeout_status, timeout_warning_sent,
                    timeout_count, intervention_time, version
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                order.id,
                order.order_number,
                order.order_type.value,
                order.order_status,
                _dt_out(order.created_time),
                _dt_out(order.expected_completion_time),
                _dt_out(order.completed_time),
                _dt_out(order.assigned_time),
                _dt_out(order.delivered_time),
                order.owning_user,
                order.assigned_handler,
                order.timeout_status.code,
                int(order.timeout_warning_sent),
                order.timeout_count,
                _dt_out(order.intervention_time),
                order.version,
            ))
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            conn.execute("ROLLBACK")
            raise OrderStoreError(f"Failed to add order {order.order_number}: {e}") from e

    def get(self, order_id: int) -> Optional[TimeoutableOrder]:
        row = self._get_connection().execute(
            "SELECT * FROM timeout_orders WHERE id = ?", (order_id,)
        ).fetchone()
        return self._row_to_order(row) if row else None

    def all(self) -> List[TimeoutableOrder]:
        rows = self._get_connection().execute(
            "SELECT * FROM timeout_orders ORDER BY id"
        ).fetchall()
        return [self._row_to_order(r) for r in rows]

    def find_open_orders_for_sweep(self, order_type: OrderType) -> List[TimeoutableOrder]:
        adapter = adapter_for(order_type)
        terminal = sorted(adapter.terminal_statuses)
        placeholders = ",".join("?" * len(terminal)) or "''"
        rows = self._get_connection().execute(
            f"""
            SELECT * FROM timeout_orders
            WHERE order_type = ?
              AND intervention_time IS NULL
              AND order_status NOT IN ({placeholders})
            ORDER BY id
            """,
            (order_type.value, *terminal),
        ).fetchall()
        return [self._row_to_order(r) for r in rows]

    def update_business_status(self, order_id: int, order_status: str, **timestamps) -> None:
        allowed = {"assigned_time", "delivered_time", "completed_time", "expected_completion_time"}
        unknown = set(timestamps) - allowed
        if unknown:
            raise ValueError(f"Not a business timestamp: {sorted(unknown)}")
        assignments = ["order_status = ?"] + [f"{name} = ?" for name in timestamps]
        params = [order_status] + [_dt_out(v) for v in timestamps.values()] + [order_id]
        conn = self._get_connection()
        cursor = conn.execute(
            f"UPDATE timeout_orders SET {', '.join(assignments)} WHERE id = ?", params
        )
        if cursor.rowcount == 0:
            raise OrderNotFoundError(f"Order {order_id} not found")

    def cas_update_timeout_status(
        self,
        order_id: int,
        expected_version: int,
        update: TimeoutUpdate,
        event: Optional[TimeoutTransitionEvent] = None,
    ) -> bool:
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute("""
                UPDATE timeout_orders
                SET timeout_status = ?,
                    timeout_warning_sent = ?,
                    timeout_count = ?,
                    intervention_time = ?,
                    version = version + 1
                WHERE id = ? AND version = ?
            """, (
                update.timeout_status.code,
                int(update.timeout_warning_sent),
                update.timeout_count,
                _dt_out(update.intervention_time),
                order_id,
                expected_version,
            ))
            written = cursor.rowcount == 1
            if written and event is not None:
                conn.execute(
                    "INSERT INTO pending_transition_events (event_id, order_id, payload) VALUES (?, ?, ?)",
                    (event.event_id, order_id, json.dumps(event.to_dict())),
                )
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise OrderStoreError(f"CAS update failed for order {order_id}: {e}") from e
        return written

    def pending_events(self) -> List[TimeoutTransitionEvent]:
        """Unpublished events, oldest commit first."""
        rows = self._get_connection().execute(
            "SELECT payload FROM pending_transition_events ORDER BY seq"
        ).fetchall()
        return [TimeoutTransitionEvent.from_dict(json.loads(r['payload'])) for r in rows]

    def mark_event_published(self, event_id: str) -> None:
        self._get_connection().execute(
            "DELETE FROM pending_transition_events WHERE event_id = ?", (event_id,)
        )

    def _row_to_order(self, row: sqlite3.Row) -> TimeoutableOrder:
        return TimeoutableOrder(
            id=row['id'],
            order_number=row['order_number'],
            order_type=OrderType(row['order_type']),
            order_status=row['order_status'],
            created_time=_dt_in(row['created_time']),
            owning_user=row['owning_user'],
            assigned_handler=row['assigned_handler'],
            expected_completion_time=_dt_in(row['expected_completion_time']),
            completed_time=_dt_in(row['completed_time']),
            assigned_time=_dt_in(row['assigned_time']),
            delivered_time=_dt_in(row['delivered_time']),
            timeout_status=TimeoutStatus.from_code(row['timeout_status']),
            timeout_warning_sent=bool(row['timeout_warning_sent']),
            timeout_count=row['timeout_count'],
            intervention_time=_dt_in(row['intervention_time']),
            version=row['version'],
        )

    def close(self):
        """Close all connections. Call on shutdown."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()
        self.logger.info("SQLiteOrderStore closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def _dt_out(dt: Optional[datetime]) -> Optional[str]:
    return ensure_utc(dt).isoformat() if dt is not None else None


def _dt_in(value: Optional[str]) -> Optional[datetime]:
    return ensure_utc(datetime.fromisoformat(value)) if value else None
