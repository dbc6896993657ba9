# tests/conftest.py
from __future__ import annotations

import itertools
import threading
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Optional, Tuple

import pytest

from campus.time import ManualClock
from campus.timeout import InMemoryOrderStore, OrderType, TimeoutableOrder

# 09:00 in Asia/Shanghai; the local day runs until 16:00 UTC
START = datetime(2025, 1, 6, 1, 0, tzinfo=timezone.utc)


# -------------------------
# Fakes used across the suite
# -------------------------

class RecordingArchiver:
    """Archiver that remembers which orders were handed over."""

    def __init__(self, fail: bool = False):
        self.archived: List[str] = []
        self.fail = fail

    def archive_and_remove(self, order) -> None:
        if self.fail:
            raise RuntimeError("archive service unavailable")
        self.archived.append(order.order_number)


class RecordingMessenger:
    """UserMessenger that records (user_id, content, category) and can be told to fail."""

    def __init__(self):
        self.sent: List[Tuple[int, str, str]] = []
        self.failures_remaining = 0
        self._lock = threading.Lock()

    def send_user_message(self, user_id: int, content: str, category: str) -> None:
        with self._lock:
            if self.failures_remaining:
                self.failures_remaining -= 1
                raise ConnectionError("messenger unavailable")
            self.sent.append((user_id, content, category))

    def recipients(self) -> List[int]:
        return [user_id for user_id, _, _ in self.sent]


class RecordingAlertTransport:
    def __init__(self, fail: bool = False):
        self.alerts: List[str] = []
        self.fail = fail

    def send_alert(self, text: str) -> None:
        if self.fail:
            raise ConnectionError("alert transport down")
        self.alerts.append(text)


class FakeConnection:
    """Connection double: records sent text, can be closed or made to fail."""

    _ids = itertools.count(1)

    def __init__(self, is_open: bool = True, fail: bool = False):
        self.connection_id = f"conn-{next(self._ids)}"
        self._open = is_open
        self.fail = fail
        self.sent: List[str] = []

    @property
    def is_open(self) -> bool:
        return self._open

    def close(self) -> None:
        self._open = False

    def send_text(self, text: str) -> None:
        if self.fail:
            raise BrokenPipeError("socket closed by peer")
        self.sent.append(text)


class RecordingLedger:
    """WalletLedger that records (operation, args) and can be told to fail."""

    def __init__(self, failures=0):
        self.calls = []
        self.failures = failures
        self.lock = threading.Lock()

    def _record(self, *call):
        with self.lock:
            if self.failures > 0:
                self.failures -= 1
                raise ConnectionError("wallet service unavailable")
            self.calls.append(call)

    def init_wallet(self, user_id):
        self._record("init", user_id)

    def apply_balance_change(self, user_id, amount, reason, order_number):
        self._record("balance", user_id, amount, reason, order_number)

    def refund(self, user_id, amount, order_number):
        self._record("refund", user_id, amount, order_number)

    def release_pending(self, user_id, amount, order_number):
        self._record("release", user_id, amount, order_number)

    def transfer(self, from_user, to_user, amount, reason):
        self._record("transfer", from_user, to_user, amount, reason)

    def withdraw(self, user_id, amount, channel):
        self._record("withdraw", user_id, amount, channel)


class RecordingAuditSink:
    def __init__(self, failures=0):
        self.records = []
        self.failures = failures

    def record(self, message_id, user_id, action, details):
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("audit table locked")
        self.records.append((message_id, user_id, action, details))


class OrderFactory:
    """Builds TimeoutableOrder rows with sensible defaults."""

    def __init__(self, clock: ManualClock):
        self.clock = clock
        self._ids = itertools.count(1)

    def __call__(
        self,
        order_type: OrderType = OrderType.MAIL,
        order_status: str = "PENDING",
        created_minutes_ago: float = 0,
        owning_user: int = 100,
        assigned_handler: Optional[int] = 200,
        **overrides: Any,
    ) -> TimeoutableOrder:
        order_id = overrides.pop("id", next(self._ids))
        fields: Dict[str, Any] = dict(
            id=order_id,
            order_number=f"{order_type.value[:2]}-{order_id:05d}",
            order_type=order_type,
            order_status=order_status,
            created_time=self.clock.now() - timedelta(minutes=created_minutes_ago),
            owning_user=owning_user,
            assigned_handler=assigned_handler,
        )
        fields.update(overrides)
        return TimeoutableOrder(**fields)


# -------------------------
# Fixtures
# -------------------------

@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture
def make_order(clock) -> OrderFactory:
    return OrderFactory(clock)


@pytest.fixture
def order_store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def archiver() -> RecordingArchiver:
    return RecordingArchiver()


@pytest.fixture
def messenger() -> RecordingMessenger:
    return RecordingMessenger()


@pytest.fixture
def alerts() -> RecordingAlertTransport:
    return RecordingAlertTransport()
