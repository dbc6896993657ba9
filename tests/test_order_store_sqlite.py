"""
SQLite order store.

INVARIANT:
    The version column is the only guard for timeout-field writes: an update
    with a stale version changes nothing and reports False; a matching one
    bumps the version by exactly one. An event handed to the write is stored
    with it, or not at all.

WHY THIS MATTERS:
    Two engine instances may sweep the same database. Without the guard the
    slower sweep would overwrite the faster one and double-count timeouts.
"""

from datetime import timedelta, timezone

import pytest

from campus.timeout import (
    SQLiteOrderStore,
    TimeoutDetectionEngine,
    TimeoutStatus,
    TimeoutUpdate,
    OrderType,
    OrderNotFoundError,
    OrderStoreError,
    TimeoutTransitionEvent,
)


@pytest.fixture
def sqlite_store(tmp_path):
    store = SQLiteOrderStore(tmp_path / "orders.db")
    yield store
    store.close()


def _warning_event(order, clock):
    return TimeoutTransitionEvent(
        order_number=order.order_number,
        order_type=order.order_type,
        from_status=TimeoutStatus.NORMAL,
        to_status=TimeoutStatus.PICKUP_TIMEOUT_WARNING,
        timestamp=clock.now(),
        order_id=order.id,
        owning_user=order.owning_user,
        assigned_handler=order.assigned_handler,
    )


def _warning_update(count=0):
    return TimeoutUpdate(
        timeout_status=TimeoutStatus.PICKUP_TIMEOUT_WARNING,
        timeout_warning_sent=True,
        timeout_count=count,
        intervention_time=None,
    )


class TestPersistence:

    def test_round_trip_preserves_fields(self, sqlite_store, make_order, clock):
        order = make_order(
            OrderType.SHOPPING, "IN_TRANSIT", created_minutes_ago=90,
            assigned_time=clock.now() - timedelta(minutes=30),
            timeout_status=TimeoutStatus.PICKUP_TIMEOUT, timeout_count=1,
        )
        sqlite_store.add(order)

        loaded = sqlite_store.get(order.id)
        assert loaded.order_number == order.order_number
        assert loaded.order_type is OrderType.SHOPPING
        assert loaded.created_time == order.created_time
        assert loaded.assigned_time == order.assigned_time
        assert loaded.assigned_time.tzinfo == timezone.utc
        assert loaded.timeout_status is TimeoutStatus.PICKUP_TIMEOUT
        assert loaded.timeout_count == 1
        assert loaded.version == 0

    def test_missing_order_is_none(self, sqlite_store):
        assert sqlite_store.get(999) is None

    def test_duplicate_order_number_rejected(self, sqlite_store, make_order):
        order = make_order()
        sqlite_store.add(order)
        with pytest.raises(OrderStoreError):
            sqlite_store.add(make_order(id=order.id + 100, order_number=order.order_number))

    def test_survives_reopen(self, tmp_path, make_order):
        path = tmp_path / "orders.db"
        order = make_order()
        with SQLiteOrderStore(path) as store:
            store.add(order)
            assert store.cas_update_timeout_status(order.id, 0, _warning_update())

        with SQLiteOrderStore(path) as store:
            loaded = store.get(order.id)
            assert loaded.timeout_warning_sent is True
            assert loaded.version == 1


class TestSweepQuery:

    def test_excludes_terminal_and_intervened(self, sqlite_store, make_order, clock):
        open_order = make_order(OrderType.MAIL, "PENDING")
        done = make_order(OrderType.MAIL, "COMPLETED")
        intervened = make_order(OrderType.MAIL, "IN_TRANSIT", intervention_time=clock.now())
        other_type = make_order(OrderType.SHOPPING, "ASSIGNED")
        for order in (open_order, done, intervened, other_type):
            sqlite_store.add(order)

        found = sqlite_store.find_open_orders_for_sweep(OrderType.MAIL)
        assert [o.id for o in found] == [open_order.id]


class TestCompareAndSet:

    def test_matching_version_bumps(self, sqlite_store, make_order):
        order = make_order()
        sqlite_store.add(order)

        assert sqlite_store.cas_update_timeout_status(order.id, 0, _warning_update()) is True
        loaded = sqlite_store.get(order.id)
        assert loaded.version == 1
        assert loaded.timeout_status is TimeoutStatus.PICKUP_TIMEOUT_WARNING

    def test_stale_version_changes_nothing(self, sqlite_store, make_order):
        order = make_order()
        sqlite_store.add(order)
        sqlite_store.cas_update_timeout_status(order.id, 0, _warning_update())

        assert sqlite_store.cas_update_timeout_status(order.id, 0, _warning_update(count=7)) is False
        loaded = sqlite_store.get(order.id)
        assert loaded.timeout_count == 0
        assert loaded.version == 1

    def test_unknown_order_reports_false(self, sqlite_store):
        assert sqlite_store.cas_update_timeout_status(42, 0, _warning_update()) is False


class TestOutbox:

    def test_event_stored_with_write_and_survives_reopen(self, tmp_path, make_order, clock):
        path = tmp_path / "orders.db"
        order = make_order()
        event = _warning_event(order, clock)
        with SQLiteOrderStore(path) as store:
            store.add(order)
            assert store.cas_update_timeout_status(order.id, 0, _warning_update(), event) is True

        with SQLiteOrderStore(path) as store:
            pending = store.pending_events()
            assert pending == [event]
            assert pending[0].event_id == event.event_id

            store.mark_event_published(event.event_id)
            assert store.pending_events() == []

    def test_stale_write_stores_no_event(self, sqlite_store, make_order, clock):
        order = make_order()
        sqlite_store.add(order)
        sqlite_store.cas_update_timeout_status(order.id, 0, _warning_update())

        assert sqlite_store.cas_update_timeout_status(order.id, 0, _warning_update(), _warning_event(order, clock)) is False
        assert sqlite_store.pending_events() == []

    def test_duplicate_event_id_rolls_back_write(self, sqlite_store, make_order, clock):
        order = make_order()
        sqlite_store.add(order)
        event = _warning_event(order, clock)
        sqlite_store.cas_update_timeout_status(order.id, 0, _warning_update(), event)

        with pytest.raises(OrderStoreError):
            sqlite_store.cas_update_timeout_status(order.id, 1, _warning_update(count=1), event)
        loaded = sqlite_store.get(order.id)
        assert loaded.version == 1
        assert loaded.timeout_count == 0

    def test_next_process_replays_unpublished_event(self, tmp_path, make_order, clock):
        path = tmp_path / "orders.db"
        order = make_order(OrderType.MAIL, "PENDING", created_minutes_ago=49)

        def broker_down(event):
            raise ConnectionError("broker unreachable")

        with SQLiteOrderStore(path) as store:
            store.add(order)
            engine = TimeoutDetectionEngine(store, clock=clock)
            engine.add_listener(broker_down)
            committed = engine.sweep()

        with SQLiteOrderStore(path) as store:
            engine = TimeoutDetectionEngine(store, clock=clock)
            published = []
            engine.add_listener(published.append)
            assert engine.sweep() == []

            assert [e.event_id for e in published] == [committed[0].event_id]
            assert published[0].to_status is TimeoutStatus.PICKUP_TIMEOUT_WARNING
            assert store.pending_events() == []


class TestBusinessStatus:

    def test_update_sets_status_and_timestamp(self, sqlite_store, make_order, clock):
        order = make_order()
        sqlite_store.add(order)
        sqlite_store.update_business_status(order.id, "IN_TRANSIT", assigned_time=clock.now())

        loaded = sqlite_store.get(order.id)
        assert loaded.order_status == "IN_TRANSIT"
        assert loaded.assigned_time == clock.now()
        assert loaded.version == 0

    def test_timeout_fields_cannot_be_written_this_way(self, sqlite_store, make_order):
        order = make_order()
        sqlite_store.add(order)
        with pytest.raises(ValueError):
            sqlite_store.update_business_status(order.id, "PENDING", timeout_count=5)

    def test_unknown_order_raises(self, sqlite_store):
        with pytest.raises(OrderNotFoundError):
            sqlite_store.update_business_status(42, "IN_TRANSIT")


def test_two_engines_on_one_database_count_once(tmp_path, make_order, clock):
    path = tmp_path / "orders.db"
    with SQLiteOrderStore(path) as first, SQLiteOrderStore(path) as second:
        order = make_order(OrderType.MAIL, "PENDING", created_minutes_ago=61)
        first.add(order)

        events_a = TimeoutDetectionEngine(first, clock=clock).sweep()
        events_b = TimeoutDetectionEngine(second, clock=clock).sweep()

        assert len(events_a) + len(events_b) == 1
        loaded = second.get(order.id)
        assert loaded.timeout_count == 1
        assert loaded.version == 1
