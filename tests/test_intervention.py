"""
Manual intervention and reassignment reset.

INVARIANT:
    Operator writes use the same version-checked update as the sweep. A reset
    keeps timeout_count and the warning flag; a forced intervention sets
    intervention_time once and is a no-op thereafter, and is refused while
    timeout_count is below the archive threshold. Manual events go through
    the same store outbox as the sweep's.

WHY THIS MATTERS:
    An operator action racing a sweep must not erase the sweep's write, and
    a double-clicked "escalate" must not archive the order twice.
"""

import pytest

from campus.timeout import (
    InterventionService,
    InMemoryOrderStore,
    TimeoutDetectionEngine,
    TimeoutStatus,
    OrderType,
    OrderNotFoundError,
    ConcurrencyConflictError,
    InterventionNotAllowedError,
)


class AlwaysConflictingStore(InMemoryOrderStore):
    def cas_update_timeout_status(self, order_id, expected_version, update, event=None):
        return False


@pytest.fixture
def service(order_store, archiver, clock):
    svc = InterventionService(order_store, archiver=archiver, clock=clock)
    svc.emitted = []
    svc.add_listener(svc.emitted.append)
    return svc


class TestResetForReassignment:

    def test_reset_allows_new_handler_to_time_out_again(self, service, order_store, make_order, clock):
        order = make_order(OrderType.MAIL, "PENDING", created_minutes_ago=61)
        order_store.add(order)
        engine = TimeoutDetectionEngine(order_store, clock=clock)
        engine.sweep()
        assert order_store.get(order.id).timeout_status is TimeoutStatus.PICKUP_TIMEOUT

        assert service.reset_for_reassignment(order.id) is True
        stored = order_store.get(order.id)
        assert stored.timeout_status is TimeoutStatus.NORMAL
        assert stored.timeout_count == 1

        events = engine.sweep()
        assert [e.to_status for e in events] == [TimeoutStatus.PICKUP_TIMEOUT]
        assert order_store.get(order.id).timeout_count == 2

    def test_reset_of_normal_order_is_noop(self, service, order_store, make_order):
        order = make_order()
        order_store.add(order)

        assert service.reset_for_reassignment(order.id) is False
        assert order_store.get(order.id).version == 0
        assert service.emitted == []

    def test_reset_emits_manual_event(self, service, order_store, make_order):
        order = make_order(timeout_status=TimeoutStatus.PICKUP_TIMEOUT_WARNING, timeout_warning_sent=True)
        order_store.add(order)

        service.reset_for_reassignment(order.id)
        event = service.emitted[0]
        assert event.from_status is TimeoutStatus.PICKUP_TIMEOUT_WARNING
        assert event.to_status is TimeoutStatus.NORMAL
        assert event.metadata == {"source": "manual"}
        assert order_store.get(order.id).timeout_warning_sent is True


class TestForceIntervention:

    def test_sets_intervention_and_archives_once(self, service, order_store, make_order, archiver, clock):
        order = make_order(OrderType.SHOPPING, "ASSIGNED", timeout_count=4)
        order_store.add(order)

        assert service.force_intervention(order.id) is True
        assert service.force_intervention(order.id) is False

        stored = order_store.get(order.id)
        assert stored.intervention_time == clock.now()
        assert stored.timeout_count == 4
        assert archiver.archived == [order.order_number]
        assert len(service.emitted) == 1
        assert service.emitted[0].intervention_triggered is True
        assert service.emitted[0].to_status is TimeoutStatus.NORMAL
        assert order_store.pending_events() == []

    def test_refused_below_archive_threshold(self, service, order_store, make_order, archiver):
        order = make_order(OrderType.SHOPPING, "ASSIGNED", timeout_count=3)
        order_store.add(order)

        with pytest.raises(InterventionNotAllowedError):
            service.force_intervention(order.id)

        stored = order_store.get(order.id)
        assert stored.intervention_time is None
        assert stored.version == 0
        assert archiver.archived == []
        assert service.emitted == []

    def test_intervened_order_leaves_sweep(self, service, order_store, make_order, clock):
        order = make_order(OrderType.MAIL, "PENDING", created_minutes_ago=120, timeout_count=3)
        order_store.add(order)
        assert service.force_intervention(order.id) is True

        assert TimeoutDetectionEngine(order_store, clock=clock).sweep() == []


class TestFailures:

    def test_unknown_order_raises(self, service):
        with pytest.raises(OrderNotFoundError):
            service.force_intervention(12345)
        with pytest.raises(OrderNotFoundError):
            service.reset_for_reassignment(12345)

    def test_bounded_retries_then_conflict_error(self, make_order, clock):
        store = AlwaysConflictingStore()
        order = make_order(timeout_count=3)
        store.add(order)
        svc = InterventionService(store, clock=clock, max_cas_retries=2)

        with pytest.raises(ConcurrencyConflictError):
            svc.force_intervention(order.id)
        assert store.get(order.id).intervention_time is None

    def test_rejected_manual_event_replayed_by_next_sweep(self, order_store, make_order, clock):
        svc = InterventionService(order_store, clock=clock)

        def broken_listener(event):
            raise ConnectionError("broker down")

        svc.add_listener(broken_listener)
        order = make_order(timeout_status=TimeoutStatus.PICKUP_TIMEOUT, timeout_count=1)
        order_store.add(order)

        assert svc.reset_for_reassignment(order.id) is True
        pending = order_store.pending_events()
        assert [e.to_status for e in pending] == [TimeoutStatus.NORMAL]

        engine = TimeoutDetectionEngine(order_store, clock=clock)
        replayed = []
        engine.add_listener(replayed.append)
        engine.sweep()

        assert [e.event_id for e in replayed] == [pending[0].event_id]
        assert replayed[0].metadata == {"source": "manual"}
        assert order_store.pending_events() == []
