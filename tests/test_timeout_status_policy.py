"""
Timeout status classification and policy table.

INVARIANT:
    Every status carries its own classification: warnings are MEDIUM,
    timeouts are HIGH, NORMAL is LOW and needs no notification. Policies are
    immutable, validated on construction, and sweep order follows priority.

WHY THIS MATTERS:
    Notification routing and statistics read these flags directly; a
    misclassified status would silence a timeout or spam a warning.
"""

from datetime import timedelta

import pytest

from campus.config import TimeoutConfig
from campus.timeout import (
    TimeoutStatus,
    TimeoutPhase,
    Severity,
    TimeoutPolicy,
    PolicyTable,
    OrderType,
    PolicyNotFoundError,
    DEFAULT_POLICIES,
)


class TestTimeoutStatus:

    @pytest.mark.parametrize("status", [
        TimeoutStatus.PICKUP_TIMEOUT_WARNING,
        TimeoutStatus.DELIVERY_TIMEOUT_WARNING,
        TimeoutStatus.CONFIRMATION_TIMEOUT_WARNING,
    ])
    def test_warnings_are_medium_and_notify(self, status):
        assert status.is_warning
        assert not status.is_timeout
        assert status.requires_notification
        assert status.severity is Severity.MEDIUM
        assert not status.is_critical

    @pytest.mark.parametrize("status", [
        TimeoutStatus.PICKUP_TIMEOUT,
        TimeoutStatus.DELIVERY_TIMEOUT,
        TimeoutStatus.CONFIRMATION_TIMEOUT,
    ])
    def test_timeouts_are_high_and_notify(self, status):
        assert status.is_timeout
        assert not status.is_warning
        assert status.requires_notification
        assert status.severity is Severity.HIGH

    def test_normal_is_quiet(self):
        status = TimeoutStatus.NORMAL
        assert not status.requires_notification
        assert status.severity is Severity.LOW
        assert status.phase is None
        assert status.handling_suggestion == "No action required"

    def test_only_pickup_and_delivery_timeouts_are_critical(self):
        critical = {s for s in TimeoutStatus if s.is_critical}
        assert critical == {TimeoutStatus.PICKUP_TIMEOUT, TimeoutStatus.DELIVERY_TIMEOUT}

    def test_from_code_accepts_code_and_name(self):
        assert TimeoutStatus.from_code("PICKUP_WARNING") is TimeoutStatus.PICKUP_TIMEOUT_WARNING
        assert TimeoutStatus.from_code("PICKUP_TIMEOUT_WARNING") is TimeoutStatus.PICKUP_TIMEOUT_WARNING
        assert TimeoutStatus.from_code("DELIVERY_TIMEOUT") is TimeoutStatus.DELIVERY_TIMEOUT

    @pytest.mark.parametrize("code", [None, "", "SOMETHING_ELSE"])
    def test_from_code_defaults_to_normal(self, code):
        assert TimeoutStatus.from_code(code) is TimeoutStatus.NORMAL

    def test_phase_lookup_round_trips(self):
        for phase in TimeoutPhase:
            assert TimeoutStatus.warning_for(phase).phase is phase
            assert TimeoutStatus.timeout_for(phase).phase is phase


class TestTimeoutPolicy:

    def test_default_numbers(self):
        mail = DEFAULT_POLICIES[OrderType.MAIL]
        assert (mail.default_timeout_minutes, mail.warning_threshold_ratio,
                mail.archive_threshold, mail.priority) == (60, 0.8, 3, 3)
        shopping = DEFAULT_POLICIES[OrderType.SHOPPING]
        assert (shopping.default_timeout_minutes, shopping.archive_threshold) == (90, 4)
        purchase = DEFAULT_POLICIES[OrderType.PURCHASE_REQUEST]
        assert (purchase.default_timeout_minutes, purchase.archive_threshold) == (120, 5)

    def test_mail_warning_at_48_minutes(self):
        policy = DEFAULT_POLICIES[OrderType.MAIL]
        assert policy.timeout_for(TimeoutPhase.PICKUP) == timedelta(minutes=60)
        assert policy.warning_for(TimeoutPhase.PICKUP) == timedelta(minutes=48)

    def test_phase_override(self):
        shopping = DEFAULT_POLICIES[OrderType.SHOPPING]
        assert shopping.timeout_for(TimeoutPhase.PICKUP) == timedelta(minutes=45)
        assert shopping.timeout_for(TimeoutPhase.DELIVERY) == timedelta(minutes=90)
        assert shopping.timeout_for(TimeoutPhase.CONFIRMATION) == timedelta(hours=24)

    def test_policy_is_immutable(self):
        policy = DEFAULT_POLICIES[OrderType.MAIL]
        with pytest.raises(AttributeError):
            policy.default_timeout_minutes = 5

    @pytest.mark.parametrize("kwargs", [
        dict(default_timeout_minutes=0),
        dict(warning_threshold_ratio=1.0),
        dict(warning_threshold_ratio=0.0),
        dict(archive_threshold=0),
    ])
    def test_invalid_policy_rejected(self, kwargs):
        base = dict(order_type=OrderType.MAIL, default_timeout_minutes=60,
                    warning_threshold_ratio=0.8, archive_threshold=3, priority=1)
        base.update(kwargs)
        with pytest.raises(ValueError):
            TimeoutPolicy(**base)


class TestPolicyTable:

    def test_priority_order_descending(self):
        table = PolicyTable()
        assert table.order_types_by_priority() == [
            OrderType.MAIL, OrderType.SHOPPING, OrderType.PURCHASE_REQUEST,
        ]

    def test_missing_policy_raises(self):
        table = PolicyTable({OrderType.MAIL: DEFAULT_POLICIES[OrderType.MAIL]})
        with pytest.raises(PolicyNotFoundError):
            table.get(OrderType.SHOPPING)

    def test_from_config_applies_overrides(self):
        config = TimeoutConfig(policies={
            "MAIL": {"default_timeout_minutes": 30, "warning_threshold_ratio": 0.5,
                     "archive_threshold": 2, "priority": 9,
                     "phase_timeout_minutes": {"CONFIRMATION": 600}},
        })
        table = PolicyTable.from_config(config)
        mail = table.get(OrderType.MAIL)
        assert mail.default_timeout_minutes == 30
        assert mail.archive_threshold == 2
        assert mail.timeout_for(TimeoutPhase.CONFIRMATION) == timedelta(minutes=600)
        # unlisted types keep their defaults
        assert table.get(OrderType.SHOPPING).default_timeout_minutes == 90
        assert table.order_types_by_priority()[0] is OrderType.MAIL
