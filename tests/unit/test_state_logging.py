"""Tests for state change logging.

State changes on subscription and order records are logged with their
before/after values.
"""

from decimal import Decimal
from unittest.mock import patch

import pytest

from billing_lifecycle.models.order import OrderRecord, OrderStatus
from billing_lifecycle.models.subscription import DateType, SubscriptionRecord, SubscriptionStatus
from billing_lifecycle.state_logger import (
    log_date_change,
    log_payment_count_cache_reset,
    log_subscription_status_change,
)


@pytest.fixture
def subscription():
    """Active subscription record."""
    return SubscriptionRecord(
        id=1042,
        status=SubscriptionStatus.ACTIVE,
        dates={DateType.START: 1704067200, DateType.NEXT_PAYMENT: 1706745600},
        payment_method="stripe",
        total=Decimal("19.99"),
    )


@pytest.fixture
def order():
    return OrderRecord(id=1043, status=OrderStatus.PENDING, total=Decimal("19.99"))


@pytest.fixture
def state_logger():
    with patch("billing_lifecycle.state_logger.logger") as mock_logger:
        yield mock_logger


class TestSubscriptionStateChanges:
    """Test logging of subscription record changes."""

    def test_status_change(self, state_logger, subscription):
        subscription.set_status(SubscriptionStatus.ON_HOLD, reason="Payment failed")

        state_logger.info.assert_called_once_with(
            "subscription_status_changed",
            subscription_id=1042,
            old_status="active",
            new_status="on-hold",
            reason="Payment failed",
        )

    def test_same_status_is_not_logged(self, state_logger, subscription):
        subscription.set_status(SubscriptionStatus.ACTIVE)
        state_logger.info.assert_not_called()

    def test_date_set(self, state_logger, subscription):
        subscription.set_date(DateType.END, 1735689600)

        state_logger.info.assert_called_once_with(
            "subscription_date_changed",
            subscription_id=1042,
            date_type="end",
            old_date=None,
            new_date="2025-01-01T00:00:00+00:00",
            cleared=False,
        )

    def test_date_cleared(self, state_logger, subscription):
        subscription.set_date(DateType.NEXT_PAYMENT, 0)

        assert DateType.NEXT_PAYMENT not in subscription.dates
        _, kwargs = state_logger.info.call_args
        assert kwargs["cleared"] is True
        assert kwargs["old_date"] == "2024-02-01T00:00:00+00:00"

    def test_unchanged_date_is_not_logged(self, state_logger, subscription):
        subscription.set_date(DateType.START, 1704067200)
        state_logger.info.assert_not_called()

    def test_suspension_count(self, state_logger, subscription):
        subscription.increment_suspension_count()
        subscription.increment_suspension_count()
        subscription.reset_suspension_count()

        assert subscription.suspension_count == 0
        counts = [
            (call.kwargs["old_count"], call.kwargs["new_count"])
            for call in state_logger.info.call_args_list
        ]
        assert counts == [(0, 1), (1, 2), (2, 0)]

    def test_reset_of_zero_count_is_not_logged(self, state_logger, subscription):
        subscription.reset_suspension_count()
        state_logger.info.assert_not_called()


class TestOrderStateChanges:
    """Test logging of order status changes."""

    def test_order_status_change(self, state_logger, order):
        order.set_status(OrderStatus.FAILED, reason="Card declined")

        state_logger.info.assert_called_once_with(
            "order_status_changed",
            order_id=1043,
            old_status="pending",
            new_status="failed",
            reason="Card declined",
        )

    def test_payment_then_refund(self, state_logger, order):
        order.set_status(OrderStatus.PROCESSING)
        order.set_status(OrderStatus.REFUNDED)

        statuses = [call.kwargs["new_status"] for call in state_logger.info.call_args_list]
        assert statuses == ["processing", "refunded"]


class TestDirectLogging:
    """Test the logging helpers directly."""

    def test_extra_context(self, state_logger):
        log_subscription_status_change(1042, "active", "cancelled", trigger="max_failed_payments")
        _, kwargs = state_logger.info.call_args
        assert kwargs["trigger"] == "max_failed_payments"
        assert kwargs["reason"] is None

    def test_date_change_formats_timestamps(self, state_logger):
        log_date_change(1042, "trial_end", 1704067200, 1704672000)
        _, kwargs = state_logger.info.call_args
        assert kwargs["old_date"] == "2024-01-01T00:00:00+00:00"
        assert kwargs["new_date"] == "2024-01-08T00:00:00+00:00"

    def test_cache_reset_is_debug(self, state_logger):
        log_payment_count_cache_reset(1042, 2)
        state_logger.debug.assert_called_once_with(
            "payment_count_cache_reset", subscription_id=1042, cached_types=2
        )


@pytest.mark.parametrize(
    "target_status,reason",
    [
        (SubscriptionStatus.PENDING_CANCEL, "Customer cancelled"),
        (SubscriptionStatus.CANCELLED, None),
        (SubscriptionStatus.EXPIRED, "End date reached"),
    ],
)
def test_subscription_status_transitions(state_logger, subscription, target_status, reason):
    subscription.set_status(target_status, reason=reason)
    _, kwargs = state_logger.info.call_args
    assert kwargs["new_status"] == target_status.value
    assert kwargs["reason"] == reason
