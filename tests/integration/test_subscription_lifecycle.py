"""Integration tests for complete subscription lifecycle scenarios.

The virtual clock drives scheduled events through the real engine,
stores and event dispatcher.
"""
from decimal import Decimal

import pytest

from billing_lifecycle.models import events
from billing_lifecycle.models.order import OrderStatus
from billing_lifecycle.models.subscription import DateType, SubscriptionStatus
from billing_lifecycle.utils.date_schedule import add_periods
from tests.conftest import DAY, T0


@pytest.fixture
def trial_subscription(engine, order_store):
    """Monthly stripe subscription with a paid parent order and a 7 day trial."""
    subscription = engine.create_subscription(
        dates={"start": T0, "trial_end": T0 + 7 * DAY, "next_payment": T0 + 7 * DAY},
        create_parent_order=True,
        status="active",
        payment_method="stripe",
        billing_period="month",
        total=Decimal("10.00"),
    )
    order_store.mark_paid(subscription.record.parent_order_id, T0)
    return subscription


class TestRenewalCycle:
    """Trial, automatic renewals, a failed payment and its recovery."""

    def test_trial_then_monthly_renewals(self, engine, clock, trial_subscription, order_store, dispatcher):
        subscription_id = trial_subscription.id

        # Trial ends: first renewal is due
        result = clock.advance_time(days=7)
        assert result["events_processed"]["payment_due"] == [subscription_id]
        assert engine.get_subscription(subscription_id).status == SubscriptionStatus.ON_HOLD

        subscription = engine.payment_complete(subscription_id, transaction_id="txn_1")
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.record.suspension_count == 0
        assert subscription.get_time(DateType.NEXT_PAYMENT) == T0 + 38 * DAY
        assert subscription.get_payment_count() == 2

        # Second renewal: the card is declined
        result = clock.advance_time(days=31)
        assert result["events_processed"]["payment_due"] == [subscription_id]
        renewal = engine.services.related_orders.get_last_order(engine.get_subscription(subscription_id).record)

        engine.update_order_status(renewal.id, OrderStatus.FAILED)
        subscription = engine.get_subscription(subscription_id)
        assert subscription.status == SubscriptionStatus.ON_HOLD
        assert subscription.record.suspension_count == 1
        assert subscription.get_failed_payment_count() == 1

        # No new renewal while on-hold
        result = clock.advance_time(days=2)
        assert result["events_processed"]["payment_due"] == []

        # Customer pays the failed order
        engine.update_order_status(renewal.id, OrderStatus.COMPLETED)
        subscription = engine.get_subscription(subscription_id)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.record.suspension_count == 0
        assert subscription.get_time(DateType.NEXT_PAYMENT) == add_periods(1, "month", T0 + 40 * DAY)
        assert subscription.get_payment_count() == 3
        assert dispatcher.events_named(events.PAID_FOR_FAILED_RENEWAL_ORDER, subscription_id)
        assert order_store.count() == 3


class TestFixedTerm:
    """A subscription with an end date renews once and then expires."""

    def test_renews_then_expires(self, engine, clock, order_store):
        subscription = engine.create_subscription(
            dates={"start": T0, "next_payment": T0 + 31 * DAY, "end": T0 + 45 * DAY},
            create_parent_order=True,
            status="active",
            payment_method="stripe",
            total=Decimal("10.00"),
        )
        order_store.mark_paid(subscription.record.parent_order_id, T0)

        clock.advance_time(days=31)
        engine.payment_complete(subscription.id)

        result = clock.advance_time(days=14)

        assert result["events_processed"]["expired"] == [subscription.id]
        assert result["events_processed"]["payment_due"] == []
        expired = engine.get_subscription(subscription.id)
        assert expired.status == SubscriptionStatus.EXPIRED
        assert expired.get_time(DateType.END) == T0 + 45 * DAY
        assert expired.get_time(DateType.NEXT_PAYMENT) == 0
        assert expired.get_payment_count() == 2
        assert order_store.count() == 2


class TestCancellation:
    """Customer cancellations keep the prepaid term."""

    def test_cancel_runs_out_prepaid_term(self, engine, clock, make_subscription, order_store):
        subscription = make_subscription(dates={"start": T0 - 20 * DAY, "next_payment": T0 + 11 * DAY})

        subscription.cancel_order("Customer cancelled online.")
        assert subscription.status == SubscriptionStatus.PENDING_CANCEL
        assert subscription.get_time(DateType.END) == T0 + 11 * DAY

        result = clock.advance_time(days=11)

        assert result["events_processed"]["end_of_prepaid_term"] == [subscription.id]
        assert result["events_processed"]["payment_due"] == []
        cancelled = engine.get_subscription(subscription.id)
        assert cancelled.status == SubscriptionStatus.CANCELLED
        assert cancelled.get_time(DateType.CANCELLED) == T0
        assert order_store.count() == 0

    def test_reactivation_resumes_billing(self, engine, clock, make_subscription, order_store):
        """Undoing a cancellation bills again at the end of the prepaid term."""
        subscription = make_subscription(dates={"start": T0 - 20 * DAY, "next_payment": T0 + 11 * DAY})
        subscription.cancel_order()

        clock.advance_time(days=5)
        subscription = engine.get_subscription(subscription.id)
        subscription.update_status("active", manual=True)

        assert subscription.get_time(DateType.NEXT_PAYMENT) == T0 + 11 * DAY
        assert subscription.get_time(DateType.END) == 0
        assert subscription.get_time(DateType.CANCELLED) == 0

        result = clock.advance_time(days=6)

        assert result["events_processed"]["payment_due"] == [subscription.id]
        assert result["events_processed"]["end_of_prepaid_term"] == []
        assert order_store.count() == 1
