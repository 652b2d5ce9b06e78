"""Tests for SubscriptionStore - in-memory subscription storage."""

from decimal import Decimal
from threading import Thread

import pytest

from billing_lifecycle.models.subscription import (
    DateType,
    SubscriptionRecord,
    SubscriptionStatus,
)
from billing_lifecycle.repositories.subscription_store import (
    SubscriptionNotFoundError,
    SubscriptionStore,
    get_subscription_store,
    reset_subscription_store,
)
from tests.conftest import DAY, T0


@pytest.fixture
def store():
    """Create a fresh SubscriptionStore instance for testing."""
    store = SubscriptionStore()
    yield store
    store.clear()


@pytest.fixture
def sample_subscription():
    """Create a sample subscription for testing."""
    return SubscriptionRecord(
        id=1,
        status=SubscriptionStatus.ACTIVE,
        dates={DateType.START: T0, DateType.NEXT_PAYMENT: T0 + 31 * DAY},
        payment_method="stripe",
        total=Decimal("29.99"),
    )


@pytest.fixture
def sample_subscription_2():
    """Create a second sample subscription for testing."""
    return SubscriptionRecord(
        id=2,
        status=SubscriptionStatus.ON_HOLD,
        dates={DateType.START: T0, DateType.NEXT_PAYMENT: T0 + 7 * DAY},
        payment_method="paypal",
        requires_manual_renewal=True,
        total=Decimal("14.99"),
    )


class TestAddAndGet:
    """Test adding and reading subscriptions."""

    def test_add_and_get(self, store, sample_subscription):
        store.add(sample_subscription)

        retrieved = store.get_by_id(1)
        assert retrieved == sample_subscription
        assert len(store) == 1
        assert 1 in store

    def test_add_duplicate_raises(self, store, sample_subscription):
        store.add(sample_subscription)
        with pytest.raises(ValueError, match="already exists"):
            store.add(sample_subscription)

    def test_get_unknown_raises(self, store):
        with pytest.raises(SubscriptionNotFoundError):
            store.get_by_id(99)

    def test_find_unknown_returns_none(self, store):
        assert store.find_by_id(99) is None

    def test_records_are_copies(self, store, sample_subscription):
        """Changes to a read record are not visible until saved."""
        store.add(sample_subscription)

        record = store.get_by_id(1)
        record.status = SubscriptionStatus.CANCELLED
        record.dates[DateType.END] = T0

        stored = store.get_by_id(1)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert DateType.END not in stored.dates

        store.save(record)
        assert store.get_by_id(1).status == SubscriptionStatus.CANCELLED


class TestIds:
    """Test id reservation."""

    def test_next_id_increments(self, store):
        assert store.next_id() == 1
        assert store.next_id() == 2

    def test_next_id_skips_taken_ids(self, store, sample_subscription):
        store.add(sample_subscription)
        assert store.next_id() == 2

    def test_clear_resets_ids(self, store):
        store.next_id()
        store.clear()
        assert store.next_id() == 1


class TestPartialSaves:
    """Test date-only saves and notes."""

    def test_save_dates_only(self, store, sample_subscription):
        store.add(sample_subscription)
        record = store.get_by_id(1)
        record.status = SubscriptionStatus.CANCELLED
        record.dates[DateType.END] = T0 + 40 * DAY
        del record.dates[DateType.NEXT_PAYMENT]

        applied = store.save_dates(record)

        assert applied == {DateType.END: T0 + 40 * DAY, DateType.NEXT_PAYMENT: 0}
        stored = store.get_by_id(1)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.dates == {DateType.START: T0, DateType.END: T0 + 40 * DAY}

    def test_save_dates_requires_stored_record(self, store, sample_subscription):
        with pytest.raises(SubscriptionNotFoundError):
            store.save_dates(sample_subscription)

    def test_append_note(self, store, sample_subscription):
        store.add(sample_subscription)
        store.append_note(1, "Payment failed.")
        assert store.get_by_id(1).notes == ["Payment failed."]


class TestQueries:
    """Test status and schedule queries."""

    def test_get_by_status(self, store, sample_subscription, sample_subscription_2):
        store.add(sample_subscription)
        store.add(sample_subscription_2)

        assert [s.id for s in store.get_by_status(SubscriptionStatus.ON_HOLD)] == [2]

    def test_get_due_orders_by_date(self, store, sample_subscription, sample_subscription_2):
        store.add(sample_subscription)
        store.add(sample_subscription_2)

        due = store.get_due(DateType.NEXT_PAYMENT, T0 + 31 * DAY)
        assert [s.id for s in due] == [2, 1]

    def test_get_due_filters_status_and_time(self, store, sample_subscription, sample_subscription_2):
        store.add(sample_subscription)
        store.add(sample_subscription_2)

        assert [s.id for s in store.get_due(DateType.NEXT_PAYMENT, T0 + 31 * DAY, [SubscriptionStatus.ACTIVE])] == [1]
        assert store.get_due(DateType.NEXT_PAYMENT, T0 + 6 * DAY) == []
        assert store.get_due(DateType.END, T0 + 365 * DAY) == []

    def test_statistics(self, store, sample_subscription, sample_subscription_2):
        store.add(sample_subscription)
        store.add(sample_subscription_2)

        stats = store.get_statistics()

        assert stats["total_subscriptions"] == 2
        assert stats["active"] == 1
        assert stats["on-hold"] == 1
        assert stats["cancelled"] == 0
        assert stats["manual_renewal"] == 1


class TestRemove:
    def test_remove(self, store, sample_subscription):
        store.add(sample_subscription)
        store.remove(1)
        assert not store.exists(1)

    def test_remove_unknown_raises(self, store):
        with pytest.raises(SubscriptionNotFoundError):
            store.remove(1)


class TestThreadSafety:
    """Test concurrent access."""

    def test_concurrent_id_reservation(self, store):
        reserved = []

        def reserve():
            for _ in range(100):
                reserved.append(store.next_id())

        threads = [Thread(target=reserve) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(set(reserved)) == 500


class TestGlobalStore:
    def test_singleton(self):
        assert get_subscription_store() is get_subscription_store()

    def test_reset_clears(self, sample_subscription):
        get_subscription_store().save(sample_subscription)
        reset_subscription_store()
        assert len(get_subscription_store()) == 0
