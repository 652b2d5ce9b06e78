"""Tests for RetryStore - in-memory payment retry storage."""

import pytest

from billing_lifecycle.models.retry import RetryStatus
from billing_lifecycle.models.settings import RetryRule
from billing_lifecycle.repositories.retry_store import (
    RetryNotFoundError,
    RetryStore,
    get_retry_store,
    reset_retry_store,
)
from tests.conftest import HOUR, T0


@pytest.fixture
def store():
    return RetryStore()


@pytest.fixture
def rule():
    return RetryRule(retry_after_interval=12 * HOUR)


class TestCreate:
    """Test storing retries."""

    def test_new_retry_is_pending(self, store, rule):
        retry = store.create(7, T0 + 12 * HOUR, rule)

        assert retry.id == 1
        assert retry.order_id == 7
        assert retry.status == RetryStatus.PENDING
        assert retry.is_pending()
        assert retry.rule.status_to_apply_to_subscription == "on-hold"
        assert store.get_by_id(retry.id) is retry

    def test_retries_are_kept_per_order_oldest_first(self, store, rule):
        first = store.create(7, T0, rule)
        store.create(8, T0, rule)
        second = store.create(7, T0 + HOUR, rule)

        assert store.get_retry_ids_for_order(7) == [first.id, second.id]
        assert store.get_retry_count_for_order(7) == 2
        assert store.get_last_retry_for_order(7) is second
        assert len(store) == 3

    def test_order_without_retries(self, store):
        assert store.get_retry_ids_for_order(7) == []
        assert store.get_retry_count_for_order(7) == 0
        assert store.get_last_retry_for_order(7) is None


class TestUpdate:
    """Test changing and removing retries."""

    def test_update_status(self, store, rule):
        retry = store.create(7, T0, rule)

        store.update_status(retry.id, RetryStatus.PROCESSING)

        assert store.get_by_id(retry.id).status == RetryStatus.PROCESSING
        assert not retry.is_pending()

    def test_unknown_retry(self, store):
        with pytest.raises(RetryNotFoundError):
            store.update_status(99, RetryStatus.FAILED)

    def test_delete_retries_for_order(self, store, rule):
        retry = store.create(7, T0, rule)
        store.create(7, T0 + HOUR, rule)
        kept = store.create(8, T0, rule)

        assert store.delete_retries_for_order(7) == 2

        assert store.get_retry_count_for_order(7) == 0
        assert len(store) == 1
        assert store.get_by_id(kept.id) is kept
        with pytest.raises(RetryNotFoundError):
            store.get_by_id(retry.id)

    def test_clear_resets_ids(self, store, rule):
        store.create(7, T0, rule)
        store.clear()

        assert len(store) == 0
        assert store.create(7, T0, rule).id == 1


class TestGlobalStore:
    def test_singleton(self, rule):
        assert get_retry_store() is get_retry_store()

        get_retry_store().create(7, T0, rule)
        reset_retry_store()

        assert len(get_retry_store()) == 0
