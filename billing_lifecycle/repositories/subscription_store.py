"""Subscription store - in-memory persistence for subscription records.

The store keeps its own copies of records: changes made to a record
are only visible to other readers after save() or save_dates().
"""

import threading
from typing import Dict, Iterable, List, Optional

from billing_lifecycle.models.subscription import (
    DateType,
    SubscriptionRecord,
    SubscriptionStatus,
)


class SubscriptionNotFoundError(Exception):
    """Raised when a subscription is not found in the store."""

    pass


class SubscriptionStore:
    """In-memory storage for subscription records.

    Thread-safe storage with lookup by id and status, and time-based
    queries for scheduled events (payment due, end of term, retries).
    """

    def __init__(self):
        """Initialize subscription store with empty storage."""
        self._subscriptions: Dict[int, SubscriptionRecord] = {}
        self._lock = threading.RLock()
        self._next_id = 1

    def next_id(self) -> int:
        """Reserve the next subscription id."""
        with self._lock:
            while self._next_id in self._subscriptions:
                self._next_id += 1
            subscription_id = self._next_id
            self._next_id += 1
            return subscription_id

    def add(self, subscription: SubscriptionRecord) -> None:
        """Add a subscription to the store.

        Args:
            subscription: SubscriptionRecord to store

        Raises:
            ValueError: If subscription id already exists
        """
        with self._lock:
            if subscription.id in self._subscriptions:
                raise ValueError(f"Subscription with id '{subscription.id}' already exists")
            self._subscriptions[subscription.id] = subscription.model_copy(deep=True)

    def get_by_id(self, subscription_id: int) -> SubscriptionRecord:
        """Get subscription by id.

        Args:
            subscription_id: Subscription identifier

        Returns:
            Copy of the stored SubscriptionRecord

        Raises:
            SubscriptionNotFoundError: If id not found
        """
        with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            if subscription is None:
                raise SubscriptionNotFoundError(f"Subscription not found for id: {subscription_id}")
            return subscription.model_copy(deep=True)

    def find_by_id(self, subscription_id: int) -> Optional[SubscriptionRecord]:
        """Find subscription by id (returns None if not found)."""
        with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            return subscription.model_copy(deep=True) if subscription else None

    def save(self, subscription: SubscriptionRecord) -> None:
        """Persist the whole record (insert or replace).

        Args:
            subscription: SubscriptionRecord to store
        """
        with self._lock:
            self._subscriptions[subscription.id] = subscription.model_copy(deep=True)

    def save_dates(self, subscription: SubscriptionRecord) -> Dict[DateType, int]:
        """Persist only the schedule dates of a record.

        Args:
            subscription: Record whose dates should be written

        Returns:
            Mapping of the date types that changed to their new value (0 = deleted)

        Raises:
            SubscriptionNotFoundError: If the subscription was never saved
        """
        with self._lock:
            stored = self._subscriptions.get(subscription.id)
            if stored is None:
                raise SubscriptionNotFoundError(f"Subscription not found for id: {subscription.id}")

            applied: Dict[DateType, int] = {}
            for date_type in set(stored.dates) | set(subscription.dates):
                new_value = subscription.get_stored_date(date_type)
                if stored.get_stored_date(date_type) != new_value:
                    applied[date_type] = new_value

            stored.dates = dict(subscription.dates)
            return applied

    def append_note(self, subscription_id: int, note: str) -> None:
        """Add a note to the stored record's audit trail."""
        with self._lock:
            stored = self._subscriptions.get(subscription_id)
            if stored is None:
                raise SubscriptionNotFoundError(f"Subscription not found for id: {subscription_id}")
            stored.notes.append(note)

    def get_by_status(self, status: SubscriptionStatus) -> List[SubscriptionRecord]:
        """Get all subscriptions in a specific status."""
        with self._lock:
            return [s.model_copy(deep=True) for s in self._subscriptions.values() if s.status == status]

    def get_due(
        self,
        date_type: DateType,
        at_time: int,
        statuses: Optional[Iterable[SubscriptionStatus]] = None,
    ) -> List[SubscriptionRecord]:
        """Get subscriptions whose date is set and falls at or before a time.

        Args:
            date_type: Date to check (e.g. DateType.NEXT_PAYMENT)
            at_time: UTC timestamp
            statuses: Only include subscriptions in these statuses

        Returns:
            Copies of matching records, oldest date first
        """
        allowed = set(statuses) if statuses is not None else None
        with self._lock:
            due = [
                s
                for s in self._subscriptions.values()
                if 0 < s.get_stored_date(date_type) <= at_time
                and (allowed is None or s.status in allowed)
            ]
            due.sort(key=lambda s: (s.get_stored_date(date_type), s.id))
            return [s.model_copy(deep=True) for s in due]

    def remove(self, subscription_id: int) -> None:
        """Remove a subscription from the store.

        Raises:
            SubscriptionNotFoundError: If id not found
        """
        with self._lock:
            if subscription_id not in self._subscriptions:
                raise SubscriptionNotFoundError(f"Subscription not found for id: {subscription_id}")
            del self._subscriptions[subscription_id]

    def exists(self, subscription_id: int) -> bool:
        with self._lock:
            return subscription_id in self._subscriptions

    def get_all(self) -> List[SubscriptionRecord]:
        """Get copies of all subscriptions in the store."""
        with self._lock:
            return [s.model_copy(deep=True) for s in self._subscriptions.values()]

    def count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def clear(self) -> None:
        """Clear all subscriptions from the store.

        Warning: This removes all data. Use with caution.
        """
        with self._lock:
            self._subscriptions.clear()
            self._next_id = 1

    def get_statistics(self) -> Dict[str, int]:
        """Get subscription store statistics.

        Returns:
            Dictionary with the total count and a count per status
        """
        with self._lock:
            subscriptions = list(self._subscriptions.values())
            statistics = {"total_subscriptions": len(subscriptions)}
            for status in SubscriptionStatus:
                statistics[status.value] = sum(1 for s in subscriptions if s.status == status)
            statistics["manual_renewal"] = sum(1 for s in subscriptions if s.requires_manual_renewal)
            return statistics

    def __len__(self) -> int:
        """Get number of subscriptions in store."""
        return self.count()

    def __contains__(self, subscription_id: int) -> bool:
        """Check if id exists in store."""
        return self.exists(subscription_id)

    def __repr__(self) -> str:
        """String representation of store."""
        return f"SubscriptionStore(subscriptions={self.count()})"


# Global store instance
_store_instance: Optional[SubscriptionStore] = None
_store_lock = threading.Lock()


def get_subscription_store() -> SubscriptionStore:
    """Get global subscription store instance (singleton).

    Returns:
        SubscriptionStore instance
    """
    global _store_instance
    if _store_instance is None:
        with _store_lock:
            if _store_instance is None:
                _store_instance = SubscriptionStore()
    return _store_instance


def reset_subscription_store() -> None:
    """Reset global subscription store (clears all data).

    Warning: This removes all subscription data. Use with caution.
    """
    store = get_subscription_store()
    store.clear()
