"""Payment retry store - in-memory storage for scheduled payment retries.

Retries are kept per renewal order, oldest first.
"""

import threading
from typing import Dict, List, Optional

from billing_lifecycle.models.retry import PaymentRetryRecord, RetryStatus
from billing_lifecycle.models.settings import RetryRule


class RetryNotFoundError(Exception):
    """Raised when a retry is not found in the store."""

    pass


class RetryStore:
    """Thread-safe in-memory storage for payment retries."""

    def __init__(self):
        self._retries: Dict[int, PaymentRetryRecord] = {}
        self._order_index: Dict[int, List[int]] = {}
        self._next_id = 1
        self._lock = threading.RLock()

    def create(self, order_id: int, date: int, rule: Optional[RetryRule] = None) -> PaymentRetryRecord:
        """Store a new pending retry for an order."""
        with self._lock:
            retry = PaymentRetryRecord(id=self._next_id, order_id=order_id, date=date, rule=rule)
            self._next_id += 1
            self._retries[retry.id] = retry
            self._order_index.setdefault(order_id, []).append(retry.id)
            return retry

    def get_by_id(self, retry_id: int) -> PaymentRetryRecord:
        """Get a retry by id.

        Raises:
            RetryNotFoundError: If retry_id not found
        """
        with self._lock:
            retry = self._retries.get(retry_id)
            if retry is None:
                raise RetryNotFoundError(f"Retry not found: {retry_id}")
            return retry

    def get_retry_ids_for_order(self, order_id: int) -> List[int]:
        with self._lock:
            return list(self._order_index.get(order_id, []))

    def get_retry_count_for_order(self, order_id: int) -> int:
        with self._lock:
            return len(self._order_index.get(order_id, []))

    def get_last_retry_for_order(self, order_id: int) -> Optional[PaymentRetryRecord]:
        with self._lock:
            retry_ids = self._order_index.get(order_id)
            return self._retries[retry_ids[-1]] if retry_ids else None

    def update_status(self, retry_id: int, new_status: RetryStatus) -> PaymentRetryRecord:
        """Change a retry's status.

        Raises:
            RetryNotFoundError: If retry_id not found
        """
        with self._lock:
            retry = self.get_by_id(retry_id)
            retry.status = new_status
            return retry

    def delete_retries_for_order(self, order_id: int) -> int:
        """Remove every retry of an order. Returns how many were removed."""
        with self._lock:
            retry_ids = self._order_index.pop(order_id, [])
            for retry_id in retry_ids:
                del self._retries[retry_id]
            return len(retry_ids)

    def clear(self) -> None:
        with self._lock:
            self._retries.clear()
            self._order_index.clear()
            self._next_id = 1

    def __len__(self) -> int:
        with self._lock:
            return len(self._retries)

    def __repr__(self) -> str:
        return f"RetryStore(retries={len(self)})"


_store_instance: Optional[RetryStore] = None
_store_lock = threading.Lock()


def get_retry_store() -> RetryStore:
    """Get global payment retry store (singleton)."""
    global _store_instance
    if _store_instance is None:
        with _store_lock:
            if _store_instance is None:
                _store_instance = RetryStore()
    return _store_instance


def reset_retry_store() -> None:
    get_retry_store().clear()
