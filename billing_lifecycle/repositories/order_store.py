"""Order store - in-memory storage for parent, renewal, switch and resubscribe orders.

Thread-safe dictionary-based storage.
"""

import threading
from decimal import Decimal
from typing import Dict, List, Optional

from billing_lifecycle.logging_config import get_logger
from billing_lifecycle.models.order import OrderRecord, OrderStatus
from billing_lifecycle.models.subscription import RelationType, SubscriptionRecord

logger = get_logger(__name__)


class OrderNotFoundError(Exception):
    """Raised when an order is not found in the store."""

    pass


class OrderStore:
    """In-memory storage for orders.

    Orders are handed out by reference; status changes go through
    update_status() and mark_paid() so they are logged.
    """

    def __init__(self):
        """Initialize order store with empty storage."""
        self._orders: Dict[int, OrderRecord] = {}
        self._lock = threading.RLock()
        self._next_id = 1

    def add(self, order: OrderRecord) -> None:
        """Add an existing order to the store.

        Raises:
            ValueError: If order id already exists
        """
        with self._lock:
            if order.id in self._orders:
                raise ValueError(f"Order with id '{order.id}' already exists")
            self._orders[order.id] = order
            self._next_id = max(self._next_id, order.id + 1)

    def create(
        self,
        relation_type: RelationType,
        subscription: SubscriptionRecord,
        created_at: int,
        total: Optional[Decimal] = None,
    ) -> OrderRecord:
        """Create a new order for a subscription.

        The order copies the subscription's recurring total and payment
        method unless a total is given.

        Args:
            relation_type: Why the order exists (renewal, switch, ...)
            subscription: Owning subscription
            created_at: Creation time (UTC timestamp)
            total: Order total override

        Returns:
            The created OrderRecord (status pending)
        """
        with self._lock:
            order = OrderRecord(
                id=self._next_id,
                status=OrderStatus.PENDING,
                total=subscription.total if total is None else total,
                relation_type=relation_type,
                date_created=created_at,
                payment_method=subscription.payment_method,
            )
            self._orders[order.id] = order
            self._next_id += 1

        logger.info(
            "order_created",
            order_id=order.id,
            subscription_id=subscription.id,
            relation_type=relation_type.value,
            total=str(order.total),
        )
        return order

    def get(self, order_id: int) -> Optional[OrderRecord]:
        """Get an order, None if it no longer exists."""
        with self._lock:
            return self._orders.get(order_id)

    def get_by_id(self, order_id: int) -> OrderRecord:
        """Get order by id.

        Raises:
            OrderNotFoundError: If id not found
        """
        order = self.get(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order not found for id: {order_id}")
        return order

    def update_status(self, order_id: int, new_status: OrderStatus, note: str = "") -> OrderRecord:
        """Change an order's status.

        Args:
            order_id: Order identifier
            new_status: New status
            note: Optional note recorded on the order

        Returns:
            Updated OrderRecord

        Raises:
            OrderNotFoundError: If id not found
        """
        with self._lock:
            order = self.get_by_id(order_id)
            order.set_status(new_status, reason=note or None)
            if note:
                order.notes.append(note)
            return order

    def add_note(self, order_id: int, note: str) -> OrderRecord:
        """Record a note on an order.

        Raises:
            OrderNotFoundError: If id not found
        """
        with self._lock:
            order = self.get_by_id(order_id)
            order.notes.append(note)
            return order

    def mark_paid(self, order_id: int, paid_at: int, transaction_id: str = "") -> OrderRecord:
        """Record a payment on an order and move it to processing.

        Args:
            order_id: Order identifier
            paid_at: Payment time (UTC timestamp)
            transaction_id: Gateway transaction reference

        Returns:
            Updated OrderRecord

        Raises:
            OrderNotFoundError: If id not found
        """
        with self._lock:
            order = self.get_by_id(order_id)
            if transaction_id:
                order.transaction_id = transaction_id
            if order.date_paid is None:
                order.date_paid = paid_at
            order.set_status(OrderStatus.PROCESSING, reason="Payment received")
            return order

    def remove(self, order_id: int) -> None:
        """Delete an order.

        Raises:
            OrderNotFoundError: If id not found
        """
        with self._lock:
            if order_id not in self._orders:
                raise OrderNotFoundError(f"Order not found for id: {order_id}")
            del self._orders[order_id]

    def get_all(self) -> List[OrderRecord]:
        with self._lock:
            return list(self._orders.values())

    def count(self) -> int:
        with self._lock:
            return len(self._orders)

    def clear(self) -> None:
        """Clear all orders from the store.

        Warning: This removes all data. Use with caution.
        """
        with self._lock:
            self._orders.clear()
            self._next_id = 1

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, order_id: int) -> bool:
        with self._lock:
            return order_id in self._orders

    def __repr__(self) -> str:
        return f"OrderStore(orders={self.count()})"


# Global store instance
_store_instance: Optional[OrderStore] = None
_store_lock = threading.Lock()


def get_order_store() -> OrderStore:
    """Get global order store instance (singleton)."""
    global _store_instance
    if _store_instance is None:
        with _store_lock:
            if _store_instance is None:
                _store_instance = OrderStore()
    return _store_instance


def reset_order_store() -> None:
    """Reset global order store (clears all data)."""
    get_order_store().clear()
