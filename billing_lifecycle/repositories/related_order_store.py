"""Related order ledger - which orders belong to which subscription.

Keyed by (subscription id, relation type). Parent orders are not kept
here; a subscription records its own parent order id.
"""

import threading
from typing import Dict, List, Optional, Tuple

from billing_lifecycle.models.subscription import LEDGER_RELATION_TYPES, RelationType


class RelatedOrderStore:
    """In-memory ledger of related order ids.

    Ids are kept in insertion order without duplicates.
    """

    def __init__(self):
        self._relations: Dict[Tuple[int, RelationType], List[int]] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _check_relation_type(relation_type: RelationType) -> RelationType:
        relation_type = RelationType(relation_type)
        if relation_type not in LEDGER_RELATION_TYPES:
            raise ValueError(f"Relation type '{relation_type.value}' is not stored in the ledger")
        return relation_type

    def add_relation(self, subscription_id: int, order_id: int, relation_type: RelationType) -> None:
        """Link an order to a subscription.

        Raises:
            ValueError: For parent/any relation types
        """
        relation_type = self._check_relation_type(relation_type)
        with self._lock:
            order_ids = self._relations.setdefault((subscription_id, relation_type), [])
            if order_id not in order_ids:
                order_ids.append(order_id)

    def remove_relation(self, subscription_id: int, order_id: int, relation_type: RelationType) -> bool:
        """Unlink an order. Returns False if it was not linked."""
        relation_type = self._check_relation_type(relation_type)
        with self._lock:
            order_ids = self._relations.get((subscription_id, relation_type), [])
            if order_id in order_ids:
                order_ids.remove(order_id)
                return True
            return False

    def get_related_ids(self, subscription_id: int, relation_type: RelationType) -> List[int]:
        """Get the order ids linked to a subscription with one relation type."""
        relation_type = self._check_relation_type(relation_type)
        with self._lock:
            return list(self._relations.get((subscription_id, relation_type), []))

    def get_subscription_ids_for_order(
        self, order_id: int, relation_type: Optional[RelationType] = None
    ) -> List[int]:
        """Find the subscriptions an order is linked to.

        Args:
            order_id: Order identifier
            relation_type: Restrict to one relation type

        Returns:
            Sorted subscription ids
        """
        with self._lock:
            return sorted(
                {
                    subscription_id
                    for (subscription_id, rel_type), order_ids in self._relations.items()
                    if order_id in order_ids and (relation_type is None or rel_type == relation_type)
                }
            )

    def clear(self) -> None:
        with self._lock:
            self._relations.clear()

    def count(self) -> int:
        """Number of stored links."""
        with self._lock:
            return sum(len(order_ids) for order_ids in self._relations.values())

    def __len__(self) -> int:
        return self.count()

    def __repr__(self) -> str:
        return f"RelatedOrderStore(relations={self.count()})"


_store_instance: Optional[RelatedOrderStore] = None
_store_lock = threading.Lock()


def get_related_order_store() -> RelatedOrderStore:
    """Get global related order ledger (singleton)."""
    global _store_instance
    if _store_instance is None:
        with _store_lock:
            if _store_instance is None:
                _store_instance = RelatedOrderStore()
    return _store_instance


def reset_related_order_store() -> None:
    get_related_order_store().clear()
