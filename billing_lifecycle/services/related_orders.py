"""Related-order ledger queries.

Resolves the orders related to a subscription (parent, renewal,
resubscribe, switch), newest first, for payment counting and
"last order" lookups. Orders the ledger still points at but that no
longer exist are skipped.
"""

from typing import Iterable, List, Optional, Union

from billing_lifecycle.logging_config import get_logger
from billing_lifecycle.models.order import OrderRecord
from billing_lifecycle.models.subscription import (
    LEDGER_RELATION_TYPES,
    RelationType,
    SubscriptionRecord,
)
from billing_lifecycle.repositories.order_store import OrderStore, get_order_store
from billing_lifecycle.repositories.related_order_store import (
    RelatedOrderStore,
    get_related_order_store,
)

logger = get_logger(__name__)

RelationTypes = Union[str, RelationType, Iterable[Union[str, RelationType]]]

ORDER_DATE_FIELDS = ("date_created", "date_paid", "date_completed")

DEFAULT_LAST_ORDER_TYPES = (RelationType.PARENT, RelationType.RENEWAL)
ANY_LAST_ORDER_TYPES = (RelationType.PARENT, RelationType.RENEWAL, RelationType.SWITCH)


def normalise_relation_types(relation_types: RelationTypes) -> List[RelationType]:
    """Expand ``any`` and return a sorted, de-duplicated list of concrete relation types.

    Examples:
        >>> normalise_relation_types("any")
        [<RelationType.PARENT: 'parent'>, <RelationType.RENEWAL: 'renewal'>, ...]
    """
    if isinstance(relation_types, (str, RelationType)):
        relation_types = [relation_types]

    resolved = set()
    for relation_type in relation_types:
        relation_type = RelationType(relation_type)
        if relation_type == RelationType.ANY:
            resolved.add(RelationType.PARENT)
            resolved.update(LEDGER_RELATION_TYPES)
        else:
            resolved.add(relation_type)
    return sorted(resolved, key=lambda r: r.value)


class RelatedOrderQuery:
    """Read-only view over the order store and the related order ledger."""

    def __init__(
        self,
        order_store: Optional[OrderStore] = None,
        related_order_store: Optional[RelatedOrderStore] = None,
    ):
        self.order_store = order_store if order_store is not None else get_order_store()
        self.related_order_store = (
            related_order_store if related_order_store is not None else get_related_order_store()
        )

    def get_related_order_ids(
        self,
        subscription: SubscriptionRecord,
        relation_types: RelationTypes = RelationType.ANY,
    ) -> List[int]:
        """Get ids of related orders, newest (highest id) first.

        Args:
            subscription: Subscription record
            relation_types: A relation type, a list of them, or "any"

        Returns:
            De-duplicated order ids sorted descending
        """
        order_ids = set()
        for relation_type in normalise_relation_types(relation_types):
            if relation_type == RelationType.PARENT:
                if subscription.parent_order_id:
                    order_ids.add(subscription.parent_order_id)
            else:
                order_ids.update(
                    self.related_order_store.get_related_ids(subscription.id, relation_type)
                )
        return sorted(order_ids, reverse=True)

    def get_related_orders(
        self,
        subscription: SubscriptionRecord,
        relation_types: RelationTypes = RelationType.ANY,
    ) -> List[OrderRecord]:
        """Get related order objects, newest first, skipping orders that no longer exist."""
        orders = []
        for order_id in self.get_related_order_ids(subscription, relation_types):
            order = self.order_store.get(order_id)
            if order is None:
                logger.debug(
                    "related_order_missing",
                    subscription_id=subscription.id,
                    order_id=order_id,
                )
                continue
            orders.append(order)
        return orders

    def get_last_order_id(
        self,
        subscription: SubscriptionRecord,
        order_types: RelationTypes = DEFAULT_LAST_ORDER_TYPES,
    ) -> Optional[int]:
        """Get the highest related order id among the given types.

        ``any`` means parent, renewal and switch orders here.
        """
        if order_types == RelationType.ANY or order_types == RelationType.ANY.value:
            order_types = ANY_LAST_ORDER_TYPES
        order_ids = self.get_related_order_ids(subscription, order_types)
        return order_ids[0] if order_ids else None

    def get_last_order(
        self,
        subscription: SubscriptionRecord,
        order_types: RelationTypes = DEFAULT_LAST_ORDER_TYPES,
    ) -> Optional[OrderRecord]:
        """Get the last related order object (None if none, or if it no longer exists)."""
        order_id = self.get_last_order_id(subscription, order_types)
        if order_id is None:
            return None
        return self.order_store.get(order_id)

    def get_related_orders_date(
        self,
        subscription: SubscriptionRecord,
        field: str,
        scope: RelationTypes = "last",
    ) -> int:
        """Get a date from related orders.

        Args:
            subscription: Subscription record
            field: "date_created", "date_paid" or "date_completed"
            scope: "last" reads the last order only; otherwise the related
                orders of that scope are searched newest first for the
                first one with the field set

        Returns:
            UTC timestamp, 0 if none found

        Raises:
            ValueError: If field is not an order date field
        """
        if field not in ORDER_DATE_FIELDS:
            raise ValueError(f"Unknown order date field: '{field}'")

        if scope == "last":
            last_order = self.get_last_order(subscription)
            return (getattr(last_order, field) or 0) if last_order else 0

        for order in self.get_related_orders(subscription, scope):
            value = getattr(order, field)
            if value:
                return value
        return 0
