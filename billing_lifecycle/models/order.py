"""Order models.

Orders are the payment events a subscription reacts to. The engine only
reads their status, totals and timestamps, and asks the order store to
create them or change their status.
"""

from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from .subscription import RelationType


class OrderStatus(str, Enum):
    """Order status values."""

    PENDING = "pending"
    PROCESSING = "processing"
    ON_HOLD = "on-hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    FAILED = "failed"


# Statuses in which an order is still waiting for its payment
NEEDS_PAYMENT_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.FAILED})

# Statuses that mean the payment went through
PAID_STATUSES = frozenset({OrderStatus.PROCESSING, OrderStatus.COMPLETED})


class OrderRecord(BaseModel):
    """Order referenced by a subscription (parent, renewal, switch or resubscribe)."""

    id: int = Field(..., description="Order identifier")
    status: OrderStatus = Field(default=OrderStatus.PENDING, description="Current order status")
    total: Decimal = Field(default=Decimal("0"), description="Order total")
    relation_type: Optional[RelationType] = Field(None, description="Relation the order was created for")

    date_created: int = Field(default=0, description="Creation time (Unix seconds)")
    date_paid: Optional[int] = Field(None, description="Payment time (Unix seconds), None if unpaid")
    date_completed: Optional[int] = Field(None, description="Completion time (Unix seconds)")

    payment_method: str = Field(default="", description="Gateway ID")
    transaction_id: str = Field(default="", description="Gateway transaction reference")
    notes: List[str] = Field(default_factory=list, description="Order notes")

    def has_status(self, *statuses: OrderStatus) -> bool:
        return self.status in statuses

    def needs_payment(self) -> bool:
        """An order needs payment while pending or failed with a positive total."""
        return self.status in NEEDS_PAYMENT_STATUSES and self.total > 0

    def is_renewal(self) -> bool:
        return self.relation_type == RelationType.RENEWAL

    def set_status(self, new_status: OrderStatus, reason: Optional[str] = None) -> None:
        """Change order status and log the transition.

        Args:
            new_status: New order status
            reason: Reason for status change
        """
        from billing_lifecycle.state_logger import log_order_status_change

        old_status = self.status
        if old_status != new_status:
            self.status = new_status
            log_order_status_change(
                order_id=self.id,
                old_status=old_status.value,
                new_status=new_status.value,
                reason=reason,
            )

    class Config:
        json_schema_extra = {
            "example": {
                "id": 1043,
                "status": "completed",
                "total": "19.99",
                "relation_type": "renewal",
                "date_created": 1706745600,
                "date_paid": 1706745660,
                "payment_method": "stripe",
                "transaction_id": "ch_3Nc9",
            }
        }
