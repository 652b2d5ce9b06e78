"""Subscription state and lifecycle models.

Includes subscription statuses, schedule date types, billing periods and
the persisted subscription record.
"""

from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class SubscriptionStatus(str, Enum):
    """Subscription status values as stored."""

    PENDING = "pending"
    ACTIVE = "active"
    ON_HOLD = "on-hold"
    CANCELLED = "cancelled"
    PENDING_CANCEL = "pending-cancel"
    EXPIRED = "expired"
    SWITCHED = "switched"
    TRASH = "trash"
    DELETED = "deleted"
    DRAFT = "draft"
    AUTO_DRAFT = "auto-draft"


# Order status vocabulary accepted when a status change is requested externally
STATUS_ALIASES = {
    "completed": SubscriptionStatus.ACTIVE.value,
    "failed": SubscriptionStatus.ON_HOLD.value,
}

STATUS_PREFIX = "wc-"


def normalise_status(status: str) -> str:
    """Resolve a requested status string to its canonical form.

    Strips the storage prefix once and maps order status aliases
    (``completed`` -> ``active``, ``failed`` -> ``on-hold``). Unknown
    statuses are returned as-is so extension rules can still see them.

    Args:
        status: Requested status (e.g. "wc-active", "completed", "on-hold")

    Returns:
        Canonical status string

    Examples:
        >>> normalise_status("wc-completed")
        'active'
        >>> normalise_status("pending-cancel")
        'pending-cancel'
    """
    if isinstance(status, SubscriptionStatus):
        return status.value

    status = status.strip().lower()
    if status.startswith(STATUS_PREFIX):
        status = status[len(STATUS_PREFIX):]
    return STATUS_ALIASES.get(status, status)


class BillingPeriod(str, Enum):
    """Unit of a billing cycle."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class DateType(str, Enum):
    """Schedule date types tracked for a subscription."""

    DATE_CREATED = "date_created"
    START = "start"
    TRIAL_END = "trial_end"
    NEXT_PAYMENT = "next_payment"
    CANCELLED = "cancelled"
    END = "end"
    PAYMENT_RETRY = "payment_retry"

    # Resolved from related orders
    LAST_ORDER_DATE_CREATED = "last_order_date_created"
    LAST_ORDER_DATE_PAID = "last_order_date_paid"
    LAST_ORDER_DATE_COMPLETED = "last_order_date_completed"
    DATE_PAID = "date_paid"
    DATE_COMPLETED = "date_completed"


STORED_DATE_TYPES = frozenset(
    {
        DateType.DATE_CREATED,
        DateType.START,
        DateType.TRIAL_END,
        DateType.NEXT_PAYMENT,
        DateType.CANCELLED,
        DateType.END,
        DateType.PAYMENT_RETRY,
    }
)

DERIVED_DATE_TYPES = frozenset(set(DateType) - STORED_DATE_TYPES)

# Never deleted implicitly when an update passes a zero value
NEVER_CLEARED_DATE_TYPES = frozenset(
    {DateType.DATE_CREATED, DateType.START, DateType.LAST_ORDER_DATE_CREATED}
)

# delete_date() refuses these outright
UNDELETABLE_DATE_TYPES = frozenset({DateType.DATE_CREATED, DateType.START}) | DERIVED_DATE_TYPES

DEPRECATED_DATE_KEYS = {"last_payment": DateType.LAST_ORDER_DATE_CREATED.value}


def normalise_date_type(date_type: str) -> DateType:
    """Resolve a date key to a DateType.

    Accepts legacy key shapes such as ``schedule_next_payment`` or
    ``trial_end_date`` and the deprecated ``last_payment``.

    Raises:
        ValueError: If the key does not name a known date type
    """
    if isinstance(date_type, DateType):
        return date_type

    key = date_type.strip().lower()
    if key.startswith("schedule_"):
        key = key[len("schedule_"):]
    if key.endswith("_date"):
        key = key[: -len("_date")]
    key = DEPRECATED_DATE_KEYS.get(key, key)

    try:
        return DateType(key)
    except ValueError:
        raise ValueError(f"Unknown date type: '{date_type}'") from None


class RelationType(str, Enum):
    """How an order relates to a subscription."""

    PARENT = "parent"
    RENEWAL = "renewal"
    RESUBSCRIBE = "resubscribe"
    SWITCH = "switch"
    ANY = "any"


LEDGER_RELATION_TYPES = (RelationType.RENEWAL, RelationType.RESUBSCRIBE, RelationType.SWITCH)


class SubscriptionRecord(BaseModel):
    """Persisted subscription record.

    Dates are UTC Unix timestamps in seconds. A missing or zero entry means
    the date is not set.
    """

    id: int = Field(..., description="Subscription identifier")
    status: SubscriptionStatus = Field(default=SubscriptionStatus.PENDING, description="Current status")

    billing_period: BillingPeriod = Field(default=BillingPeriod.MONTH, description="Billing period unit")
    billing_interval: int = Field(default=1, ge=1, description="Billing periods per cycle")

    dates: Dict[DateType, int] = Field(default_factory=dict, description="Stored schedule dates")
    cancellation_snapshot: Dict[DateType, int] = Field(
        default_factory=dict,
        description="end/trial_end captured when entering pending-cancel",
    )

    suspension_count: int = Field(default=0, ge=0, description="Times the subscription entered on-hold")
    requires_manual_renewal: bool = Field(default=False, description="Stored manual renewal flag")

    parent_order_id: int = Field(default=0, description="Order the subscription was purchased in")
    payment_method: str = Field(default="", description="Gateway ID used for renewals")
    total: Decimal = Field(default=Decimal("0"), description="Recurring total")
    is_synced: bool = Field(default=False, description="Contains a product with a synchronised renewal day")

    notes: List[str] = Field(default_factory=list, description="Audit trail")

    def get_stored_date(self, date_type: DateType) -> int:
        """Get a stored date, 0 when not set."""
        return self.dates.get(date_type, 0) or 0

    def set_status(self, new_status: SubscriptionStatus, reason: Optional[str] = None) -> None:
        """Change subscription status and log the transition.

        Args:
            new_status: New status
            reason: Reason for status change
        """
        from billing_lifecycle.state_logger import log_subscription_status_change

        old_status = self.status
        if old_status != new_status:
            self.status = new_status
            log_subscription_status_change(
                subscription_id=self.id,
                old_status=old_status.value,
                new_status=new_status.value,
                reason=reason,
            )

    def set_date(self, date_type: DateType, timestamp: int) -> None:
        """Set or clear (timestamp 0) a stored date and log the change."""
        from billing_lifecycle.state_logger import log_date_change

        old_timestamp = self.get_stored_date(date_type)
        if timestamp:
            self.dates[date_type] = timestamp
        else:
            self.dates.pop(date_type, None)

        if old_timestamp != timestamp:
            log_date_change(
                subscription_id=self.id,
                date_type=date_type.value,
                old_timestamp=old_timestamp,
                new_timestamp=timestamp,
            )

    def increment_suspension_count(self) -> None:
        """Count one more entry into on-hold."""
        from billing_lifecycle.state_logger import log_suspension_count_change

        old_count = self.suspension_count
        self.suspension_count += 1
        log_suspension_count_change(self.id, old_count, self.suspension_count)

    def reset_suspension_count(self) -> None:
        from billing_lifecycle.state_logger import log_suspension_count_change

        old_count = self.suspension_count
        if old_count != 0:
            self.suspension_count = 0
            log_suspension_count_change(self.id, old_count, 0)

    def add_note(self, note: str) -> None:
        self.notes.append(note)

    class Config:
        json_schema_extra = {
            "example": {
                "id": 1042,
                "status": "active",
                "billing_period": "month",
                "billing_interval": 1,
                "dates": {
                    "date_created": 1704067200,
                    "start": 1704067200,
                    "next_payment": 1706745600,
                },
                "suspension_count": 0,
                "requires_manual_renewal": False,
                "parent_order_id": 1041,
                "payment_method": "stripe",
                "total": "19.99",
                "is_synced": False,
            }
        }
