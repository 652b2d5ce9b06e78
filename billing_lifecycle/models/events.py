"""Subscription event models.

Events are emitted by the engine after lifecycle changes and delivered to
in-process listeners and, optionally, to a Pub/Sub topic.
"""

from typing import Any, Dict

from pydantic import BaseModel, Field


# Event names
STATUS_UPDATED = "status_updated"
PRE_UPDATE_STATUS = "pre_update_status"
UNABLE_TO_UPDATE_STATUS = "unable_to_update_status"
DATE_UPDATED = "date_updated"
DATE_DELETED = "date_deleted"
PAYMENT_COMPLETE = "payment_complete"
RENEWAL_PAYMENT_COMPLETE = "renewal_payment_complete"
PAYMENT_FAILED = "payment_failed"
RENEWAL_PAYMENT_FAILED = "renewal_payment_failed"
PAID_FOR_FAILED_RENEWAL_ORDER = "paid_for_failed_renewal_order"
GENERATED_MANUAL_RENEWAL_ORDER = "generated_manual_renewal_order"
RENEWAL_ORDER_CREATED = "renewal_order_created"
PAYMENT_RETRY_DUE = "payment_retry_due"
SCHEDULED_SUBSCRIPTION_PAYMENT = "scheduled_subscription_payment"
TRIAL_ENDED = "trial_ended"


def status_event_name(new_status: str) -> str:
    """Event emitted when a subscription enters a status, e.g. ``status_on-hold``."""
    return f"status_{new_status}"


def transition_event_name(old_status: str, new_status: str) -> str:
    """Event emitted for a specific transition, e.g. ``status_active_to_on-hold``."""
    return f"status_{old_status}_to_{new_status}"


class SubscriptionEvent(BaseModel):
    """Event describing a change to a subscription."""

    version: str = Field(default="1.0", description="Event schema version")
    name: str = Field(..., description="Event name")
    subscription_id: int = Field(..., description="Subscription the event concerns")
    event_time: int = Field(..., description="Virtual time of the event (Unix seconds)")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Event specific data")

    class Config:
        json_schema_extra = {
            "example": {
                "version": "1.0",
                "name": "status_on-hold",
                "subscription_id": 1042,
                "event_time": 1706745600,
                "payload": {"old_status": "active", "new_status": "on-hold"},
            }
        }
