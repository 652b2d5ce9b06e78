"""Payment retry models."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .settings import RetryRule


class RetryStatus(str, Enum):
    """Lifecycle of a single payment retry."""

    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"
    COMPLETE = "complete"
    CANCELLED = "cancelled"


class PaymentRetryRecord(BaseModel):
    """A scheduled retry of a failed renewal order payment.

    The rule that scheduled the retry is kept with it, so later changes to
    the configured rules don't affect retries already waiting.
    """

    id: int = Field(..., description="Retry identifier")
    order_id: int = Field(..., description="Renewal order being retried")
    status: RetryStatus = Field(default=RetryStatus.PENDING, description="Retry status")
    date: int = Field(..., description="When the payment is retried (Unix seconds)")
    rule: Optional[RetryRule] = Field(None, description="Rule applied when the retry was scheduled")

    def is_pending(self) -> bool:
        return self.status == RetryStatus.PENDING

    class Config:
        json_schema_extra = {
            "example": {
                "id": 1,
                "order_id": 1043,
                "status": "pending",
                "date": 1706788800,
                "rule": {
                    "retry_after_interval": 43200,
                    "status_to_apply_to_order": "pending",
                    "status_to_apply_to_subscription": "on-hold",
                },
            }
        }
