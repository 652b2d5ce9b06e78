"""Engine configuration models.

Models from settings.yaml configuration.
"""

from typing import Optional
from pydantic import BaseModel, Field


class GatewayDefinition(BaseModel):
    """Payment gateway definition from configuration."""

    id: str = Field(..., description="Gateway identifier stored on subscriptions")
    title: str = Field(..., description="Human-readable title")
    enabled: bool = Field(default=True, description="Whether the gateway is available for automatic payments")
    supports: list[str] = Field(default_factory=list, description="Supported subscription features")

    class Config:
        json_schema_extra = {
            "example": {
                "id": "stripe",
                "title": "Credit card (Stripe)",
                "enabled": True,
                "supports": [
                    "subscription_suspension",
                    "subscription_reactivation",
                    "subscription_cancellation",
                    "subscription_date_changes",
                ],
            }
        }


class PubSubConfig(BaseModel):
    """Pub/Sub configuration from settings.yaml."""

    project_id: str = Field(..., description="GCP project ID")
    topic: str = Field(..., description="Pub/Sub topic name")
    default_subscription: str = Field(..., description="Default subscription name")


class ScheduleSettings(BaseModel):
    """Safety margins used by billing date calculations."""

    next_payment_threshold_seconds: int = Field(
        default=2 * 60 * 60,
        description="A recalculated next payment must be at least this far in the future",
    )
    end_date_margin_seconds: int = Field(
        default=23 * 60 * 60,
        description="No payment is scheduled when payment + margin would pass the end date",
    )
    max_period_iterations: int = Field(default=3000, description="Cap on period additions per calculation")
    site_utc_offset_seconds: int = Field(default=0, description="Site time offset applied to month arithmetic")


class StagingSettings(BaseModel):
    """Duplicate (staging) site detection settings."""

    site_url: Optional[str] = Field(None, description="URL of the site the engine runs on")
    live_site_url: Optional[str] = Field(None, description="URL of the live production site")
    force_manual: bool = Field(default=False, description="Treat every subscription as manual renewal")

    class Config:
        json_schema_extra = {
            "example": {
                "site_url": "https://staging.shop.example.com",
                "live_site_url": "https://shop.example.com",
                "force_manual": False,
            }
        }


class RetryRule(BaseModel):
    """One step of the automatic failed payment retry schedule."""

    retry_after_interval: int = Field(..., ge=0, description="Seconds to wait before retrying the payment")
    status_to_apply_to_order: str = Field(
        default="pending", description="Renewal order status while the retry waits (empty to leave it)"
    )
    status_to_apply_to_subscription: str = Field(
        default="on-hold", description="Subscription status while the retry waits (empty to leave it)"
    )


def _default_retry_rules() -> list[RetryRule]:
    return [
        RetryRule(retry_after_interval=12 * 60 * 60),
        RetryRule(retry_after_interval=12 * 60 * 60),
        RetryRule(retry_after_interval=24 * 60 * 60),
        RetryRule(retry_after_interval=2 * 24 * 60 * 60),
        RetryRule(retry_after_interval=3 * 24 * 60 * 60),
    ]


class RetrySettings(BaseModel):
    """Automatic retry of failed renewal payments."""

    enabled: bool = Field(default=False, description="Retry failed scheduled renewal payments")
    rules: list[RetryRule] = Field(
        default_factory=_default_retry_rules,
        description="Retry steps, applied in order to each failed renewal order",
    )

    class Config:
        json_schema_extra = {
            "example": {
                "enabled": True,
                "rules": [
                    {
                        "retry_after_interval": 43200,
                        "status_to_apply_to_order": "pending",
                        "status_to_apply_to_subscription": "on-hold",
                    }
                ],
            }
        }


class EngineSettings(BaseModel):
    """Subscription engine behavior configuration."""

    use_pending_cancel: bool = Field(
        default=True,
        description="Customer cancellations keep the prepaid term as pending-cancel",
    )
    renewal_order_attempts: int = Field(default=2, ge=1, description="Attempts to create a renewal order")
    publish_events: bool = Field(default=False, description="Publish subscription events to Pub/Sub")
    max_failed_payments: Optional[int] = Field(
        None, description="Cancel instead of suspending once this many payments have failed"
    )
    schedule: ScheduleSettings = Field(default_factory=ScheduleSettings)
    staging: StagingSettings = Field(default_factory=StagingSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)


class AppConfig(BaseModel):
    """Complete settings.yaml configuration."""

    gateways: list[GatewayDefinition] = Field(default_factory=list, description="Payment gateway definitions")
    pubsub: Optional[PubSubConfig] = None
    engine: EngineSettings = Field(default_factory=EngineSettings)
