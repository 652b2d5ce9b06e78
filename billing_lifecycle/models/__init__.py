"""Pydantic models for configuration and domain objects."""

# Configuration models
from .settings import (
    GatewayDefinition,
    PubSubConfig,
    ScheduleSettings,
    StagingSettings,
    RetryRule,
    RetrySettings,
    EngineSettings,
    AppConfig,
)

# Subscription models
from .subscription import (
    SubscriptionStatus,
    BillingPeriod,
    DateType,
    RelationType,
    SubscriptionRecord,
    normalise_status,
    normalise_date_type,
)

# Order models
from .order import (
    OrderStatus,
    OrderRecord,
)

# Event models
from .events import SubscriptionEvent

# Payment retry models
from .retry import PaymentRetryRecord, RetryStatus

__all__ = [
    # Configuration
    "GatewayDefinition",
    "PubSubConfig",
    "ScheduleSettings",
    "StagingSettings",
    "RetryRule",
    "RetrySettings",
    "EngineSettings",
    "AppConfig",
    # Subscription
    "SubscriptionStatus",
    "BillingPeriod",
    "DateType",
    "RelationType",
    "SubscriptionRecord",
    "normalise_status",
    "normalise_date_type",
    # Order
    "OrderStatus",
    "OrderRecord",
    # Events
    "SubscriptionEvent",
    # Payment retry
    "PaymentRetryRecord",
    "RetryStatus",
]
