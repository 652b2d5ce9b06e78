"""Shared fixtures wiring the engine to fresh in-memory collaborators."""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from billing_lifecycle.models.settings import EngineSettings, GatewayDefinition
from billing_lifecycle.repositories.gateway_repository import GatewayRepository
from billing_lifecycle.repositories.order_store import OrderStore
from billing_lifecycle.repositories.related_order_store import RelatedOrderStore
from billing_lifecycle.repositories.retry_store import RetryStore
from billing_lifecycle.repositories.subscription_store import SubscriptionStore
from billing_lifecycle.services.event_dispatcher import EventDispatcher
from billing_lifecycle.services.subscription import SubscriptionServices
from billing_lifecycle.services.subscription_engine import SubscriptionEngine
from billing_lifecycle.services.time_controller import TimeController

# 2024-01-01 00:00:00 UTC
T0 = 1704067200
DAY = 24 * 60 * 60
HOUR = 60 * 60

FULL_SUPPORT = [
    "subscription_suspension",
    "subscription_reactivation",
    "subscription_cancellation",
    "subscription_date_changes",
    "subscription_amount_changes",
]


@pytest.fixture
def engine_settings():
    """Default engine settings."""
    return EngineSettings()


@pytest.fixture
def mock_config(engine_settings):
    """Mock configuration with test gateways and publishing disabled."""
    config = MagicMock()
    config.gateways = [
        GatewayDefinition(id="stripe", title="Stripe", supports=FULL_SUPPORT),
        GatewayDefinition(
            id="paypal",
            title="PayPal",
            supports=[
                "subscription_suspension",
                "subscription_reactivation",
                "subscription_cancellation",
                "gateway_scheduled_payments",
            ],
        ),
        GatewayDefinition(id="basic", title="Basic card", supports=[]),
        GatewayDefinition(id="retired", title="Retired", enabled=False, supports=FULL_SUPPORT),
    ]
    config.engine_settings = engine_settings
    config.has_pubsub = False
    return config


@pytest.fixture
def clock():
    """Virtual clock fixed at T0."""
    return TimeController(start_time=T0)


@pytest.fixture
def dispatcher(mock_config, clock):
    """Event dispatcher recording events, without Pub/Sub."""
    return EventDispatcher(config=mock_config, time_controller=clock)


@pytest.fixture
def subscription_store():
    """Create a fresh subscription store for each test."""
    store = SubscriptionStore()
    yield store
    store.clear()


@pytest.fixture
def order_store():
    return OrderStore()


@pytest.fixture
def related_order_store():
    return RelatedOrderStore()


@pytest.fixture
def retry_store():
    return RetryStore()


@pytest.fixture
def gateway_repo(mock_config):
    return GatewayRepository(config=mock_config)


@pytest.fixture
def services(
        subscription_store,
        order_store,
        related_order_store,
        gateway_repo,
        retry_store,
        dispatcher,
        clock,
        engine_settings,
):
    """Collaborators for subscriptions under test."""
    return SubscriptionServices(
        subscription_store=subscription_store,
        order_store=order_store,
        related_order_store=related_order_store,
        gateway_repository=gateway_repo,
        event_dispatcher=dispatcher,
        time_controller=clock,
        settings=engine_settings,
        retry_store=retry_store,
    )


@pytest.fixture
def engine(services, clock):
    """Subscription engine bound to the test clock."""
    engine = SubscriptionEngine(services=services)
    clock.bind_engine(engine)
    return engine


@pytest.fixture
def make_subscription(engine):
    """Factory for stored subscriptions (monthly stripe, total 10.00, active by default)."""

    def _make(status="active", dates=None, **fields):
        fields.setdefault("billing_period", "month")
        fields.setdefault("billing_interval", 1)
        fields.setdefault("payment_method", "stripe")
        fields.setdefault("total", Decimal("10.00"))
        return engine.create_subscription(dates=dates, status=status, **fields)

    return _make
