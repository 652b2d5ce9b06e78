"""Gateway repository - resolves payment gateway capabilities.

Loads gateway definitions from config/settings.yaml and answers which
subscription features the gateway behind a subscription supports.
"""

from typing import Dict, List, Optional

from billing_lifecycle.config import Config, get_config
from billing_lifecycle.models import GatewayDefinition, SubscriptionRecord

# Subscription features a gateway can declare
SUBSCRIPTION_SUSPENSION = "subscription_suspension"
SUBSCRIPTION_REACTIVATION = "subscription_reactivation"
SUBSCRIPTION_CANCELLATION = "subscription_cancellation"
SUBSCRIPTION_DATE_CHANGES = "subscription_date_changes"
SUBSCRIPTION_AMOUNT_CHANGES = "subscription_amount_changes"
GATEWAY_SCHEDULED_PAYMENTS = "gateway_scheduled_payments"


class GatewayNotFoundError(Exception):
    """Raised when a gateway is not found in the repository."""

    pass


class GatewayRepository:
    """Repository for payment gateway definitions.

    Loads gateway definitions from configuration and provides fast lookup.
    """

    def __init__(self, config: Optional[Config] = None):
        """Initialize gateway repository.

        Args:
            config: Configuration instance. If not provided, uses global config.
        """
        self._config = config or get_config()
        self._gateways_by_id: Dict[str, GatewayDefinition] = {}
        self._load_gateways()

    def _load_gateways(self) -> None:
        """Load gateway definitions from configuration into indexed dictionary."""
        self._gateways_by_id.clear()
        for gateway in self._config.gateways:
            self._gateways_by_id[gateway.id] = gateway

    def get_by_id(self, gateway_id: str) -> GatewayDefinition:
        """Get gateway definition by ID.

        Raises:
            GatewayNotFoundError: If gateway ID not found
        """
        gateway = self._gateways_by_id.get(gateway_id)
        if gateway is None:
            raise GatewayNotFoundError(f"Gateway not found: {gateway_id}")
        return gateway

    def find_by_id(self, gateway_id: str) -> Optional[GatewayDefinition]:
        """Find gateway definition by ID (returns None if not found)."""
        return self._gateways_by_id.get(gateway_id)

    def get_available_gateways(self) -> List[GatewayDefinition]:
        """Get all enabled gateways."""
        return [g for g in self._gateways_by_id.values() if g.enabled]

    def supports(self, subscription: SubscriptionRecord, feature: str) -> bool:
        """Check whether the subscription's gateway supports a feature.

        Args:
            subscription: Subscription record (its payment_method is the gateway id)
            feature: Feature name (e.g. "subscription_suspension")

        Returns:
            True if the gateway exists, is enabled and declares the feature
        """
        gateway = self.find_by_id(subscription.payment_method)
        return gateway is not None and gateway.enabled and feature in gateway.supports

    def has_available_automatic_method(self, subscription: SubscriptionRecord) -> bool:
        """Check whether the subscription can be charged automatically."""
        gateway = self.find_by_id(subscription.payment_method)
        return gateway is not None and gateway.enabled

    def reload(self) -> None:
        """Reload gateway definitions from configuration."""
        self._config.reload()
        self._load_gateways()

    def __len__(self) -> int:
        return len(self._gateways_by_id)

    def __contains__(self, gateway_id: str) -> bool:
        return gateway_id in self._gateways_by_id

    def __repr__(self) -> str:
        return f"GatewayRepository(gateways={len(self._gateways_by_id)})"


# Global repository instance
_repository_instance: Optional[GatewayRepository] = None


def get_gateway_repository(config: Optional[Config] = None) -> GatewayRepository:
    """Get global gateway repository instance (singleton).

    Args:
        config: Optional configuration instance (only used on first call)

    Returns:
        GatewayRepository instance
    """
    global _repository_instance
    if _repository_instance is None:
        _repository_instance = GatewayRepository(config)
    return _repository_instance


def reload_gateway_repository() -> None:
    """Reload global gateway repository from configuration."""
    global _repository_instance
    if _repository_instance:
        _repository_instance.reload()
    else:
        _repository_instance = GatewayRepository()
