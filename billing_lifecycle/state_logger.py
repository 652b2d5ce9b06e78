"""Simple state change logging for subscriptions and orders.

Tracks state transitions with before/after values for debugging and auditing.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from billing_lifecycle.logging_config import get_logger

logger = get_logger(__name__)


def _format_timestamp(timestamp: int) -> Optional[str]:
    if not timestamp:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def log_subscription_status_change(
    subscription_id: int,
    old_status: Any,
    new_status: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log subscription status change.

    Args:
        subscription_id: Subscription identifier
        old_status: Previous status value
        new_status: New status value
        reason: Reason for status change
        **extra_context: Additional context
    """
    logger.info(
        "subscription_status_changed",
        subscription_id=subscription_id,
        old_status=str(old_status),
        new_status=str(new_status),
        reason=reason,
        **extra_context,
    )


def log_date_change(
    subscription_id: int,
    date_type: str,
    old_timestamp: int,
    new_timestamp: int,
    **extra_context: Any,
) -> None:
    """Log a schedule date being set, moved or cleared.

    Args:
        subscription_id: Subscription identifier
        date_type: Date type name (e.g. "next_payment")
        old_timestamp: Previous value (0 if unset)
        new_timestamp: New value (0 if cleared)
        **extra_context: Additional context
    """
    logger.info(
        "subscription_date_changed",
        subscription_id=subscription_id,
        date_type=date_type,
        old_date=_format_timestamp(old_timestamp),
        new_date=_format_timestamp(new_timestamp),
        cleared=new_timestamp == 0,
        **extra_context,
    )


def log_suspension_count_change(
    subscription_id: int,
    old_count: int,
    new_count: int,
    **extra_context: Any,
) -> None:
    logger.info(
        "suspension_count_changed",
        subscription_id=subscription_id,
        old_count=old_count,
        new_count=new_count,
        **extra_context,
    )


def log_order_status_change(
    order_id: int,
    old_status: Any,
    new_status: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log order status change.

    Args:
        order_id: Order identifier
        old_status: Previous order status
        new_status: New order status
        reason: Reason for status change
        **extra_context: Additional context
    """
    logger.info(
        "order_status_changed",
        order_id=order_id,
        old_status=str(old_status),
        new_status=str(new_status),
        reason=reason,
        **extra_context,
    )


def log_payment_count_cache_reset(subscription_id: int, cached_types: int) -> None:
    logger.debug(
        "payment_count_cache_reset",
        subscription_id=subscription_id,
        cached_types=cached_types,
    )
