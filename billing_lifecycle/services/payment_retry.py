"""Automatic retry of failed renewal payments.

When a scheduled renewal payment fails, the next configured retry rule is
applied to the renewal order: the order and subscription are moved to the
rule's statuses and the subscription's ``payment_retry`` date is set. When
that date passes, the payment is attempted again, unless someone changed
the order or subscription in the meantime.
"""

from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator, Optional

from billing_lifecycle.config import get_config
from billing_lifecycle.logging_config import get_logger
from billing_lifecycle.models.order import OrderRecord, OrderStatus
from billing_lifecycle.models.retry import PaymentRetryRecord, RetryStatus
from billing_lifecycle.models.settings import RetryRule, RetrySettings
from billing_lifecycle.models.subscription import DateType, SubscriptionStatus
from billing_lifecycle.repositories.gateway_repository import SUBSCRIPTION_DATE_CHANGES
from billing_lifecycle.repositories.retry_store import RetryStore, get_retry_store

if TYPE_CHECKING:
    from billing_lifecycle.services.subscription import Subscription

logger = get_logger(__name__)

RULE_APPLIED_NOTE = "Retry rule applied:"
RULE_REAPPLIED_NOTE = "Retry rule reapplied:"
PAYMENT_RETRY_NOTE = "Subscription renewal payment retry:"
MANUAL_RETRY_SKIPPED_NOTE = "Renewal payment retry skipped - related subscription has changed to manual renewal."


class PaymentRetryManager:
    """Applies retry rules to failed renewal orders and tracks their retries.

    Args:
        retry_store: Retry storage (defaults to the global store)
        settings: Retry settings (defaults to engine settings from config)
    """

    def __init__(self, retry_store: Optional[RetryStore] = None, settings: Optional[RetrySettings] = None):
        self.store = retry_store if retry_store is not None else get_retry_store()
        self.settings = settings if settings is not None else get_config().engine_settings.retry
        self._scheduled_attempts = 0
        self._applying_rule = 0
        self._retrying_payment = 0

    def is_enabled(self) -> bool:
        return self.settings.enabled

    def get_rule(self, retry_number: int) -> Optional[RetryRule]:
        """Rule for the n-th retry of an order (0-based), None once rules run out."""
        if 0 <= retry_number < len(self.settings.rules):
            return self.settings.rules[retry_number]
        return None

    @contextmanager
    def scheduled_payment(self) -> Iterator[None]:
        """Mark a gateway charge started by the schedule rather than by the customer."""
        self._scheduled_attempts += 1
        try:
            yield
        finally:
            self._scheduled_attempts -= 1

    def is_scheduled_payment_attempt(self) -> bool:
        return self._scheduled_attempts > 0

    def is_retrying(self) -> bool:
        return self._applying_rule > 0 or self._retrying_payment > 0

    @contextmanager
    def retrying_payment(self) -> Iterator[None]:
        self._retrying_payment += 1
        try:
            yield
        finally:
            self._retrying_payment -= 1

    def _apply_rule_statuses(
        self,
        rule: RetryRule,
        subscription: "Subscription",
        order: OrderRecord,
        note: str,
    ) -> None:
        order_store = subscription.services.order_store

        if rule.status_to_apply_to_order and not order.has_status(rule.status_to_apply_to_order):
            order_store.update_status(order.id, OrderStatus(rule.status_to_apply_to_order), note)
            subscription.reset_payment_count_cache()

        subscription_status = rule.status_to_apply_to_subscription
        if (
            subscription_status
            and not subscription.has_status(subscription_status)
            and subscription.can_be_updated_to(subscription_status)
        ):
            subscription.update_status(subscription_status, note)

    def maybe_apply_retry_rule(self, subscription: "Subscription", order: OrderRecord) -> Optional[PaymentRetryRecord]:
        """Schedule the next retry of a failed scheduled renewal payment.

        Only automatic renewals whose gateway accepts date changes are
        retried, and only while rules remain for the order.

        Returns:
            The scheduled retry, or None
        """
        if (
            not self.is_enabled()
            or not self.is_scheduled_payment_attempt()
            or subscription.is_manual()
            or not subscription.payment_method_supports(SUBSCRIPTION_DATE_CHANGES)
        ):
            return None

        retry_number = self.store.get_retry_count_for_order(order.id)
        rule = self.get_rule(retry_number)
        if rule is None:
            logger.info(
                "payment_retry_rules_exhausted",
                subscription_id=subscription.id,
                order_id=order.id,
                retries=retry_number,
            )
            return None

        retry_time = subscription.services.now() + rule.retry_after_interval
        retry = self.store.create(order.id, retry_time, rule)

        self._applying_rule += 1
        try:
            self._apply_rule_statuses(rule, subscription, order, RULE_APPLIED_NOTE)
            if rule.retry_after_interval > 0:
                subscription.update_dates({DateType.PAYMENT_RETRY: retry_time})
        finally:
            self._applying_rule -= 1

        logger.info(
            "payment_retry_scheduled",
            subscription_id=subscription.id,
            order_id=order.id,
            retry_id=retry.id,
            retry_number=retry_number + 1,
            retry_time=retry_time,
        )
        return retry

    def maybe_reapply_last_retry_rule(self, subscription: "Subscription", order: OrderRecord) -> None:
        """Put a pending retry's statuses back after a failed customer payment."""
        if self.is_scheduled_payment_attempt():
            return

        last_retry = self.store.get_last_retry_for_order(order.id)
        if last_retry is None or not last_retry.is_pending() or last_retry.rule is None:
            return

        self._applying_rule += 1
        try:
            self._apply_rule_statuses(last_retry.rule, subscription, order, RULE_REAPPLIED_NOTE)
        finally:
            self._applying_rule -= 1

    def maybe_cancel_retry(self, subscription: "Subscription", new_status: SubscriptionStatus) -> None:
        """Cancel a waiting retry when the subscription is moved elsewhere by hand.

        Called while the status change is applied; the payment retry date is
        cleared along with the retry.
        """
        if not subscription.get_time(DateType.PAYMENT_RETRY) or self.is_retrying():
            return

        last_order = subscription.services.related_orders.get_last_order(subscription.record)
        if last_order is None:
            return

        last_retry = self.store.get_last_retry_for_order(last_order.id)
        if last_retry is None or last_retry.status == RetryStatus.CANCELLED or last_retry.rule is None:
            return

        if new_status.value != last_retry.rule.status_to_apply_to_subscription:
            self.store.update_status(last_retry.id, RetryStatus.CANCELLED)
            subscription.delete_date(DateType.PAYMENT_RETRY)
            logger.info(
                "payment_retry_cancelled",
                subscription_id=subscription.id,
                order_id=last_order.id,
                retry_id=last_retry.id,
                new_status=new_status.value,
            )

    def start_retry(self, subscription: "Subscription", order: OrderRecord) -> Optional[PaymentRetryRecord]:
        """Claim the pending retry of an order for a payment attempt.

        Returns the retry, now processing, when the order and subscription are
        still where the retry rule left them and the order needs payment.
        Otherwise the retry is cancelled (someone intervened) and None is
        returned.
        """
        last_retry = self.store.get_last_retry_for_order(order.id)
        if last_retry is None or not last_retry.is_pending():
            return None

        self.store.update_status(last_retry.id, RetryStatus.PROCESSING)
        rule = last_retry.rule or RetryRule(retry_after_interval=0)

        valid_order_status = not rule.status_to_apply_to_order or order.has_status(rule.status_to_apply_to_order)
        valid_subscription_status = not rule.status_to_apply_to_subscription or subscription.has_status(
            rule.status_to_apply_to_subscription
        )

        if valid_order_status and valid_subscription_status and order.needs_payment():
            return last_retry

        self.store.update_status(last_retry.id, RetryStatus.CANCELLED)
        logger.info(
            "payment_retry_abandoned",
            subscription_id=subscription.id,
            order_id=order.id,
            retry_id=last_retry.id,
            order_status=order.status.value,
            subscription_status=subscription.status.value,
        )
        return None

    def finish_retry(self, retry: PaymentRetryRecord, order: OrderRecord) -> PaymentRetryRecord:
        """Record the outcome of a payment attempt: failed while the order still needs payment."""
        new_status = RetryStatus.FAILED if order.needs_payment() else RetryStatus.COMPLETE
        self.store.update_status(retry.id, new_status)
        logger.info("payment_retry_finished", order_id=order.id, retry_id=retry.id, status=new_status.value)
        return retry

    def __repr__(self) -> str:
        return f"PaymentRetryManager(enabled={self.is_enabled()}, rules={len(self.settings.rules)})"
