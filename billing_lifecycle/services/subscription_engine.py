"""Subscription payment event processing.

Reacts to the events that move a subscription through its lifecycle:
- renewal payments falling due (renewal order creation)
- payments completing or failing
- renewal order status changes reported by the order system
- scheduled dates passing (end of prepaid term, expiration, payment retry)
"""

import threading
from typing import Callable, Dict, Iterable, List, Optional, Union

from billing_lifecycle.logging_config import get_logger, subscription_log_context
from billing_lifecycle.models import events
from billing_lifecycle.models.order import PAID_STATUSES, OrderRecord, OrderStatus
from billing_lifecycle.models.retry import PaymentRetryRecord
from billing_lifecycle.models.subscription import (
    DateType,
    RelationType,
    SubscriptionStatus,
    normalise_date_type,
    normalise_status,
)
from billing_lifecycle.repositories.gateway_repository import GATEWAY_SCHEDULED_PAYMENTS
from billing_lifecycle.services.payment_retry import MANUAL_RETRY_SKIPPED_NOTE, PAYMENT_RETRY_NOTE
from billing_lifecycle.services.subscription import (
    Subscription,
    SubscriptionError,
    SubscriptionServices,
)

logger = get_logger(__name__)

RENEWAL_DUE_NOTE = "Subscription renewal payment due:"
MAX_FAILED_PAYMENTS_NOTE = "Subscription Cancelled: maximum number of failed payments reached."

# Old order statuses from which a paid renewal order reactivates its subscriptions
RENEWAL_AWAITING_PAYMENT_STATUSES = frozenset(
    {OrderStatus.PENDING, OrderStatus.ON_HOLD, OrderStatus.FAILED}
)

# Decides whether a failed payment should cancel the subscription outright
MaxFailedPaymentsHook = Callable[[Subscription], bool]

SubscriptionRef = Union[int, Subscription]


class RenewalOrderCreationError(SubscriptionError):
    """Raised when a renewal order could not be created after retrying."""

    pass


class SubscriptionEngine:
    """Subscription payment event processing engine.

    Drives status transitions, schedule recalculation and counter updates
    on Subscription entities in response to payment and order events.
    """

    def __init__(
            self,
            services: Optional[SubscriptionServices] = None,
            max_failed_payments_hook: Optional[MaxFailedPaymentsHook] = None,
    ):
        """Initialize subscription engine.

        Args:
            services: Collaborators shared by the subscriptions (defaults to global instances)
            max_failed_payments_hook: Extra check that forces cancellation on a failed payment
        """
        self.services = services or SubscriptionServices()
        self._max_failed_payments_hook = max_failed_payments_hook

        logger.info("subscription_engine_initialized")

    def get_subscription(self, subscription_id: int) -> Subscription:
        """Load a subscription.

        Raises:
            SubscriptionNotFoundError: If id not found
        """
        return Subscription.load(subscription_id, self.services)

    def _resolve(self, subscription: SubscriptionRef) -> Subscription:
        if isinstance(subscription, Subscription):
            return subscription
        return self.get_subscription(subscription)

    def _now(self) -> int:
        return self.services.now()

    def create_subscription(
            self,
            dates: Optional[Dict[Union[str, DateType], int]] = None,
            create_parent_order: bool = False,
            **fields,
    ) -> Subscription:
        """Create a subscription, optionally with the parent order it was bought in.

        Args:
            dates: Initial schedule dates (start defaults to now)
            create_parent_order: Create a pending parent order copying the total
            **fields: SubscriptionRecord fields

        Returns:
            The stored Subscription
        """
        dates = {normalise_date_type(k): v for k, v in (dates or {}).items()}
        dates.setdefault(DateType.START, self._now())
        dates.setdefault(DateType.DATE_CREATED, self._now())

        subscription = Subscription.create(self.services, dates=dates, **fields)

        if create_parent_order:
            order = self.services.order_store.create(
                RelationType.PARENT, subscription.record, created_at=self._now()
            )
            subscription.record.parent_order_id = order.id
            subscription.save()

        return subscription

    def create_renewal_order(self, subscription: SubscriptionRef) -> OrderRecord:
        """Create a pending renewal order for the subscription and link it.

        Returns:
            The created OrderRecord
        """
        subscription = self._resolve(subscription)

        order = self.services.order_store.create(
            RelationType.RENEWAL, subscription.record, created_at=self._now()
        )
        self.services.related_order_store.add_relation(subscription.id, order.id, RelationType.RENEWAL)
        subscription.reset_payment_count_cache()
        subscription.add_note(f"Order #{order.id} created to record renewal.")

        subscription.emit(events.RENEWAL_ORDER_CREATED, order_id=order.id, total=str(order.total))
        return order

    def _create_renewal_order_with_retry(self, subscription: Subscription, note: str) -> OrderRecord:
        attempts = self.services.settings.renewal_order_attempts
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                return self.create_renewal_order(subscription)
            except Exception as e:
                last_error = e
                logger.warning(
                    "renewal_order_creation_failed",
                    subscription_id=subscription.id,
                    attempt=attempt,
                    attempts=attempts,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        raise RenewalOrderCreationError(
            f'Error: Unable to create renewal order with note "{note}"'
        ) from last_error

    def process_renewal(
            self,
            subscription: SubscriptionRef,
            required_status: Union[str, SubscriptionStatus],
            note: str,
    ) -> Optional[OrderRecord]:
        """Start a renewal for a subscription the engine has to bill itself.

        Nothing happens unless the subscription is in the required status and
        its renewal isn't scheduled by the gateway (zero total, manual renewal,
        no payment method, or a gateway without scheduled payments). Eligible
        subscriptions are put on-hold before the renewal order exists, so a
        failure part way leaves them unbilled but not active.

        Args:
            subscription: Subscription or its id
            required_status: Status the subscription must be in
            note: Reason recorded with the on-hold transition

        Returns:
            The renewal order, or None if not eligible

        Raises:
            RenewalOrderCreationError: If the order couldn't be created after retrying
            IllegalTransitionError, TransientProcessingError: If the on-hold transition fails
        """
        subscription = self._resolve(subscription)
        with subscription_log_context(subscription.id, "renewal"):
            return self._process_renewal(subscription, required_status, note)

    def _process_renewal(
            self,
            subscription: Subscription,
            required_status: Union[str, SubscriptionStatus],
            note: str,
    ) -> Optional[OrderRecord]:
        record = subscription.record

        if not subscription.has_status(required_status):
            logger.debug(
                "renewal_skipped_status",
                subscription_id=record.id,
                status=record.status.value,
                required_status=str(required_status),
            )
            return None

        if not (
            record.total == 0
            or subscription.is_manual()
            or not record.payment_method
            or not subscription.payment_method_supports(GATEWAY_SCHEDULED_PAYMENTS)
        ):
            logger.debug("renewal_scheduled_by_gateway", subscription_id=record.id, gateway=record.payment_method)
            return None

        subscription.update_status(SubscriptionStatus.ON_HOLD, note)

        renewal_order = self._create_renewal_order_with_retry(subscription, note)

        if renewal_order.total == 0:
            old_status = renewal_order.status
            self.services.order_store.mark_paid(renewal_order.id, self._now())
            self._record_renewal_order_payment(renewal_order, old_status, [subscription])
        elif subscription.is_manual():
            subscription.emit(events.GENERATED_MANUAL_RENEWAL_ORDER, order_id=renewal_order.id)
            subscription.add_note("Manual renewal order awaiting customer payment.")
        else:
            renewal_order.payment_method = record.payment_method
            self._charge_renewal_order(subscription, renewal_order)

        logger.info(
            "renewal_processed",
            subscription_id=record.id,
            order_id=renewal_order.id,
            total=str(renewal_order.total),
            manual=subscription.is_manual(),
        )
        return renewal_order

    def _charge_renewal_order(self, subscription: Subscription, order: OrderRecord, **details) -> None:
        # Gateway listeners charge the order and report back through
        # payment_complete / payment_failed while the attempt is marked scheduled
        with self.services.retries.scheduled_payment():
            subscription.emit(
                events.SCHEDULED_SUBSCRIPTION_PAYMENT,
                order_id=order.id,
                gateway=order.payment_method or subscription.record.payment_method,
                amount=str(order.total),
                **details,
            )

    def prepare_renewal(self, subscription: SubscriptionRef) -> Optional[OrderRecord]:
        """Scheduled "payment due" entry point for active subscriptions."""
        return self.process_renewal(subscription, SubscriptionStatus.ACTIVE, RENEWAL_DUE_NOTE)

    def payment_complete_for_order(
            self,
            subscription: SubscriptionRef,
            order: Optional[OrderRecord] = None,
    ) -> Subscription:
        """Record a successful payment and reactivate the subscription.

        Resets the suspension count and the cached payment counts, then moves
        the subscription to active, which recalculates its next payment.

        Args:
            subscription: Subscription or its id
            order: Order the payment was made on

        Returns:
            The updated Subscription

        Raises:
            IllegalTransitionError, TransientProcessingError: If reactivation fails
                (the suspension count is restored)
        """
        subscription = self._resolve(subscription)
        old_suspension_count = subscription.record.suspension_count

        subscription.reset_payment_count_cache()
        subscription.record.reset_suspension_count()
        subscription.add_note("Payment status marked complete.")

        try:
            subscription.update_status(SubscriptionStatus.ACTIVE)
        except SubscriptionError:
            subscription.record.suspension_count = old_suspension_count
            subscription.save()
            raise
        subscription.save()

        order_id = order.id if order else None
        subscription.emit(events.PAYMENT_COMPLETE, order_id=order_id)
        if order is not None and order.is_renewal():
            subscription.emit(events.RENEWAL_PAYMENT_COMPLETE, order_id=order.id)

        logger.info(
            "subscription_payment_complete",
            subscription_id=subscription.id,
            order_id=order_id,
            next_payment=subscription.get_time(DateType.NEXT_PAYMENT),
        )
        return subscription

    def payment_complete(self, subscription: SubscriptionRef, transaction_id: str = "") -> Subscription:
        """Mark the latest order paid (if it needs payment) and record the payment."""
        subscription = self._resolve(subscription)
        subscription.reset_payment_count_cache()

        last_order = self.services.related_orders.get_last_order(subscription.record, RelationType.ANY)
        if last_order is not None and last_order.needs_payment():
            self.services.order_store.mark_paid(last_order.id, self._now(), transaction_id)

        return self.payment_complete_for_order(subscription, last_order)

    def _max_failed_payments_exceeded(self, subscription: Subscription) -> bool:
        if self._max_failed_payments_hook is not None and self._max_failed_payments_hook(subscription):
            return True
        max_failed = self.services.settings.max_failed_payments
        return max_failed is not None and subscription.get_failed_payment_count() >= max_failed

    def payment_failed(
            self,
            subscription: SubscriptionRef,
            new_status: Union[str, SubscriptionStatus] = SubscriptionStatus.ON_HOLD,
    ) -> Subscription:
        """Record a failed payment.

        The latest order is marked failed. The subscription moves to
        new_status when allowed, or is cancelled when new_status is
        cancelled or the maximum number of failed payments is reached.
        If that transition fails the order gets its previous status back.

        A failed scheduled renewal payment then gets the next payment retry
        rule applied, when retries are enabled.

        Args:
            subscription: Subscription or its id
            new_status: Status to move to

        Returns:
            The updated Subscription

        Raises:
            IllegalTransitionError, TransientProcessingError: If the transition fails
        """
        subscription = self._resolve(subscription)
        requested = SubscriptionStatus(normalise_status(new_status))

        with subscription_log_context(subscription.id, "payment_failed"):
            last_order = self.services.related_orders.get_last_order(subscription.record, RelationType.ANY)
            previous_order_status: Optional[OrderStatus] = None
            if last_order is not None and not last_order.has_status(OrderStatus.FAILED):
                previous_order_status = last_order.status
                self.services.order_store.update_status(last_order.id, OrderStatus.FAILED)
                subscription.reset_payment_count_cache()

            subscription.add_note("Payment failed.")

            try:
                if requested == SubscriptionStatus.CANCELLED or self._max_failed_payments_exceeded(subscription):
                    if subscription.can_be_updated_to(SubscriptionStatus.CANCELLED):
                        subscription.update_status(SubscriptionStatus.CANCELLED, MAX_FAILED_PAYMENTS_NOTE)
                elif subscription.can_be_updated_to(requested):
                    subscription.update_status(requested)
            except SubscriptionError:
                if previous_order_status is not None:
                    self.services.order_store.update_status(last_order.id, previous_order_status)
                    subscription.reset_payment_count_cache()
                    logger.warning(
                        "failed_order_status_restored",
                        subscription_id=subscription.id,
                        order_id=last_order.id,
                        order_status=previous_order_status,
                    )
                raise

            order_id = last_order.id if last_order else None
            subscription.emit(events.PAYMENT_FAILED, new_status=requested.value, order_id=order_id)
            if last_order is not None and last_order.is_renewal():
                subscription.emit(events.RENEWAL_PAYMENT_FAILED, order_id=last_order.id)
                if not subscription.is_ended():
                    self.services.retries.maybe_apply_retry_rule(subscription, last_order)
                    self.services.retries.maybe_reapply_last_retry_rule(subscription, last_order)

            logger.info(
                "subscription_payment_failed",
                subscription_id=subscription.id,
                order_id=order_id,
                status=subscription.status.value,
                suspension_count=subscription.record.suspension_count,
            )
            return subscription

    def update_order_status(self, order_id: int, new_status: OrderStatus, note: str = "") -> List[int]:
        """Change an order's status and let its subscriptions react.

        Returns:
            Ids of the subscriptions that were processed
        """
        order = self.services.order_store.get_by_id(order_id)
        old_status = order.status
        self.services.order_store.update_status(order_id, new_status, note)
        return self.handle_order_status_change(order_id, old_status, new_status)

    def handle_order_status_change(
            self,
            order_id: int,
            old_status: Union[str, OrderStatus],
            new_status: Union[str, OrderStatus],
    ) -> List[int]:
        """React to a renewal order changing status.

        A renewal order becoming paid reactivates its subscriptions; one
        becoming failed records a failed payment on them. Other orders are
        ignored.

        Args:
            order_id: Order identifier
            old_status: Status before the change
            new_status: Status after the change

        Returns:
            Ids of the subscriptions that were processed
        """
        order = self.services.order_store.get(order_id)
        if order is None or not order.is_renewal():
            return []

        subscription_ids = self.services.related_order_store.get_subscription_ids_for_order(
            order_id, RelationType.RENEWAL
        )
        subscriptions = [self.get_subscription(subscription_id) for subscription_id in subscription_ids]
        self._record_renewal_order_payment(order, OrderStatus(old_status), subscriptions, OrderStatus(new_status))
        return subscription_ids

    def _record_renewal_order_payment(
            self,
            order: OrderRecord,
            old_status: OrderStatus,
            subscriptions: Iterable[Subscription],
            new_status: Optional[OrderStatus] = None,
    ) -> None:
        new_status = new_status or order.status
        order_paid = new_status in PAID_STATUSES
        order_needed_payment = old_status in RENEWAL_AWAITING_PAYMENT_STATUSES

        if order_paid and order.date_paid is None:
            order.date_paid = self._now()

        for subscription in subscriptions:
            subscription.reset_payment_count_cache()

            if order_paid and not subscription.is_ended() and not subscription.has_status(SubscriptionStatus.ACTIVE):
                if order_needed_payment:
                    self.payment_complete_for_order(subscription, order)
                if old_status == OrderStatus.FAILED:
                    subscription.emit(events.PAID_FOR_FAILED_RENEWAL_ORDER, order_id=order.id)

            elif new_status == OrderStatus.FAILED:
                self.payment_failed(subscription)

    def expire_subscription(self, subscription: SubscriptionRef) -> bool:
        """Expire a subscription whose end date has passed.

        Returns:
            True if the subscription was expired
        """
        subscription = self._resolve(subscription)
        if not subscription.can_be_updated_to(SubscriptionStatus.EXPIRED):
            return False
        subscription.update_status(SubscriptionStatus.EXPIRED)
        return True

    def end_of_prepaid_term(self, subscription: SubscriptionRef) -> bool:
        """Cancel a pending-cancel subscription once its prepaid term is over.

        Returns:
            True if the subscription was cancelled
        """
        subscription = self._resolve(subscription)
        if not subscription.has_status(SubscriptionStatus.PENDING_CANCEL):
            return False
        subscription.update_status(SubscriptionStatus.CANCELLED)
        return True

    def payment_retry_due(self, subscription: SubscriptionRef) -> Optional[PaymentRetryRecord]:
        """Clear a passed payment retry date, announce the retry and attempt it.

        Returns:
            The retry that was attempted, or None when there was nothing to retry
        """
        subscription = self._resolve(subscription)
        with subscription_log_context(subscription.id, "payment_retry"):
            retry_time = subscription.get_time(DateType.PAYMENT_RETRY)
            subscription.delete_date(DateType.PAYMENT_RETRY)
            subscription.emit(events.PAYMENT_RETRY_DUE, retry_time=retry_time)
            return self.retry_payment(subscription)

    def retry_payment(self, subscription: SubscriptionRef) -> Optional[PaymentRetryRecord]:
        """Attempt the payment of the last renewal order again.

        The pending retry of the order is only attempted while the order and
        subscription are still in the statuses its rule applied and the order
        needs payment; otherwise it is cancelled. Manual subscriptions get a
        note on the order instead of a charge.

        Returns:
            The attempted retry (failed or complete), or None
        """
        subscription = self._resolve(subscription)
        retries = self.services.retries
        order_store = self.services.order_store

        order = self.services.related_orders.get_last_order(subscription.record, RelationType.RENEWAL)
        if order is None:
            return None

        retry = retries.start_retry(subscription, order)
        if retry is None:
            return None

        with retries.retrying_payment():
            if subscription.is_manual():
                order_store.add_note(order.id, MANUAL_RETRY_SKIPPED_NOTE)
                logger.info("payment_retry_skipped_manual", subscription_id=subscription.id, order_id=order.id)
            else:
                order_store.update_status(order.id, OrderStatus.PENDING, PAYMENT_RETRY_NOTE)
                subscription.reset_payment_count_cache()
                if not subscription.has_status(SubscriptionStatus.ON_HOLD) and subscription.can_be_updated_to(
                    SubscriptionStatus.ON_HOLD
                ):
                    subscription.update_status(SubscriptionStatus.ON_HOLD, PAYMENT_RETRY_NOTE)
                self._charge_renewal_order(subscription, order, retry_id=retry.id)

        return retries.finish_retry(retry, order_store.get_by_id(order.id))

    def process_scheduled_events(self, now: int) -> Dict[str, List[int]]:
        """Handle every scheduled date that has passed.

        A failure on one subscription is logged and the rest of the batch
        continues.

        Args:
            now: Current UTC timestamp

        Returns:
            Ids of the subscriptions handled, per event kind
        """
        store = self.services.store
        processed: Dict[str, List[int]] = {
            "payment_due": [],
            "end_of_prepaid_term": [],
            "expired": [],
            "payment_retry": [],
        }

        jobs = [
            (
                "end_of_prepaid_term",
                store.get_due(DateType.END, now, [SubscriptionStatus.PENDING_CANCEL]),
                self.end_of_prepaid_term,
            ),
            (
                "expired",
                store.get_due(DateType.END, now, [SubscriptionStatus.ACTIVE, SubscriptionStatus.ON_HOLD]),
                self.expire_subscription,
            ),
            (
                "payment_due",
                store.get_due(DateType.NEXT_PAYMENT, now, [SubscriptionStatus.ACTIVE]),
                self.prepare_renewal,
            ),
            (
                "payment_retry",
                store.get_due(DateType.PAYMENT_RETRY, now),
                self.payment_retry_due,
            ),
        ]

        for kind, records, handler in jobs:
            for record in records:
                try:
                    with subscription_log_context(record.id, kind):
                        result = handler(record.id)
                except Exception as e:
                    logger.error(
                        "scheduled_event_failed",
                        kind=kind,
                        subscription_id=record.id,
                        error=str(e),
                        error_type=type(e).__name__,
                        exc_info=True,
                    )
                    continue
                if result is not False and (kind != "payment_due" or result is not None):
                    processed[kind].append(record.id)

        return processed


_engine_instance: Optional[SubscriptionEngine] = None
_engine_lock = threading.Lock()


def get_subscription_engine() -> SubscriptionEngine:
    """Get global subscription engine (singleton)."""
    global _engine_instance
    if _engine_instance is None:
        with _engine_lock:
            if _engine_instance is None:
                _engine_instance = SubscriptionEngine()
    return _engine_instance


def reset_subscription_engine() -> None:
    global _engine_instance
    with _engine_lock:
        _engine_instance = None
