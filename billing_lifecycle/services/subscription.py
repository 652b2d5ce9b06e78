"""Subscription entity.

Wraps a SubscriptionRecord with the collaborators it needs (stores,
gateway capabilities, event dispatcher, clock) and owns:
- schedule date reads, validated updates and deletions
- payment, failed payment and suspension counters
- manual renewal and gateway capability checks
- status transitions and their side effects on the schedule

Every status change either fully applies (status, dates, counters,
notes, events) or is reverted to the state before the call.
"""

from typing import Dict, List, Mapping, Optional, Tuple, Union

from billing_lifecycle.config import get_config
from billing_lifecycle.logging_config import get_logger
from billing_lifecycle.models import events
from billing_lifecycle.models.order import OrderStatus
from billing_lifecycle.models.settings import EngineSettings
from billing_lifecycle.models.subscription import (
    DERIVED_DATE_TYPES,
    NEVER_CLEARED_DATE_TYPES,
    UNDELETABLE_DATE_TYPES,
    DateType,
    RelationType,
    SubscriptionRecord,
    SubscriptionStatus,
    normalise_date_type,
    normalise_status,
)
from billing_lifecycle.repositories.gateway_repository import (
    GATEWAY_SCHEDULED_PAYMENTS,
    SUBSCRIPTION_AMOUNT_CHANGES,
    SUBSCRIPTION_CANCELLATION,
    SUBSCRIPTION_DATE_CHANGES,
    SUBSCRIPTION_REACTIVATION,
    SUBSCRIPTION_SUSPENSION,
    GatewayRepository,
    get_gateway_repository,
)
from billing_lifecycle.repositories.order_store import OrderStore
from billing_lifecycle.repositories.related_order_store import RelatedOrderStore
from billing_lifecycle.repositories.retry_store import RetryStore
from billing_lifecycle.repositories.subscription_store import (
    SubscriptionStore,
    get_subscription_store,
)
from billing_lifecycle.services.event_dispatcher import EventDispatcher, get_event_dispatcher
from billing_lifecycle.services.payment_retry import PaymentRetryManager
from billing_lifecycle.services.related_orders import (
    RelatedOrderQuery,
    RelationTypes,
    normalise_relation_types,
)
from billing_lifecycle.services.staging import forces_manual_renewal
from billing_lifecycle.services.status_guard import (
    ENDED_STATUSES,
    TransitionFacts,
    TransitionRule,
    can_transition,
)
from billing_lifecycle.utils.date_schedule import (
    SECONDS_PER_DAY,
    ScheduleFacts,
    add_periods,
    calculate_end_of_prepaid_term,
    calculate_next_payment,
    calculate_trial_end,
    date_to_time,
    is_datetime_mysql_format,
)

logger = get_logger(__name__)

END_OF_PREPAID_TERM = "end_of_prepaid_term"

# Derived date types and the related order field they read
LAST_ORDER_DATE_FIELDS = {
    DateType.LAST_ORDER_DATE_CREATED: "date_created",
    DateType.LAST_ORDER_DATE_PAID: "date_paid",
    DateType.LAST_ORDER_DATE_COMPLETED: "date_completed",
}
ANY_ORDER_DATE_FIELDS = {
    DateType.DATE_PAID: "date_paid",
    DateType.DATE_COMPLETED: "date_completed",
}

DEFAULT_PAYMENT_ORDER_TYPES = (RelationType.PARENT, RelationType.RENEWAL)

DateValue = Union[int, str, None]


class SubscriptionError(Exception):
    """Base exception for subscription errors."""

    pass


class IllegalTransitionError(SubscriptionError):
    """Raised when a requested status is not allowed from the current status."""

    def __init__(self, message: str, subscription_id: int, old_status: str, new_status: str):
        super().__init__(message)
        self.subscription_id = subscription_id
        self.old_status = old_status
        self.new_status = new_status


class InvalidDateOrderingError(SubscriptionError):
    """Raised when a date update would break the schedule ordering.

    All violations found are listed in ``messages``.
    """

    def __init__(self, subscription_id: int, messages: List[str]):
        super().__init__(f"Subscription #{subscription_id}: " + " ".join(messages))
        self.subscription_id = subscription_id
        self.messages = messages


class ProtectedDateDeletionError(SubscriptionError):
    """Raised when deleting a date that can only be updated or comes from related orders."""

    pass


class TransientProcessingError(SubscriptionError):
    """Raised when a status change failed part way and was reverted."""

    pass


def _date_label(date_type: DateType) -> str:
    return date_type.value.replace("_", " ")


class SubscriptionServices:
    """Collaborators a Subscription works with.

    Every collaborator defaults to the global instance. transition_rules
    lets an extension allow statuses the built-in table does not know.
    """

    def __init__(
        self,
        subscription_store: Optional[SubscriptionStore] = None,
        order_store: Optional[OrderStore] = None,
        related_order_store: Optional[RelatedOrderStore] = None,
        gateway_repository: Optional[GatewayRepository] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        time_controller=None,
        settings: Optional[EngineSettings] = None,
        retry_store: Optional[RetryStore] = None,
        transition_rules: Optional[Mapping[str, TransitionRule]] = None,
    ):
        self.store = subscription_store if subscription_store is not None else get_subscription_store()
        self.related_orders = RelatedOrderQuery(order_store, related_order_store)
        self.gateways = gateway_repository if gateway_repository is not None else get_gateway_repository()
        self.dispatcher = event_dispatcher if event_dispatcher is not None else get_event_dispatcher()
        if time_controller is None:
            from billing_lifecycle.services.time_controller import get_time_controller
            time_controller = get_time_controller()
        self.clock = time_controller
        self.settings = settings or get_config().engine_settings
        self.retries = PaymentRetryManager(retry_store, self.settings.retry)
        self.transition_rules = dict(transition_rules or {})

    @property
    def order_store(self) -> OrderStore:
        return self.related_orders.order_store

    @property
    def related_order_store(self) -> RelatedOrderStore:
        return self.related_orders.related_order_store

    def now(self) -> int:
        return self.clock.get_current_time()


class Subscription:
    """A subscription and the rules that govern its schedule and status.

    Args:
        record: Persisted subscription data
        services: Collaborators (defaults to global instances)
        object_read: False while the subscription is still being built;
            date ordering is only enforced once it is fully loaded
    """

    def __init__(
        self,
        record: SubscriptionRecord,
        services: Optional[SubscriptionServices] = None,
        object_read: bool = True,
    ):
        self.record = record
        self.services = services or SubscriptionServices()
        self.object_read = object_read
        self._payment_count_cache: Dict[str, Dict[Tuple[RelationType, ...], int]] = {
            "completed": {},
            "refunded": {},
        }

    @classmethod
    def load(cls, subscription_id: int, services: Optional[SubscriptionServices] = None) -> "Subscription":
        """Load a subscription from the store.

        Drafts that were stored before checkout finished are read as pending.

        Raises:
            SubscriptionNotFoundError: If the id is unknown
        """
        services = services or SubscriptionServices()
        record = services.store.get_by_id(subscription_id)
        if record.status in (SubscriptionStatus.DRAFT, SubscriptionStatus.AUTO_DRAFT):
            record.status = SubscriptionStatus.PENDING
        return cls(record, services)

    @classmethod
    def create(
        cls,
        services: Optional[SubscriptionServices] = None,
        dates: Optional[Mapping[Union[str, DateType], DateValue]] = None,
        **fields,
    ) -> "Subscription":
        """Create and store a new subscription.

        Dates are assigned before the subscription counts as loaded, so
        they are stored as given without ordering checks or events.

        Args:
            services: Collaborators
            dates: Initial schedule dates
            **fields: SubscriptionRecord fields (id is reserved from the store if omitted)

        Returns:
            The stored Subscription
        """
        services = services or SubscriptionServices()
        if not fields.get("id"):
            fields["id"] = services.store.next_id()
        record = SubscriptionRecord(**fields)

        subscription = cls(record, services, object_read=False)
        if dates:
            subscription.update_dates(dates)
        services.store.add(record)
        subscription.object_read = True

        logger.info(
            "subscription_created",
            subscription_id=record.id,
            status=record.status.value,
            billing_period=record.billing_period.value,
            billing_interval=record.billing_interval,
            payment_method=record.payment_method or None,
        )
        return subscription

    @property
    def id(self) -> int:
        return self.record.id

    @property
    def status(self) -> SubscriptionStatus:
        return self.record.status

    def has_status(self, *statuses: Union[str, SubscriptionStatus]) -> bool:
        return self.record.status.value in {normalise_status(s) for s in statuses}

    def is_ended(self) -> bool:
        return self.record.status.value in ENDED_STATUSES

    def _now(self) -> int:
        return self.services.now()

    def emit(self, event_name: str, **payload) -> None:
        self.services.dispatcher.emit(event_name, self.record.id, **payload)

    def add_note(self, note: str) -> None:
        """Add a note to the audit trail (persisted immediately once stored)."""
        if not note:
            return
        self.record.add_note(note)
        if self.object_read and self.services.store.exists(self.record.id):
            self.services.store.append_note(self.record.id, note)

    def save(self) -> None:
        self.services.store.save(self.record)

    # Dates

    def get_date(self, date_type: Union[str, DateType], timezone: str = "gmt") -> int:
        """Get a schedule date.

        Dates derived from related orders are resolved through the ledger:
        ``last_order_date_*`` read the last parent/renewal order, while
        ``date_paid``/``date_completed`` take the newest related order
        with the field set.

        Args:
            date_type: Date type or legacy key
            timezone: "gmt" for UTC, anything else shifts by the site offset

        Returns:
            Timestamp, 0 if not set
        """
        date_type = normalise_date_type(date_type)

        if date_type in LAST_ORDER_DATE_FIELDS:
            timestamp = self.services.related_orders.get_related_orders_date(
                self.record, LAST_ORDER_DATE_FIELDS[date_type], "last"
            )
        elif date_type in ANY_ORDER_DATE_FIELDS:
            timestamp = self.services.related_orders.get_related_orders_date(
                self.record, ANY_ORDER_DATE_FIELDS[date_type], RelationType.ANY
            )
        else:
            timestamp = self.record.get_stored_date(date_type)

        if timestamp and timezone.lower() != "gmt":
            timestamp += self.services.settings.schedule.site_utc_offset_seconds
        return timestamp

    def get_time(self, date_type: Union[str, DateType]) -> int:
        """Get a schedule date as a UTC timestamp."""
        return self.get_date(date_type, "gmt")

    def _normalise_date_value(self, date_type: DateType, value: DateValue, timezone: str) -> int:
        if isinstance(value, str) and value.strip() not in ("", "0") and not value.strip().isdigit():
            if not is_datetime_mysql_format(value):
                raise ValueError(
                    f'Invalid {date_type.value} date. The date must be of the format: "YYYY-MM-DD HH:MM:SS".'
                )
        timestamp = date_to_time(value)
        if timestamp and timezone.lower() != "gmt":
            timestamp -= self.services.settings.schedule.site_utc_offset_seconds
        return timestamp

    def validate_date_updates(
        self,
        dates: Mapping[Union[str, DateType], DateValue],
        timezone: str = "gmt",
    ) -> Dict[DateType, int]:
        """Check a set of date changes against the current schedule.

        Passed dates are merged with the stored and derived ones and the
        ordering rules are checked on the result. Violations are only
        raised once the subscription is loaded.

        Args:
            dates: Date type -> timestamp, "YYYY-MM-DD HH:MM:SS" string, or 0 to delete
            timezone: Timezone of string/timestamp values ("gmt" or site)

        Returns:
            Normalised passed dates as UTC timestamps (0 = delete)

        Raises:
            ValueError: For empty input, unknown date types or malformed values
            ProtectedDateDeletionError: When clearing a date that can't be deleted
            InvalidDateOrderingError: When the merged schedule is out of order
        """
        if not dates:
            raise ValueError("No dates were passed to update.")

        passed: Dict[DateType, int] = {}
        for key, value in dates.items():
            date_type = normalise_date_type(key)
            if date_type in ANY_ORDER_DATE_FIELDS:
                raise ValueError(f"The {_date_label(date_type)} date is read from related orders.")
            passed[date_type] = self._normalise_date_value(date_type, value, timezone)

        timestamps: Dict[DateType, int] = {}
        for date_type in DateType:
            if not self.object_read and date_type in DERIVED_DATE_TYPES:
                continue

            timestamp = passed[date_type] if date_type in passed else self.get_time(date_type)
            if timestamp == 0:
                if (
                    date_type in passed
                    and date_type in UNDELETABLE_DATE_TYPES
                    and date_type not in NEVER_CLEARED_DATE_TYPES
                    and self.object_read
                    and self.get_time(date_type) != 0
                ):
                    raise ProtectedDateDeletionError(
                        f"Subscription #{self.record.id}: The {_date_label(date_type)} date is "
                        f"set by the related orders and can not be deleted."
                    )
                continue
            timestamps[date_type] = timestamp

        messages = self._date_ordering_messages(timestamps)
        if self.object_read and messages:
            raise InvalidDateOrderingError(self.record.id, messages)

        return passed

    @staticmethod
    def _date_ordering_messages(timestamps: Mapping[DateType, int]) -> List[str]:
        """Collect ordering violations.

        end >= cancelled; end and cancelled >= last order date and > next
        payment; end, cancelled and next payment >= trial end; next payment
        and trial end > start.
        """
        messages = []
        start = timestamps.get(DateType.START, 0)
        cancelled = timestamps.get(DateType.CANCELLED)
        next_payment = timestamps.get(DateType.NEXT_PAYMENT)
        trial_end = timestamps.get(DateType.TRIAL_END)
        last_order = timestamps.get(DateType.LAST_ORDER_DATE_CREATED)

        for date_type in (DateType.END, DateType.CANCELLED, DateType.NEXT_PAYMENT, DateType.TRIAL_END):
            if date_type not in timestamps:
                continue
            timestamp = timestamps[date_type]
            label = _date_label(date_type)

            if date_type == DateType.END and cancelled is not None and timestamp < cancelled:
                messages.append(f"The {label} date must occur after the cancellation date.")

            if date_type in (DateType.END, DateType.CANCELLED):
                if last_order is not None and timestamp < last_order:
                    messages.append(f"The {label} date must occur after the last payment date.")
                if next_payment is not None and timestamp <= next_payment:
                    messages.append(f"The {label} date must occur after the next payment date.")

            if date_type != DateType.TRIAL_END:
                if trial_end is not None and timestamp < trial_end:
                    messages.append(f"The {label} date must occur after the trial end date.")

            if date_type in (DateType.NEXT_PAYMENT, DateType.TRIAL_END) and timestamp <= start:
                messages.append(f"The {label} date must occur after the start date.")

        return messages

    def update_dates(
        self,
        dates: Mapping[Union[str, DateType], DateValue],
        timezone: str = "gmt",
    ) -> None:
        """Validate and apply a set of date changes.

        Nothing is applied if any date fails validation. Zero values delete
        the date, except for start, date created and last order date which
        are left untouched. Each applied date is persisted and announced
        with a ``date_updated`` event once the subscription is loaded.

        Raises:
            ValueError, ProtectedDateDeletionError, InvalidDateOrderingError:
                See validate_date_updates()
        """
        try:
            validated = self.validate_date_updates(dates, timezone)
        except InvalidDateOrderingError as e:
            self.add_note(str(e))
            logger.warning(
                "subscription_date_update_rejected",
                subscription_id=self.record.id,
                messages=e.messages,
            )
            raise

        self._apply_dates(validated)

    def _apply_dates(self, dates: Mapping[DateType, int]) -> None:
        changes: List[Tuple[DateType, int]] = []
        for date_type, timestamp in dates.items():
            if timestamp == self.get_time(date_type):
                continue

            if timestamp == 0:
                if date_type in NEVER_CLEARED_DATE_TYPES:
                    continue
                self._check_deletable(date_type)
            elif date_type in LAST_ORDER_DATE_FIELDS and not self.object_read:
                continue

            changes.append((date_type, timestamp))

        self._write_dates(changes)

    def _write_dates(self, changes: List[Tuple[DateType, int]]) -> None:
        """Set dates on the record, persist them together, then announce them.

        If persisting or a listener fails, the record, the last order and the
        stored dates are put back as they were and the error is raised.
        """
        stored_dates = dict(self.record.dates)
        last_order = None
        last_order_dates: Dict[str, Optional[int]] = {}
        applied: List[Tuple[DateType, int]] = []

        for date_type, timestamp in changes:
            if date_type in LAST_ORDER_DATE_FIELDS:
                last_order = last_order or self.services.related_orders.get_last_order(self.record)
                if last_order is None:
                    continue
                field = LAST_ORDER_DATE_FIELDS[date_type]
                last_order_dates.setdefault(field, getattr(last_order, field))
                setattr(last_order, field, timestamp)
            else:
                self.record.set_date(date_type, timestamp)
            applied.append((date_type, timestamp))

        if last_order_dates:
            self.reset_payment_count_cache()

        if not applied or not self.object_read:
            return

        saved = False
        try:
            self.services.store.save_dates(self.record)
            saved = True
            for date_type, timestamp in applied:
                if timestamp:
                    self.emit(events.DATE_UPDATED, date_type=date_type.value, timestamp=timestamp)
                else:
                    self.emit(events.DATE_DELETED, date_type=date_type.value)
        except Exception:
            self.record.dates = stored_dates
            for field, value in last_order_dates.items():
                setattr(last_order, field, value)
            if last_order_dates:
                self.reset_payment_count_cache()
            if saved:
                self.services.store.save_dates(self.record)
            raise

    def _check_deletable(self, date_type: DateType) -> None:
        if date_type in (DateType.DATE_CREATED, DateType.START):
            raise ProtectedDateDeletionError(
                f"Subscription #{self.record.id}: The {_date_label(date_type)} date of a "
                f"subscription can not be deleted, only updated."
            )
        if date_type in UNDELETABLE_DATE_TYPES:
            raise ProtectedDateDeletionError(
                f"Subscription #{self.record.id}: The {_date_label(date_type)} date is set by "
                f"the related orders. Delete the related order instead."
            )

    def delete_date(self, date_type: Union[str, DateType]) -> None:
        """Clear a schedule date.

        Raises:
            ProtectedDateDeletionError: For start, date created and dates read from related orders
        """
        date_type = normalise_date_type(date_type)
        self._check_deletable(date_type)
        self._write_dates([(date_type, 0)])

    def can_date_be_updated(self, date_type: Union[str, DateType]) -> bool:
        """Whether a date may currently be changed."""
        date_type = normalise_date_type(date_type)

        if date_type in (DateType.DATE_CREATED, DateType.START):
            return self.has_status(SubscriptionStatus.AUTO_DRAFT, SubscriptionStatus.PENDING)

        if date_type == DateType.TRIAL_END:
            # The count must reflect payments recorded since it was cached
            self.reset_payment_count_cache()
            return (
                self.get_payment_count() < 2
                and not self.is_ended()
                and (
                    self.has_status(SubscriptionStatus.PENDING)
                    or self.payment_method_supports(SUBSCRIPTION_DATE_CHANGES)
                )
            )

        if date_type in (DateType.NEXT_PAYMENT, DateType.END):
            return not self.is_ended() and (
                self.has_status(SubscriptionStatus.PENDING)
                or self.payment_method_supports(SUBSCRIPTION_DATE_CHANGES)
            )

        return date_type == DateType.LAST_ORDER_DATE_CREATED

    def _schedule_facts(self) -> ScheduleFacts:
        last_payment = max(
            self.get_time(DateType.LAST_ORDER_DATE_CREATED),
            self.get_time(DateType.LAST_ORDER_DATE_PAID),
        )
        return ScheduleFacts(
            start=self.get_time(DateType.START),
            next_payment=self.get_time(DateType.NEXT_PAYMENT),
            trial_end=self.get_time(DateType.TRIAL_END),
            last_payment=last_payment,
            end=self.get_time(DateType.END),
            billing_interval=self.record.billing_interval,
            billing_period=self.record.billing_period,
            is_synced=self.record.is_synced,
            payment_count=self.get_payment_count(),
            utc_offset=self.services.settings.schedule.site_utc_offset_seconds,
        )

    def _schedule_margins(self) -> dict:
        schedule = self.services.settings.schedule
        return {
            "threshold": schedule.next_payment_threshold_seconds,
            "end_margin": schedule.end_date_margin_seconds,
            "max_iterations": schedule.max_period_iterations,
        }

    def calculate_date(self, date_type: Union[str, DateType]) -> int:
        """Preview a calculated date without changing anything.

        Args:
            date_type: "next_payment", "trial_end" or "end_of_prepaid_term"

        Returns:
            Timestamp, 0 for no date or for any other type
        """
        key = date_type.value if isinstance(date_type, DateType) else str(date_type)
        now = self._now()

        if key == DateType.NEXT_PAYMENT.value:
            return calculate_next_payment(self._schedule_facts(), now, **self._schedule_margins())
        if key == DateType.TRIAL_END.value:
            return calculate_trial_end(
                self.get_payment_count(), self._schedule_facts(), now, **self._schedule_margins()
            )
        if key == END_OF_PREPAID_TERM:
            return calculate_end_of_prepaid_term(
                self.get_time(DateType.NEXT_PAYMENT), self.get_time(DateType.END), now
            )
        return 0

    def is_one_payment(self) -> bool:
        """Whether the end date leaves room for only one payment."""
        end = self.get_time(DateType.END)
        if not end:
            return False

        from_timestamp = self.get_time(DateType.START)

        if self.get_time(DateType.TRIAL_END) or self.record.is_synced:
            order_count = len(self.services.related_orders.get_related_orders(self.record))
            next_payment = self.get_time(DateType.NEXT_PAYMENT)
            last_order_date = self.get_time(DateType.LAST_ORDER_DATE_CREATED)

            # Before the first payment the schedule runs from the next payment,
            # afterwards from the last order; exactly two orders uses the last order.
            if order_count < 2 and next_payment:
                from_timestamp = next_payment
            elif order_count <= 2 and last_order_date:
                from_timestamp = last_order_date

        next_payment = add_periods(
            self.record.billing_interval,
            self.record.billing_period,
            from_timestamp,
            self.services.settings.schedule.site_utc_offset_seconds,
        )
        return next_payment + SECONDS_PER_DAY - 1 > end

    # Payment method

    def is_manual(self) -> bool:
        """Whether renewals must be paid by the customer rather than charged automatically."""
        if forces_manual_renewal(self.services.settings.staging):
            return True
        if self.record.requires_manual_renewal:
            return True
        return not self.services.gateways.has_available_automatic_method(self.record)

    def payment_method_supports(self, feature: str) -> bool:
        """Manual subscriptions support every feature; otherwise ask the gateway."""
        return self.is_manual() or self.services.gateways.supports(self.record, feature)

    def is_editable(self) -> bool:
        """Whether the recurring amount may be edited."""
        if self.has_status(SubscriptionStatus.PENDING, SubscriptionStatus.DRAFT, SubscriptionStatus.AUTO_DRAFT):
            return True
        return self.payment_method_supports(SUBSCRIPTION_AMOUNT_CHANGES)

    # Payment counters

    def get_payment_count(
        self,
        kind: str = "completed",
        order_types: RelationTypes = DEFAULT_PAYMENT_ORDER_TYPES,
    ) -> int:
        """Count payments made on related orders.

        Counts are cached per set of order types until the cache is reset.

        Args:
            kind: "completed" (orders with a paid date), "refunded" (those
                now refunded) or "net" (completed minus refunded)
            order_types: Relation type(s) to count, "any" for all

        Returns:
            The count, 0 for an unknown kind
        """
        key = tuple(normalise_relation_types(order_types))

        if key not in self._payment_count_cache["completed"]:
            completed = refunded = 0
            for order in self.services.related_orders.get_related_orders(self.record, key):
                if order.date_paid is not None:
                    completed += 1
                    if order.status == OrderStatus.REFUNDED:
                        refunded += 1
            self._payment_count_cache["completed"][key] = completed
            self._payment_count_cache["refunded"][key] = refunded

        completed = self._payment_count_cache["completed"][key]
        refunded = self._payment_count_cache["refunded"][key]

        if kind == "completed":
            return completed
        if kind == "refunded":
            return refunded
        if kind == "net":
            return completed - refunded
        return 0

    def reset_payment_count_cache(self) -> None:
        from billing_lifecycle.state_logger import log_payment_count_cache_reset

        cached_types = len(self._payment_count_cache["completed"])
        self._payment_count_cache = {"completed": {}, "refunded": {}}
        log_payment_count_cache_reset(self.record.id, cached_types)

    def get_failed_payment_count(self) -> int:
        """Failed parent order (1) plus each failed renewal order."""
        failed = 0
        if self.record.parent_order_id:
            parent = self.services.order_store.get(self.record.parent_order_id)
            if parent is not None and parent.status == OrderStatus.FAILED:
                failed += 1
        for order in self.services.related_orders.get_related_orders(self.record, RelationType.RENEWAL):
            if order.status == OrderStatus.FAILED:
                failed += 1
        return failed

    def needs_payment(self) -> bool:
        """Whether the subscription, its parent order or its latest renewal/switch order awaits payment."""
        if self.has_status(SubscriptionStatus.PENDING) and self.record.total > 0:
            return True

        if self.record.parent_order_id:
            parent = self.services.order_store.get(self.record.parent_order_id)
            if parent is not None and (
                parent.needs_payment() or parent.has_status(OrderStatus.ON_HOLD, OrderStatus.CANCELLED)
            ):
                return True

        last_order = self.services.related_orders.get_last_order(
            self.record, (RelationType.RENEWAL, RelationType.SWITCH)
        )
        return last_order is not None and (
            last_order.needs_payment()
            or last_order.has_status(OrderStatus.ON_HOLD, OrderStatus.FAILED, OrderStatus.CANCELLED)
        )

    # Status

    def _transition_facts(self) -> TransitionFacts:
        return TransitionFacts(
            supports_suspension=self.payment_method_supports(SUBSCRIPTION_SUSPENSION),
            supports_reactivation=self.payment_method_supports(SUBSCRIPTION_REACTIVATION),
            supports_cancellation=self.payment_method_supports(SUBSCRIPTION_CANCELLATION),
            supports_date_changes=self.payment_method_supports(SUBSCRIPTION_DATE_CHANGES),
            supports_scheduled_payments=self.payment_method_supports(GATEWAY_SCHEDULED_PAYMENTS),
            is_manual=self.is_manual(),
            needs_payment=self.needs_payment(),
            end_time=self.get_time(DateType.END),
            now=self._now(),
        )

    def can_be_updated_to(self, new_status: Union[str, SubscriptionStatus]) -> bool:
        """Whether the subscription may move to a status."""
        return can_transition(
            self.record.status.value,
            normalise_status(new_status),
            self._transition_facts(),
            self.services.transition_rules,
        )

    def update_status(
        self,
        new_status: Union[str, SubscriptionStatus],
        note: str = "",
        manual: bool = False,
    ) -> None:
        """Move the subscription to a new status and apply its side effects.

        A live subscription sent to the trash is cancelled first. Extra
        transition rules only open up statuses the engine knows how to store
        (switched, draft, auto-draft); anything else is refused.

        Args:
            new_status: Requested status ("wc-" prefix and order aliases accepted)
            note: Note recorded with the status change
            manual: Whether a person requested the change

        Raises:
            IllegalTransitionError: The status can't be reached from the current one
            TransientProcessingError: Applying the change failed; everything was reverted
        """
        requested = normalise_status(new_status)
        old_status = self.record.status

        if requested == old_status.value:
            return

        self.emit(events.PRE_UPDATE_STATUS, old_status=old_status.value, new_status=requested)

        if requested not in {s.value for s in SubscriptionStatus} or not self.can_be_updated_to(requested):
            message = f'Unable to change subscription status to "{requested}".'
            self.add_note(message)
            logger.warning(
                "subscription_status_update_refused",
                subscription_id=self.record.id,
                old_status=old_status.value,
                new_status=requested,
            )
            self.emit(events.UNABLE_TO_UPDATE_STATUS, old_status=old_status.value, new_status=requested)
            raise IllegalTransitionError(message, self.record.id, old_status.value, requested)

        target = SubscriptionStatus(requested)

        if target == SubscriptionStatus.TRASH and not self.is_ended():
            # Trashing a live subscription cancels it first so its schedule ends
            self.update_status(SubscriptionStatus.CANCELLED, manual=manual)
            old_status = self.record.status

        snapshot = self.record.model_copy(deep=True)

        try:
            self.record.set_status(target, reason=note or None)
            self.services.retries.maybe_cancel_retry(self, target)
            self._apply_status_side_effects(old_status, target)
            self._record_status_transition(old_status, target, note, manual)
            self.save()

        except Exception as e:
            logger.error(
                "subscription_status_update_failed",
                subscription_id=self.record.id,
                old_status=old_status.value,
                new_status=requested,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            self.record = snapshot
            self.reset_payment_count_cache()
            message = f'Unable to change subscription status to "{requested}". Exception: {e}'
            self.record.add_note(message)
            self.save()
            raise TransientProcessingError(message) from e

    def cancel_order(self, note: str = "") -> None:
        """Handle a cancellation request.

        With a prepaid term left, active subscriptions (and on-hold ones
        with nothing outstanding) move to pending-cancel and run out at
        the end of the term. Subscriptions that can't be cancelled only
        get the note.
        """
        settings = self.services.settings

        if (
            settings.use_pending_cancel
            and self.calculate_date(END_OF_PREPAID_TERM) > self._now()
            and (
                self.has_status(SubscriptionStatus.ACTIVE)
                or (self.has_status(SubscriptionStatus.ON_HOLD) and not self.needs_payment())
            )
        ):
            self.update_status(SubscriptionStatus.PENDING_CANCEL, note)
        elif not self.can_be_updated_to(SubscriptionStatus.CANCELLED):
            self.add_note(note)
        else:
            self.update_status(SubscriptionStatus.CANCELLED, note)

    def _apply_status_side_effects(self, old_status: SubscriptionStatus, new_status: SubscriptionStatus) -> None:
        now = self._now()

        if new_status == SubscriptionStatus.PENDING_CANCEL:
            self.record.cancellation_snapshot = {
                DateType.END: self.get_time(DateType.END),
                DateType.TRIAL_END: self.get_time(DateType.TRIAL_END),
            }
            end = self.calculate_date(END_OF_PREPAID_TERM)

            # No prepaid term left: the subscription is over now
            if end == 0 or end <= now:
                cancelled = end = now
            else:
                cancelled = now

            self.delete_date(DateType.TRIAL_END)
            self.delete_date(DateType.NEXT_PAYMENT)
            self.update_dates({DateType.CANCELLED: cancelled, DateType.END: end})

        elif new_status == SubscriptionStatus.ACTIVE:
            if old_status == SubscriptionStatus.PENDING_CANCEL:
                snapshot = self.record.cancellation_snapshot
                prepaid_end = self.get_time(DateType.END)
                # Restores a schedule that was valid before the cancellation request
                self._apply_dates(
                    {
                        DateType.CANCELLED: 0,
                        DateType.END: snapshot.get(DateType.END, 0),
                        DateType.TRIAL_END: snapshot.get(DateType.TRIAL_END, 0),
                        DateType.NEXT_PAYMENT: prepaid_end,
                    }
                )
                self.record.cancellation_snapshot = {}
            else:
                stored_next_payment = self.get_time(DateType.NEXT_PAYMENT)
                threshold = self.services.settings.schedule.next_payment_threshold_seconds

                if stored_next_payment < now + threshold:
                    calculated = self.calculate_date(DateType.NEXT_PAYMENT)
                    if calculated > 0:
                        self.update_dates({DateType.NEXT_PAYMENT: calculated})
                    elif stored_next_payment and stored_next_payment < now:
                        self.delete_date(DateType.NEXT_PAYMENT)

        elif new_status == SubscriptionStatus.ON_HOLD:
            self.record.increment_suspension_count()

        elif new_status in (SubscriptionStatus.CANCELLED, SubscriptionStatus.SWITCHED, SubscriptionStatus.EXPIRED):
            self.delete_date(DateType.TRIAL_END)
            self.delete_date(DateType.NEXT_PAYMENT)

            dates = {DateType.END: now}
            if new_status == SubscriptionStatus.CANCELLED and self.get_time(DateType.CANCELLED) == 0:
                dates[DateType.CANCELLED] = now
            self.update_dates(dates)

    def _record_status_transition(
        self,
        old_status: SubscriptionStatus,
        new_status: SubscriptionStatus,
        note: str,
        manual: bool,
    ) -> None:
        transition_note = f"Status changed from {old_status.value} to {new_status.value}."
        self.add_note(f"{note} {transition_note}".strip() if note else transition_note)

        self.emit(events.status_event_name(new_status.value), old_status=old_status.value, manual=manual)
        self.emit(events.transition_event_name(old_status.value, new_status.value), manual=manual)
        self.emit(
            events.STATUS_UPDATED,
            old_status=old_status.value,
            new_status=new_status.value,
            manual=manual,
        )

    def __repr__(self) -> str:
        return f"Subscription(id={self.record.id}, status={self.record.status.value})"
