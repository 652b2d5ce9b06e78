"""Status transition guard.

Decides whether a subscription may move from its current status to a
requested one. The decision is a pure function of the two statuses and a
handful of facts about the subscription; it never raises for a "no".
"""

from typing import Callable, Mapping, Optional

from pydantic import BaseModel, Field

from billing_lifecycle.models.subscription import SubscriptionStatus, normalise_status

# Statuses after which the subscription no longer renews.
# pending-cancel is not one of them: its prepaid term is still running.
ENDED_STATUSES = frozenset(
    {
        SubscriptionStatus.CANCELLED.value,
        SubscriptionStatus.EXPIRED.value,
        SubscriptionStatus.SWITCHED.value,
        SubscriptionStatus.TRASH.value,
    }
)


class TransitionFacts(BaseModel):
    """Subscription facts a status transition depends on."""

    supports_suspension: bool = Field(default=False, description="Gateway can suspend")
    supports_reactivation: bool = Field(default=False, description="Gateway can reactivate")
    supports_cancellation: bool = Field(default=False, description="Gateway can cancel")
    supports_date_changes: bool = Field(default=False, description="Gateway accepts date changes")
    supports_scheduled_payments: bool = Field(default=False, description="Gateway schedules its own payments")
    is_manual: bool = Field(default=False, description="Renewals are paid manually")
    needs_payment: bool = Field(default=False, description="Subscription is waiting for a payment")
    end_time: int = Field(default=0, description="End date (0 if none)")
    now: int = Field(default=0, description="Current UTC timestamp")


# Opt-in rule for a status the table does not know about
TransitionRule = Callable[[str, TransitionFacts], bool]


def is_ended_status(status: str) -> bool:
    return normalise_status(status) in ENDED_STATUSES


def can_transition(
    current: str,
    requested: str,
    facts: TransitionFacts,
    extra_rules: Optional[Mapping[str, TransitionRule]] = None,
) -> bool:
    """Check whether a status transition is allowed.

    Args:
        current: Current status
        requested: Requested status (aliases such as "completed" are accepted)
        facts: Subscription facts
        extra_rules: Rules for statuses outside the built-in table, keyed by status

    Returns:
        True if the transition is allowed

    Examples:
        >>> can_transition("active", "on-hold", TransitionFacts(supports_suspension=True))
        True
        >>> can_transition("expired", "active", TransitionFacts(supports_reactivation=True))
        False
    """
    current = normalise_status(current)
    requested = normalise_status(requested)

    if requested == SubscriptionStatus.PENDING:
        return current in (SubscriptionStatus.AUTO_DRAFT, SubscriptionStatus.DRAFT)

    if requested == SubscriptionStatus.ACTIVE:
        if facts.supports_reactivation and current == SubscriptionStatus.ON_HOLD:
            return True
        if current == SubscriptionStatus.PENDING:
            return True
        if current == SubscriptionStatus.PENDING_CANCEL and facts.end_time > facts.now:
            # The gateway has to let us restart payments ourselves
            return facts.is_manual or (
                not facts.supports_scheduled_payments
                and facts.supports_date_changes
                and facts.supports_reactivation
            )
        return False

    if requested == SubscriptionStatus.ON_HOLD:
        return facts.supports_suspension and current in (
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PENDING,
        )

    if requested == SubscriptionStatus.CANCELLED:
        return facts.supports_cancellation and (
            current == SubscriptionStatus.PENDING_CANCEL or current not in ENDED_STATUSES
        )

    if requested == SubscriptionStatus.PENDING_CANCEL:
        return facts.supports_cancellation and (
            current == SubscriptionStatus.ACTIVE
            or (
                not facts.needs_payment
                and current in (SubscriptionStatus.CANCELLED, SubscriptionStatus.ON_HOLD)
            )
        )

    if requested == SubscriptionStatus.EXPIRED:
        return current not in (
            SubscriptionStatus.CANCELLED,
            SubscriptionStatus.TRASH,
            SubscriptionStatus.SWITCHED,
        )

    if requested == SubscriptionStatus.TRASH:
        return current in ENDED_STATUSES or can_transition(
            current, SubscriptionStatus.CANCELLED.value, facts, extra_rules
        )

    if requested == SubscriptionStatus.DELETED:
        return current == SubscriptionStatus.TRASH

    rule = (extra_rules or {}).get(requested)
    if rule is None:
        return False
    return bool(rule(current, facts))
