"""Unit tests for the status transition guard."""

import pytest

from billing_lifecycle.services.status_guard import (
    ENDED_STATUSES,
    TransitionFacts,
    can_transition,
    is_ended_status,
)

NOW = 1704067200


@pytest.fixture
def full_support():
    """Facts for a gateway that supports every subscription feature."""
    return TransitionFacts(
        supports_suspension=True,
        supports_reactivation=True,
        supports_cancellation=True,
        supports_date_changes=True,
        now=NOW,
    )


@pytest.fixture
def no_support():
    return TransitionFacts(now=NOW)


class TestPending:
    """Transitions to pending."""

    @pytest.mark.parametrize("current", ["auto-draft", "draft"])
    def test_from_draft(self, current, no_support):
        assert can_transition(current, "pending", no_support)

    @pytest.mark.parametrize("current", ["active", "on-hold", "cancelled"])
    def test_from_anything_else(self, current, full_support):
        assert not can_transition(current, "pending", full_support)


class TestActive:
    """Transitions to active (and its completed alias)."""

    def test_from_pending(self, no_support):
        assert can_transition("pending", "active", no_support)

    def test_alias_completed(self, no_support):
        assert can_transition("wc-pending", "completed", no_support)

    def test_from_on_hold_requires_reactivation(self, full_support, no_support):
        assert can_transition("on-hold", "active", full_support)
        assert not can_transition("on-hold", "active", no_support)

    def test_from_pending_cancel_manual(self):
        facts = TransitionFacts(is_manual=True, end_time=NOW + 100, now=NOW)
        assert can_transition("pending-cancel", "active", facts)

    def test_from_pending_cancel_gateway_needs_date_changes_and_reactivation(self, full_support):
        facts = full_support.model_copy(update={"end_time": NOW + 100})
        assert can_transition("pending-cancel", "active", facts)

        missing_dates = facts.model_copy(update={"supports_date_changes": False})
        assert not can_transition("pending-cancel", "active", missing_dates)

    def test_from_pending_cancel_refused_with_scheduled_payments(self, full_support):
        facts = full_support.model_copy(update={"end_time": NOW + 100, "supports_scheduled_payments": True})
        assert not can_transition("pending-cancel", "active", facts)

    def test_from_pending_cancel_after_end(self, full_support):
        facts = full_support.model_copy(update={"end_time": NOW, "is_manual": True})
        assert not can_transition("pending-cancel", "active", facts)

    @pytest.mark.parametrize("current", ["cancelled", "expired", "switched", "trash"])
    def test_from_ended(self, current, full_support):
        assert not can_transition(current, "active", full_support)


class TestOnHold:
    """Transitions to on-hold (and its failed alias)."""

    @pytest.mark.parametrize("current", ["active", "pending"])
    def test_allowed_with_suspension(self, current, full_support):
        assert can_transition(current, "on-hold", full_support)
        assert can_transition(current, "failed", full_support)

    def test_refused_without_suspension(self, no_support):
        assert not can_transition("active", "on-hold", no_support)

    def test_refused_from_pending_cancel(self, full_support):
        assert not can_transition("pending-cancel", "on-hold", full_support)


class TestCancelled:
    """Transitions to cancelled."""

    @pytest.mark.parametrize("current", ["pending", "active", "on-hold", "pending-cancel"])
    def test_allowed_with_cancellation(self, current, full_support):
        assert can_transition(current, "cancelled", full_support)

    @pytest.mark.parametrize("current", ["expired", "switched", "trash"])
    def test_refused_from_ended(self, current, full_support):
        assert not can_transition(current, "cancelled", full_support)

    def test_refused_without_cancellation(self, no_support):
        assert not can_transition("active", "cancelled", no_support)


class TestPendingCancel:
    """Transitions to pending-cancel."""

    def test_from_active(self, full_support):
        assert can_transition("active", "pending-cancel", full_support)

    def test_from_on_hold_without_outstanding_payment(self, full_support):
        assert can_transition("on-hold", "pending-cancel", full_support)

    def test_from_on_hold_with_outstanding_payment(self, full_support):
        facts = full_support.model_copy(update={"needs_payment": True})
        assert not can_transition("on-hold", "pending-cancel", facts)

    def test_refused_without_cancellation(self, no_support):
        assert not can_transition("active", "pending-cancel", no_support)


class TestTerminalStatuses:
    """Transitions to expired, trash and deleted."""

    @pytest.mark.parametrize("current", ["active", "on-hold", "pending", "pending-cancel"])
    def test_expired_allowed(self, current, no_support):
        assert can_transition(current, "expired", no_support)

    @pytest.mark.parametrize("current", ["cancelled", "trash", "switched"])
    def test_expired_refused(self, current, no_support):
        assert not can_transition(current, "expired", no_support)

    def test_trash_from_ended(self, no_support):
        assert can_transition("expired", "trash", no_support)

    def test_trash_requires_cancellation_first(self, full_support, no_support):
        assert can_transition("active", "trash", full_support)
        assert not can_transition("active", "trash", no_support)

    def test_deleted_only_from_trash(self, no_support):
        assert can_transition("trash", "deleted", no_support)
        assert not can_transition("cancelled", "deleted", no_support)


class TestUnknownStatuses:
    """Statuses outside the built-in table."""

    def test_refused_by_default(self, full_support):
        assert not can_transition("active", "paused", full_support)

    def test_extension_rule_opts_in(self, full_support):
        rules = {"paused": lambda current, facts: current == "active" and facts.supports_suspension}
        assert can_transition("active", "paused", full_support, rules)
        assert not can_transition("on-hold", "paused", full_support, rules)


class TestEndedStatuses:
    def test_pending_cancel_is_not_ended(self):
        assert "pending-cancel" not in ENDED_STATUSES
        assert not is_ended_status("pending-cancel")

    def test_ended(self):
        assert is_ended_status("wc-cancelled")
        assert is_ended_status("expired")
