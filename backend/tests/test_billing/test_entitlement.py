"""Tests for the pure entitlement rules."""

from datetime import datetime, timedelta

import pytest

from holiday_programs.billing.entitlement import (
    days_until_expiry,
    evaluate_entitlement,
    status_label,
)
from holiday_programs.models.subscription import Subscription

NOW = datetime(2025, 6, 1, 12, 0)


def _sub(status="active", period_end=None, updated_at=None, cancel_at_period_end=False):
    return Subscription(
        status=status,
        current_period_end=period_end,
        updated_at=updated_at,
        cancel_at_period_end=cancel_at_period_end,
    )


class TestEvaluateEntitlement:
    def test_no_subscription(self):
        result = evaluate_entitlement(None, NOW)
        assert result.entitled is False
        assert result.reason == "no_subscription"

    @pytest.mark.parametrize("status", ["active", "trialing"])
    def test_entitled_within_period(self, status):
        assert evaluate_entitlement(_sub(status, NOW + timedelta(days=1)), NOW).entitled is True

    def test_period_end_is_inclusive(self):
        assert evaluate_entitlement(_sub(period_end=NOW), NOW).entitled is True

    @pytest.mark.parametrize("status", ["pending", "past_due", "canceled", "expired"])
    def test_non_entitled_statuses(self, status):
        result = evaluate_entitlement(_sub(status, NOW + timedelta(days=30)), NOW)
        assert result.entitled is False
        assert result.needs_transition is False
        assert result.reason == f"status_{status}"

    def test_lapsed_active_needs_transition(self):
        """Status alone is not enough once the period has ended."""
        result = evaluate_entitlement(_sub(period_end=NOW - timedelta(seconds=1)), NOW)
        assert result.entitled is False
        assert result.needs_transition is True
        assert result.reason == "period_ended"

    def test_lapsed_trialing_denied_without_transition(self):
        result = evaluate_entitlement(_sub("trialing", NOW - timedelta(days=1)), NOW)
        assert result.entitled is False
        assert result.needs_transition is False

    def test_missing_period_within_grace(self):
        """Freshly activated rows may still be waiting for their period bounds."""
        result = evaluate_entitlement(
            _sub(updated_at=NOW - timedelta(minutes=10)), NOW, timedelta(minutes=60)
        )
        assert result.entitled is True
        assert result.reason == "awaiting_period"

    def test_missing_period_after_grace(self):
        result = evaluate_entitlement(
            _sub(updated_at=NOW - timedelta(hours=3)), NOW, timedelta(minutes=60)
        )
        assert result.entitled is False
        assert result.needs_transition is False
        assert result.reason == "missing_period"


class TestStatusLabel:
    def test_labels(self):
        assert status_label(None) == "No Subscription"
        assert status_label(_sub("past_due")) == "Past Due"
        assert status_label(_sub("trialing")) == "Trial"

    def test_canceling_suffix_only_when_active(self):
        assert status_label(_sub(cancel_at_period_end=True)) == "Active (Canceling)"
        assert status_label(_sub("past_due", cancel_at_period_end=True)) == "Past Due"


class TestDaysUntilExpiry:
    def test_rounds_up(self):
        assert days_until_expiry(_sub(period_end=NOW + timedelta(days=6, hours=1)), NOW) == 7

    def test_negative_once_lapsed(self):
        assert days_until_expiry(_sub(period_end=NOW - timedelta(days=2)), NOW) == -2

    def test_unknown_period(self):
        assert days_until_expiry(_sub(), NOW) is None
        assert days_until_expiry(None, NOW) is None
