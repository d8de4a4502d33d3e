"""Entitlement rules — pure functions over a subscription snapshot.

Nothing here touches the database; the access guard and the status endpoint
feed these functions a loaded row and act on the answer.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from holiday_programs.database import utcnow
from holiday_programs.models.subscription import (
    ENTITLED_STATUSES,
    Subscription,
    SubscriptionStatus,
)

DEFAULT_CHECKOUT_GRACE = timedelta(minutes=60)


@dataclass(frozen=True)
class Entitlement:
    """Outcome of an entitlement check.

    ``needs_transition`` flags an ``active`` row whose paid period is over;
    the caller is expected to expire it with a compare-and-set.
    """

    entitled: bool
    needs_transition: bool = False
    reason: str = "active"


def evaluate_entitlement(
    subscription: Subscription | None,
    now: datetime,
    grace: timedelta = DEFAULT_CHECKOUT_GRACE,
) -> Entitlement:
    """Decide whether ``subscription`` grants access at ``now``.

    Status alone is never enough once period bounds exist. An entitled status
    without ``current_period_end`` only counts for ``grace`` after the row was
    last written, covering the gap between checkout and the first webhook.
    """
    if subscription is None:
        return Entitlement(entitled=False, reason="no_subscription")

    if subscription.status not in ENTITLED_STATUSES:
        return Entitlement(entitled=False, reason=f"status_{subscription.status}")

    period_end = subscription.current_period_end
    if period_end is None:
        written_at = subscription.updated_at
        if written_at is None or now - written_at <= grace:
            return Entitlement(entitled=True, reason="awaiting_period")
        return Entitlement(entitled=False, reason="missing_period")

    if period_end >= now:
        return Entitlement(entitled=True)

    return Entitlement(
        entitled=False,
        needs_transition=subscription.status == SubscriptionStatus.ACTIVE,
        reason="period_ended",
    )


_STATUS_LABELS = {
    SubscriptionStatus.PENDING.value: "Pending",
    SubscriptionStatus.ACTIVE.value: "Active",
    SubscriptionStatus.TRIALING.value: "Trial",
    SubscriptionStatus.PAST_DUE.value: "Past Due",
    SubscriptionStatus.CANCELED.value: "Canceled",
    SubscriptionStatus.EXPIRED.value: "Expired",
}


def status_label(subscription: Subscription | None) -> str:
    """Human-readable status for user-facing displays."""
    if subscription is None:
        return "No Subscription"
    label = _STATUS_LABELS.get(subscription.status, "Unknown")
    if subscription.status == SubscriptionStatus.ACTIVE and subscription.cancel_at_period_end:
        return f"{label} (Canceling)"
    return label


def days_until_expiry(subscription: Subscription | None, now: datetime) -> int | None:
    """Whole days left in the paid period, rounded up; negative once lapsed."""
    if subscription is None or subscription.current_period_end is None:
        return None
    remaining = subscription.current_period_end - now
    return math.ceil(remaining.total_seconds() / 86400)
