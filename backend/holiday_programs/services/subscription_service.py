"""Subscription service — data access for the subscription record store.

Functions flush but never commit; the caller owns the transaction. Status
transitions that can race (active -> expired) are compare-and-set updates.
"""

import logging
import uuid
from datetime import datetime

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from holiday_programs.models.subscription import Subscription, SubscriptionStatus
from holiday_programs.models.user import User

logger = logging.getLogger(__name__)


async def get_subscription_for_user(
    db: AsyncSession, user_id: uuid.UUID
) -> Subscription | None:
    """Return the user's subscription row, if any."""
    result = await db.execute(
        select(Subscription).where(Subscription.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def get_subscription_by_stripe_customer(
    db: AsyncSession, stripe_customer_id: str
) -> Subscription | None:
    """Look up subscription by Stripe customer ID."""
    result = await db.execute(
        select(Subscription).where(
            Subscription.stripe_customer_id == stripe_customer_id
        )
    )
    return result.scalar_one_or_none()


async def get_subscription_by_stripe_subscription(
    db: AsyncSession, stripe_subscription_id: str
) -> Subscription | None:
    """Look up subscription by Stripe subscription ID (used by webhooks)."""
    result = await db.execute(
        select(Subscription).where(
            Subscription.stripe_subscription_id == stripe_subscription_id
        )
    )
    return result.scalar_one_or_none()


async def provision_pending_subscription(
    db: AsyncSession,
    user: User,
    stripe_customer_id: str,
    stripe_price_id: str,
) -> Subscription:
    """Create the user's row in ``pending`` or reset the existing one.

    Reusing the row keeps one subscription per user; a fresh checkout after
    cancellation or expiry starts from a clean period and reminder state.
    """
    subscription = await get_subscription_for_user(db, user.id)
    if subscription is None:
        logger.info("Creating pending subscription for user %s", user.id)
        subscription = Subscription(user_id=user.id)
        db.add(subscription)
    else:
        logger.info(
            "Resetting subscription %s (user %s) from %s to pending",
            subscription.id,
            user.id,
            subscription.status,
        )

    subscription.status = SubscriptionStatus.PENDING.value
    subscription.stripe_customer_id = stripe_customer_id
    subscription.stripe_price_id = stripe_price_id
    subscription.stripe_subscription_id = None
    subscription.stripe_payment_status = None
    subscription.current_period_start = None
    subscription.current_period_end = None
    subscription.cancel_at_period_end = False
    subscription.canceled_at = None
    subscription.last_reminder_sent = None
    subscription.reminder_count = 0
    await db.flush()
    return subscription


async def update_subscription_from_stripe(
    db: AsyncSession,
    subscription: Subscription,
    stripe_subscription_id: str,
    status: str,
    current_period_start: datetime | None = None,
    current_period_end: datetime | None = None,
    cancel_at_period_end: bool = False,
    stripe_payment_status: str | None = None,
) -> Subscription:
    """Update local subscription record from Stripe webhook data.

    Writes absolute values only, so applying the same event twice leaves
    the row exactly as applying it once.
    """
    subscription.stripe_subscription_id = stripe_subscription_id
    subscription.status = status
    subscription.current_period_start = current_period_start
    subscription.current_period_end = current_period_end
    subscription.cancel_at_period_end = cancel_at_period_end
    if stripe_payment_status is not None:
        subscription.stripe_payment_status = stripe_payment_status
    await db.flush()

    logger.info(
        "Updated subscription %s: status=%s, period_end=%s",
        subscription.id,
        status,
        current_period_end,
    )
    return subscription


async def mark_canceled(
    db: AsyncSession, subscription: Subscription, canceled_at: datetime
) -> Subscription:
    """Terminally cancel the subscription (Stripe deleted it)."""
    subscription.status = SubscriptionStatus.CANCELED.value
    subscription.cancel_at_period_end = False
    if subscription.canceled_at is None:
        subscription.canceled_at = canceled_at
    await db.flush()

    logger.info(
        "Canceled subscription %s (user %s)",
        subscription.id,
        subscription.user_id,
    )
    return subscription


async def mark_expired(db: AsyncSession, subscription_id: uuid.UUID) -> bool:
    """Flip ``active`` -> ``expired`` only if the row is still ``active``.

    Returns True when this call performed the transition. False means another
    caller got there first (or the row left ``active`` some other way); that
    is a successful no-op, not an error.
    """
    result = await db.execute(
        update(Subscription)
        .where(
            Subscription.id == subscription_id,
            Subscription.status == SubscriptionStatus.ACTIVE.value,
        )
        .values(status=SubscriptionStatus.EXPIRED.value)
    )
    won = result.rowcount == 1
    if won:
        logger.info("Subscription %s expired", subscription_id)
    else:
        logger.debug("Subscription %s already left active, skipping expiry", subscription_id)
    return won


async def record_reminder_sent(
    db: AsyncSession, subscription_id: uuid.UUID, sent_at: datetime
) -> None:
    """Stamp the reminder and bump the counter in a single UPDATE."""
    await db.execute(
        update(Subscription)
        .where(Subscription.id == subscription_id)
        .values(
            last_reminder_sent=sent_at,
            reminder_count=Subscription.reminder_count + 1,
        )
    )


async def list_reminder_candidates(
    db: AsyncSession, window_start: datetime, window_end: datetime
) -> list[Subscription]:
    """Active subscriptions ending inside ``[window_start, window_end)``
    that have not had a reminder for their current period."""
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.current_period_end >= window_start,
            Subscription.current_period_end < window_end,
            or_(
                Subscription.last_reminder_sent.is_(None),
                and_(
                    Subscription.current_period_start.is_not(None),
                    Subscription.last_reminder_sent < Subscription.current_period_start,
                ),
            ),
        )
        .order_by(Subscription.current_period_end)
    )
    return list(result.scalars().all())


async def list_lapsed_active(db: AsyncSession, now: datetime) -> list[Subscription]:
    """Subscriptions still ``active`` whose paid period ended before ``now``."""
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.current_period_end < now,
        )
        .order_by(Subscription.current_period_end)
    )
    return list(result.scalars().all())
