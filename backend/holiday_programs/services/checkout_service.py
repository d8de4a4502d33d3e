"""Checkout service — start a Stripe Checkout and manage scheduled cancellation."""

import logging
from dataclasses import dataclass
from datetime import datetime

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from holiday_programs.billing.entitlement import utcnow
from holiday_programs.billing.errors import (
    BillingConfigurationError,
    PaymentProviderError,
    SubscriptionConflictError,
    SubscriptionNotFoundError,
)
from holiday_programs.billing.stripe_client import StripeGateway
from holiday_programs.models.subscription import ENTITLED_STATUSES, Subscription
from holiday_programs.models.user import User
from holiday_programs.services.subscription_service import (
    get_subscription_for_user,
    provision_pending_subscription,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    session_id: str
    url: str


async def start_checkout(
    db: AsyncSession,
    gateway: StripeGateway,
    user: User,
    *,
    success_url: str,
    cancel_url: str,
    price_id: str | None = None,
    default_price_id: str = "",
) -> CheckoutResult:
    """Create a hosted checkout session and leave the user's row ``pending``.

    The local row is written only after Stripe has created the session, so a
    provider failure leaves no partial local state. A customer created before
    such a failure stays in Stripe; it is reused on the next attempt only if
    the row already recorded it.

    Raises:
        SubscriptionConflictError: The row is already active or trialing.
        BillingConfigurationError: No price given and no default configured.
        PaymentProviderError: Stripe failed during customer or session creation.
    """
    price = price_id or default_price_id
    if not price:
        raise BillingConfigurationError("Stripe price ID not configured.")

    existing = await get_subscription_for_user(db, user.id)
    # an active row keeps its live Stripe subscription even if the period
    # looks over; only a webhook or the expiry path may release it
    if existing is not None and existing.status in ENTITLED_STATUSES:
        raise SubscriptionConflictError("You already have an active subscription.")

    customer_id = existing.stripe_customer_id if existing else None
    try:
        if not customer_id:
            customer = await gateway.create_customer(
                email=user.email,
                name=user.name,
                user_id=str(user.id),
            )
            customer_id = customer.id

        session = await gateway.create_checkout_session(
            customer_id=customer_id,
            price_id=price,
            user_id=str(user.id),
            success_url=success_url,
            cancel_url=cancel_url,
        )
    except stripe.StripeError as e:
        logger.error("Stripe checkout error for user %s: %s", user.id, e)
        raise PaymentProviderError(
            "The payment provider is unavailable. Please try again shortly."
        ) from e

    await provision_pending_subscription(
        db,
        user=user,
        stripe_customer_id=customer_id,
        stripe_price_id=price,
    )
    logger.info("Checkout session %s created for user %s", session.id, user.id)
    return CheckoutResult(session_id=session.id, url=session.url)


async def _require_stripe_subscription(db: AsyncSession, user: User) -> Subscription:
    subscription = await get_subscription_for_user(db, user.id)
    if subscription is None or not subscription.stripe_subscription_id:
        raise SubscriptionNotFoundError("No subscription found.")
    if subscription.status not in ENTITLED_STATUSES:
        raise SubscriptionConflictError(
            "Subscription is not active.", code="SUBSCRIPTION_NOT_ACTIVE"
        )
    return subscription


async def cancel_subscription(
    db: AsyncSession,
    gateway: StripeGateway,
    user: User,
    now: datetime | None = None,
) -> Subscription:
    """Schedule the subscription to lapse at the end of the paid period.

    Access continues until ``current_period_end``; Stripe later sends
    ``customer.subscription.deleted`` which makes the row ``canceled``.
    """
    subscription = await _require_stripe_subscription(db, user)
    if subscription.cancel_at_period_end:
        return subscription

    try:
        await gateway.set_cancel_at_period_end(subscription.stripe_subscription_id, True)
    except stripe.StripeError as e:
        logger.error("Stripe cancel error for subscription %s: %s", subscription.id, e)
        raise PaymentProviderError(
            "The payment provider is unavailable. Please try again shortly."
        ) from e

    subscription.cancel_at_period_end = True
    subscription.canceled_at = now or utcnow()
    await db.flush()
    logger.info(
        "Subscription %s scheduled to cancel at %s",
        subscription.id,
        subscription.current_period_end,
    )
    return subscription


async def resume_subscription(
    db: AsyncSession, gateway: StripeGateway, user: User
) -> Subscription:
    """Undo a scheduled cancellation while the period is still running."""
    subscription = await _require_stripe_subscription(db, user)
    if not subscription.cancel_at_period_end:
        raise SubscriptionConflictError(
            "Subscription is not scheduled for cancellation.",
            code="NOT_SCHEDULED_FOR_CANCELLATION",
        )

    try:
        await gateway.set_cancel_at_period_end(subscription.stripe_subscription_id, False)
    except stripe.StripeError as e:
        logger.error("Stripe resume error for subscription %s: %s", subscription.id, e)
        raise PaymentProviderError(
            "The payment provider is unavailable. Please try again shortly."
        ) from e

    subscription.cancel_at_period_end = False
    subscription.canceled_at = None
    await db.flush()
    logger.info("Subscription %s resumed", subscription.id)
    return subscription
