"""Billing API endpoints — subscription status, Stripe Checkout, cancellation."""

import logging
from datetime import timedelta

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from holiday_programs.api.deps import (
    get_current_active_user,
    get_db,
    require_active_subscription,
)
from holiday_programs.billing.entitlement import (
    days_until_expiry,
    evaluate_entitlement,
    status_label,
    utcnow,
)
from holiday_programs.billing.stripe_client import StripeGateway, get_stripe_gateway
from holiday_programs.config import settings
from holiday_programs.models.subscription import Subscription
from holiday_programs.models.user import User
from holiday_programs.schemas.billing import (
    AccessResponse,
    CheckoutRequest,
    CheckoutResponse,
    SubscriptionResponse,
)
from holiday_programs.services.checkout_service import (
    cancel_subscription,
    resume_subscription,
    start_checkout,
)
from holiday_programs.services.subscription_service import get_subscription_for_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["billing"])


def _grace() -> timedelta:
    return timedelta(minutes=settings.checkout_grace_minutes)


def _subscription_response(subscription: Subscription | None) -> SubscriptionResponse:
    now = utcnow()
    return SubscriptionResponse(
        has_subscription=subscription is not None,
        status=subscription.status if subscription else None,
        status_label=status_label(subscription),
        entitled=evaluate_entitlement(subscription, now, _grace()).entitled,
        current_period_start=subscription.current_period_start if subscription else None,
        current_period_end=subscription.current_period_end if subscription else None,
        cancel_at_period_end=subscription.cancel_at_period_end if subscription else False,
        days_until_expiry=days_until_expiry(subscription, now),
        payment_status=subscription.stripe_payment_status if subscription else None,
    )


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionResponse:
    """Get the current user's subscription status (read-only, never mutates)."""
    subscription = await get_subscription_for_user(db, current_user.id)
    return _subscription_response(subscription)


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> CheckoutResponse:
    """Create a Stripe Checkout session for the annual subscription."""
    success_url = (
        body.success_url
        or f"{settings.frontend_url}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}"
    )
    cancel_url = body.cancel_url or f"{settings.frontend_url}/subscription/cancelled"

    result = await start_checkout(
        db,
        gateway,
        current_user,
        success_url=success_url,
        cancel_url=cancel_url,
        price_id=body.price_id,
        default_price_id=settings.stripe_annual_price_id,
    )
    return CheckoutResponse(checkout_url=result.url, session_id=result.session_id)


@router.post("/cancel", response_model=SubscriptionResponse)
async def cancel(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> SubscriptionResponse:
    """Cancel at the end of the current billing period."""
    subscription = await cancel_subscription(db, gateway, current_user)
    return _subscription_response(subscription)


@router.post("/resume", response_model=SubscriptionResponse)
async def resume(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> SubscriptionResponse:
    """Undo a scheduled cancellation."""
    subscription = await resume_subscription(db, gateway, current_user)
    return _subscription_response(subscription)


@router.get("/access", response_model=AccessResponse)
async def check_access(
    subscription: Subscription = Depends(require_active_subscription),
) -> AccessResponse:
    """Protected endpoint: 200 when entitled, 403 otherwise."""
    return AccessResponse(
        entitled=True,
        status=subscription.status,
        current_period_end=subscription.current_period_end,
    )
