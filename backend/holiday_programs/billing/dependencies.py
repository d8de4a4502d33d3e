"""Access guard — gate protected routes on a currently entitled subscription."""

import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from fastapi import Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from holiday_programs.auth.dependencies import get_current_active_user
from holiday_programs.billing.entitlement import (
    DEFAULT_CHECKOUT_GRACE,
    evaluate_entitlement,
    utcnow,
)
from holiday_programs.billing.errors import SubscriptionAccessDenied
from holiday_programs.config import settings
from holiday_programs.database import get_db
from holiday_programs.models.subscription import Subscription
from holiday_programs.models.user import User
from holiday_programs.services.notification_service import (
    NotificationDispatcher,
    get_notifier,
    send_expiration_notice,
)
from holiday_programs.services.subscription_service import (
    get_subscription_for_user,
    mark_expired,
)

logger = logging.getLogger(__name__)

ExpiredCallback = Callable[[Subscription], Awaitable[None]]


async def check_access(
    db: AsyncSession,
    user_id: uuid.UUID,
    *,
    now: datetime | None = None,
    grace: timedelta = DEFAULT_CHECKOUT_GRACE,
    on_expired: ExpiredCallback | None = None,
) -> Subscription:
    """Return the user's subscription if it is entitled right now.

    An ``active`` row whose period has ended is expired with a
    compare-and-set and committed before the request is refused. Only the
    caller that wins that write runs ``on_expired``; losers, and callers
    whose write failed, are refused the same way.

    Raises:
        SubscriptionAccessDenied: The user is not entitled.
    """
    now = now or utcnow()
    subscription = await get_subscription_for_user(db, user_id)
    entitlement = evaluate_entitlement(subscription, now, grace)

    if entitlement.entitled:
        return subscription

    if not entitlement.needs_transition:
        raise SubscriptionAccessDenied("Active subscription required.")

    won = False
    try:
        won = await mark_expired(db, subscription.id)
        await db.commit()
    except SQLAlchemyError:
        logger.exception("Lazy expiry of subscription %s failed", subscription.id)
        await db.rollback()

    if won and on_expired is not None:
        try:
            await on_expired(subscription)
        except Exception:
            logger.exception(
                "Post-expiry hook failed for subscription %s", subscription.id
            )

    raise SubscriptionAccessDenied(
        "Subscription has expired.",
        code="SUBSCRIPTION_EXPIRED",
        lazily_expired=won,
    )


async def require_active_subscription(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_active_user),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> Subscription:
    """FastAPI dependency: 403 unless the current user is entitled."""

    async def _notify_expired(subscription: Subscription) -> None:
        if not user.email:
            return
        await send_expiration_notice(
            notifier,
            user.email,
            user_name=user.name,
            expired_date=subscription.current_period_end,
            renewal_url=settings.renewal_url,
        )

    return await check_access(
        db,
        user.id,
        grace=timedelta(minutes=settings.checkout_grace_minutes),
        on_expired=_notify_expired,
    )
