"""Stripe webhook reconciliation — apply subscription lifecycle events.

Every handler writes absolute values keyed by our user id or the Stripe
subscription id, so redelivered events are harmless. Events may arrive out
of order, so period bounds always come from a fresh fetch of the Stripe
subscription rather than from the event payload.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

import stripe
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from holiday_programs.billing.entitlement import utcnow
from holiday_programs.billing.errors import (
    BillingConfigurationError,
    WebhookVerificationError,
)
from holiday_programs.billing.stripe_client import (
    METADATA_USER_KEY,
    StripeGateway,
    get_stripe_gateway,
)
from holiday_programs.config import settings
from holiday_programs.models.subscription import (
    ENTITLED_STATUSES,
    TERMINAL_STATUSES,
    Subscription,
    SubscriptionStatus,
)
from holiday_programs.services.subscription_service import (
    get_subscription_by_stripe_customer,
    get_subscription_by_stripe_subscription,
    get_subscription_for_user,
    mark_canceled,
    update_subscription_from_stripe,
)

logger = logging.getLogger(__name__)

EventHandler = Callable[[AsyncSession, stripe.Event, StripeGateway], Awaitable[None]]

PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"

_STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE.value,
    "trialing": SubscriptionStatus.TRIALING.value,
    "past_due": SubscriptionStatus.PAST_DUE.value,
    "unpaid": SubscriptionStatus.PAST_DUE.value,
    "paused": SubscriptionStatus.PAST_DUE.value,
    "canceled": SubscriptionStatus.CANCELED.value,
    "incomplete_expired": SubscriptionStatus.EXPIRED.value,
    "incomplete": SubscriptionStatus.PENDING.value,
}


def map_stripe_status(stripe_status: str | None) -> str:
    """Translate a Stripe subscription status into ours (unknown -> pending)."""
    return _STRIPE_STATUS_MAP.get(stripe_status or "", SubscriptionStatus.PENDING.value)


def may_transition(current: str, target: str) -> bool:
    """Whether a webhook may move a row from ``current`` to ``target``.

    ``canceled`` mirrors a deleted Stripe subscription and is final. An
    ``expired`` row was expired from the clock alone, so Stripe confirming a
    live subscription may revive it.
    """
    if current == SubscriptionStatus.CANCELED.value:
        return target == current
    if current == SubscriptionStatus.EXPIRED.value:
        return target in TERMINAL_STATUSES or target in ENTITLED_STATUSES
    return True


def _ts_to_naive(ts: int | None) -> datetime | None:
    """Convert Stripe Unix timestamp to naive UTC datetime."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def _get_first_item(stripe_sub):
    """Get the first subscription item, using bracket notation to avoid
    collision with Python dict .items() in newer Stripe API versions.
    """
    try:
        sub_items = stripe_sub["items"]
    except (KeyError, AttributeError):
        return None
    if sub_items and sub_items.data:
        return sub_items.data[0]
    return None


def _get_period(stripe_sub) -> tuple[datetime | None, datetime | None]:
    """Extract current period start/end.

    In Stripe API 2025-08-27 (basil), current_period_start/end moved
    from the subscription object to the subscription item; older API
    versions still carry them on the subscription.
    """
    item = _get_first_item(stripe_sub)
    start = getattr(item, "current_period_start", None) if item else None
    end = getattr(item, "current_period_end", None) if item else None
    if start is None and end is None:
        start = getattr(stripe_sub, "current_period_start", None)
        end = getattr(stripe_sub, "current_period_end", None)
    return _ts_to_naive(start), _ts_to_naive(end)


def _invoice_subscription_id(invoice) -> str | None:
    """Subscription id of an invoice, for both old and new API shapes."""
    subscription_id = getattr(invoice, "subscription", None)
    if subscription_id:
        return subscription_id
    parent = getattr(invoice, "parent", None)
    details = getattr(parent, "subscription_details", None) if parent else None
    return getattr(details, "subscription", None) if details else None


def _metadata_user_id(stripe_object) -> uuid.UUID | None:
    """User id stamped on a checkout session or its subscription at checkout."""
    metadata = getattr(stripe_object, "metadata", None)
    raw = getattr(metadata, METADATA_USER_KEY, None) if metadata else None
    raw = raw or getattr(stripe_object, "client_reference_id", None)
    if not raw:
        return None
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        return None


async def handle_checkout_session_completed(
    db: AsyncSession, event: stripe.Event, gateway: StripeGateway
) -> None:
    """Handle checkout.session.completed — activate the pending subscription."""
    session = event.data.object

    if getattr(session, "mode", None) != "subscription":
        logger.info("Checkout session %s is not a subscription checkout, skipping", session.id)
        return

    user_id = _metadata_user_id(session)
    if user_id is None:
        logger.warning("Checkout session %s has no usable %s metadata", session.id, METADATA_USER_KEY)
        return

    subscription_id = getattr(session, "subscription", None)
    if not subscription_id:
        logger.warning("Checkout session %s has no subscription id, skipping", session.id)
        return

    subscription = await get_subscription_for_user(db, user_id)
    if subscription is None:
        logger.info(
            "No local subscription for user %s (checkout %s), skipping",
            user_id,
            session.id,
        )
        return

    stripe_sub = await gateway.get_subscription(subscription_id)
    stripe_status = map_stripe_status(getattr(stripe_sub, "status", None))
    revivable = (
        subscription.status not in TERMINAL_STATUSES or stripe_status in ENTITLED_STATUSES
    )
    if not (revivable and may_transition(subscription.status, SubscriptionStatus.ACTIVE.value)):
        logger.info(
            "Subscription %s is %s; ignoring stale checkout %s",
            subscription.id,
            subscription.status,
            session.id,
        )
        return

    customer_id = getattr(session, "customer", None)
    if customer_id and not subscription.stripe_customer_id:
        subscription.stripe_customer_id = customer_id

    period_start, period_end = _get_period(stripe_sub)
    await update_subscription_from_stripe(
        db,
        subscription=subscription,
        stripe_subscription_id=subscription_id,
        status=SubscriptionStatus.ACTIVE.value,
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=bool(getattr(stripe_sub, "cancel_at_period_end", False)),
        stripe_payment_status=PAYMENT_PAID,
    )
    logger.info(
        "Checkout completed: subscription %s activated for user %s",
        subscription_id,
        user_id,
    )


async def _pending_checkout_row(
    db: AsyncSession, event: stripe.Event, gateway: StripeGateway
) -> tuple[Subscription | None, stripe.Subscription | None]:
    """Match a not-yet-linked Stripe subscription to the checkout that started it.

    customer.subscription.created can beat checkout.session.completed. A
    returning customer keeps their customer id across subscriptions, so the
    customer alone never identifies the row. Only a created event for a live
    subscription whose metadata names the user binds, and only to a row still
    ``pending`` with no subscription bound. Replays of an older subscription
    fail one of these checks.
    """
    stripe_object = event.data.object
    customer_id = getattr(stripe_object, "customer", None)
    if event.type != "customer.subscription.created" or not customer_id:
        return None, None

    candidate = await get_subscription_by_stripe_customer(db, customer_id)
    if (
        candidate is None
        or candidate.stripe_subscription_id is not None
        or candidate.status != SubscriptionStatus.PENDING.value
    ):
        return None, None

    stripe_sub = await gateway.get_subscription(stripe_object.id)
    live = map_stripe_status(getattr(stripe_sub, "status", None)) in ENTITLED_STATUSES
    if not live or _metadata_user_id(stripe_sub) != candidate.user_id:
        logger.info(
            "Stripe subscription %s does not belong to pending checkout %s, skipping",
            stripe_object.id,
            candidate.id,
        )
        return None, None
    return candidate, stripe_sub


async def handle_subscription_updated(
    db: AsyncSession, event: stripe.Event, gateway: StripeGateway
) -> None:
    """Handle customer.subscription.created/updated — sync status and period."""
    stripe_object = event.data.object
    subscription_id = stripe_object.id

    stripe_sub = None
    subscription = await get_subscription_by_stripe_subscription(db, subscription_id)
    if subscription is None:
        subscription, stripe_sub = await _pending_checkout_row(db, event, gateway)
    if subscription is None:
        logger.info(
            "No local subscription for Stripe subscription %s (%s), skipping",
            subscription_id,
            event.type,
        )
        return

    if stripe_sub is None:
        stripe_sub = await gateway.get_subscription(subscription_id)
    status = map_stripe_status(getattr(stripe_sub, "status", None))
    if not may_transition(subscription.status, status):
        logger.info(
            "Subscription %s is %s; not moving it to %s",
            subscription.id,
            subscription.status,
            status,
        )
        return

    period_start, period_end = _get_period(stripe_sub)
    await update_subscription_from_stripe(
        db,
        subscription=subscription,
        stripe_subscription_id=subscription_id,
        status=status,
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=bool(getattr(stripe_sub, "cancel_at_period_end", False)),
    )
    logger.info("Subscription updated: %s -> status=%s", subscription_id, status)


async def handle_subscription_deleted(
    db: AsyncSession, event: stripe.Event, gateway: StripeGateway
) -> None:
    """Handle customer.subscription.deleted — terminal cancellation."""
    subscription_id = event.data.object.id

    subscription = await get_subscription_by_stripe_subscription(db, subscription_id)
    if subscription is None:
        logger.info(
            "No local subscription for Stripe subscription %s (delete event), skipping",
            subscription_id,
        )
        return

    await mark_canceled(db, subscription, canceled_at=utcnow())
    logger.info("Subscription deleted: %s canceled", subscription_id)


async def handle_invoice_paid(
    db: AsyncSession, event: stripe.Event, gateway: StripeGateway
) -> None:
    """Handle invoice.paid — record payment and refresh the billing period."""
    invoice = event.data.object
    subscription_id = _invoice_subscription_id(invoice)

    if not subscription_id:
        logger.info("Invoice %s has no subscription (one-time), skipping", invoice.id)
        return

    subscription = await get_subscription_by_stripe_subscription(db, subscription_id)
    if subscription is None:
        logger.info(
            "No local subscription for Stripe subscription %s (invoice %s), skipping",
            subscription_id,
            invoice.id,
        )
        return

    stripe_sub = await gateway.get_subscription(subscription_id)
    period_start, period_end = _get_period(stripe_sub)
    subscription.stripe_payment_status = PAYMENT_PAID
    if period_end is not None:
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
    subscription.cancel_at_period_end = bool(getattr(stripe_sub, "cancel_at_period_end", False))
    await db.flush()
    logger.info("Invoice paid: subscription %s period ends %s", subscription_id, period_end)


async def handle_invoice_payment_failed(
    db: AsyncSession, event: stripe.Event, gateway: StripeGateway
) -> None:
    """Handle invoice.payment_failed — flag the payment, leave status alone.

    Stripe follows a failed renewal with customer.subscription.updated, which
    moves the status to past_due; changing it here too would double-apply.
    """
    invoice = event.data.object
    subscription_id = _invoice_subscription_id(invoice)

    if not subscription_id:
        logger.info(
            "Invoice %s has no subscription (one-time), skipping payment failure",
            invoice.id,
        )
        return

    subscription = await get_subscription_by_stripe_subscription(db, subscription_id)
    if subscription is None:
        logger.info(
            "No local subscription for Stripe subscription %s (payment failed), skipping",
            subscription_id,
        )
        return

    subscription.stripe_payment_status = PAYMENT_FAILED
    await db.flush()
    logger.warning(
        "Payment failed: subscription %s (invoice %s)",
        subscription_id,
        invoice.id,
    )


# Map event types to handler functions
EVENT_HANDLERS: dict[str, EventHandler] = {
    "checkout.session.completed": handle_checkout_session_completed,
    "customer.subscription.created": handle_subscription_updated,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.paid": handle_invoice_paid,
    "invoice.payment_succeeded": handle_invoice_paid,
    "invoice.payment_failed": handle_invoice_payment_failed,
}


class WebhookReconciler:
    """Verify Stripe deliveries and apply them to the subscription store."""

    def __init__(
        self,
        gateway: StripeGateway,
        webhook_secret: str,
        handlers: dict[str, EventHandler] | None = None,
    ) -> None:
        self.gateway = gateway
        self.webhook_secret = webhook_secret
        self.handlers = EVENT_HANDLERS if handlers is None else handlers

    def verify(self, payload: bytes, sig_header: str | None) -> stripe.Event:
        """Authenticate the raw payload before anything in it is trusted."""
        if not sig_header:
            logger.warning("Webhook rejected: missing Stripe-Signature header")
            raise WebhookVerificationError("Missing signature")
        try:
            return self.gateway.construct_event(payload, sig_header, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook signature verification failed")
            raise WebhookVerificationError("Invalid signature") from e
        except ValueError as e:
            logger.warning("Invalid webhook payload")
            raise WebhookVerificationError("Invalid payload") from e

    async def apply(self, db: AsyncSession, event: stripe.Event) -> bool:
        """Dispatch ``event`` to its handler; False when the type is not handled."""
        handler = self.handlers.get(event.type)
        if handler is None:
            logger.info("Unhandled webhook event type: %s (id=%s)", event.type, event.id)
            return False

        logger.info("Processing webhook event: %s (id=%s)", event.type, event.id)
        await handler(db, event, self.gateway)
        return True


def get_webhook_reconciler(
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> WebhookReconciler:
    """FastAPI dependency building the reconciler from settings."""
    if not settings.stripe_webhook_secret:
        raise BillingConfigurationError("Stripe webhook secret is not configured.")
    return WebhookReconciler(gateway, settings.stripe_webhook_secret)
