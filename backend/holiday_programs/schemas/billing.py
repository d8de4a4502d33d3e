"""Pydantic v2 request/response schemas for billing endpoints."""

from datetime import datetime

from pydantic import BaseModel

# --- Request schemas ---


class CheckoutRequest(BaseModel):
    """Request to create a Stripe Checkout session."""

    success_url: str | None = None
    cancel_url: str | None = None
    price_id: str | None = None  # falls back to the configured annual price


# --- Response schemas ---


class CheckoutResponse(BaseModel):
    """Stripe Checkout session URL returned to frontend."""

    checkout_url: str
    session_id: str


class SubscriptionResponse(BaseModel):
    """Subscription state for user-facing status displays."""

    has_subscription: bool
    status: str | None
    status_label: str
    entitled: bool
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    days_until_expiry: int | None
    payment_status: str | None


class AccessResponse(BaseModel):
    """Returned by the protected access-check endpoint."""

    entitled: bool
    status: str
    current_period_end: datetime | None


class WebhookResponse(BaseModel):
    status: str  # "processed" or "ignored"


class LifecycleProcessed(BaseModel):
    reminders: int
    expired: int
    errors: list[str]


class LifecycleRunResponse(BaseModel):
    """Payload returned to the external scheduler."""

    success: bool
    processed: LifecycleProcessed
