"""Async Stripe API wrapper for Holiday Programs."""

import logging
from functools import lru_cache

import stripe
from stripe import StripeClient

from holiday_programs.billing.errors import BillingConfigurationError
from holiday_programs.config import settings

logger = logging.getLogger(__name__)

# Key under which our user id travels in Stripe metadata.
METADATA_USER_KEY = "userId"


class StripeGateway:
    """The slice of the Stripe API the billing core depends on.

    Every call goes through Stripe's own HTTP timeout; failures propagate as
    ``stripe.StripeError`` subclasses.
    """

    def __init__(self, secret_key: str) -> None:
        self._client = StripeClient(
            secret_key,
            http_client=stripe.HTTPXClient(),
        )

    async def create_customer(
        self, email: str | None, name: str | None, user_id: str
    ) -> stripe.Customer:
        """Create a Stripe customer linked to a Holiday Programs user."""
        logger.info("Creating Stripe customer for user %s", user_id)
        params: dict = {"metadata": {METADATA_USER_KEY: user_id}}
        if email:
            params["email"] = email
        if name:
            params["name"] = name
        customer = await self._client.v1.customers.create_async(params=params)
        logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
        return customer

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        user_id: str,
        success_url: str,
        cancel_url: str,
    ) -> stripe.checkout.Session:
        """Create a hosted Checkout Session for the annual subscription."""
        logger.info(
            "Creating checkout session for customer %s, price %s",
            customer_id,
            price_id,
        )
        return await self._client.v1.checkout.sessions.create_async(
            params={
                "mode": "subscription",
                "customer": customer_id,
                "client_reference_id": user_id,
                "line_items": [{"price": price_id, "quantity": 1}],
                "billing_address_collection": "required",
                "allow_promotion_codes": True,
                "metadata": {METADATA_USER_KEY: user_id},
                "subscription_data": {"metadata": {METADATA_USER_KEY: user_id}},
                "success_url": success_url,
                "cancel_url": cancel_url,
            }
        )

    async def get_subscription(self, subscription_id: str) -> stripe.Subscription:
        """Retrieve a Stripe subscription by ID (authoritative state)."""
        return await self._client.v1.subscriptions.retrieve_async(subscription_id)

    async def set_cancel_at_period_end(
        self, subscription_id: str, cancel: bool
    ) -> stripe.Subscription:
        """Schedule (or unschedule) cancellation at the end of the paid period."""
        logger.info(
            "Setting cancel_at_period_end=%s on Stripe subscription %s",
            cancel,
            subscription_id,
        )
        return await self._client.v1.subscriptions.update_async(
            subscription_id,
            params={"cancel_at_period_end": cancel},
        )

    def construct_event(
        self, payload: bytes, sig_header: str, webhook_secret: str
    ) -> stripe.Event:
        """Verify and construct a Stripe webhook event (synchronous)."""
        return self._client.construct_event(payload, sig_header, webhook_secret)


@lru_cache
def _gateway_for_key(secret_key: str) -> StripeGateway:
    return StripeGateway(secret_key)


def get_stripe_gateway() -> StripeGateway:
    """FastAPI dependency returning the process-wide Stripe gateway."""
    if not settings.stripe_secret_key:
        raise BillingConfigurationError("Stripe is not configured on the server.")
    return _gateway_for_key(settings.stripe_secret_key)
