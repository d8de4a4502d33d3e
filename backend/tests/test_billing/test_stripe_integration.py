"""StripeGateway tests.

Signature verification runs offline against the real Stripe library. The
API tests hit Stripe test mode and are auto-skipped when STRIPE_SECRET_KEY
is not set (e.g., in CI).
"""

import os

import pytest
import stripe

from holiday_programs.billing.errors import BillingConfigurationError
from holiday_programs.billing.stripe_client import StripeGateway, get_stripe_gateway
from holiday_programs.config import settings
from tests.factories import WEBHOOK_SECRET, event_payload, sign_payload

SKIP_REASON = "STRIPE_SECRET_KEY not set — skipping real Stripe integration tests"
requires_stripe = pytest.mark.skipif(not os.getenv("STRIPE_SECRET_KEY"), reason=SKIP_REASON)


class TestConstructEvent:
    """Webhook verification through the gateway (no network)."""

    def test_valid_signature(self):
        gateway = StripeGateway("sk_test_offline")
        payload = event_payload("invoice.paid", {"id": "in_1", "object": "invoice"})

        event = gateway.construct_event(payload.encode(), sign_payload(payload), WEBHOOK_SECRET)

        assert event.type == "invoice.paid"
        assert event.data.object.id == "in_1"

    def test_invalid_signature(self):
        gateway = StripeGateway("sk_test_offline")
        with pytest.raises(stripe.SignatureVerificationError):
            gateway.construct_event(
                b'{"type": "test"}', "t=12345,v1=invalid_signature", WEBHOOK_SECRET
            )

    def test_invalid_json(self):
        gateway = StripeGateway("sk_test_offline")
        payload = "not json"
        with pytest.raises(ValueError):
            gateway.construct_event(payload.encode(), sign_payload(payload), WEBHOOK_SECRET)


class TestGetStripeGateway:
    def test_unconfigured(self, monkeypatch):
        monkeypatch.setattr(settings, "stripe_secret_key", "")
        with pytest.raises(BillingConfigurationError):
            get_stripe_gateway()

    def test_same_gateway_per_key(self, monkeypatch):
        monkeypatch.setattr(settings, "stripe_secret_key", "sk_test_cached")
        assert get_stripe_gateway() is get_stripe_gateway()


@requires_stripe
class TestStripeIntegration:
    """Real Stripe API tests — only run when STRIPE_SECRET_KEY is available."""

    @pytest.fixture
    def gateway(self) -> StripeGateway:
        return StripeGateway(os.environ["STRIPE_SECRET_KEY"])

    async def test_create_real_customer(self, gateway: StripeGateway):
        customer = await gateway.create_customer(
            email="integration-test@holidayprograms.test",
            name="Integration Test Parent",
            user_id="test-integration-user-id",
        )
        assert customer.id.startswith("cus_")
        assert customer.metadata.get("userId") == "test-integration-user-id"

    async def test_create_checkout_session_returns_url(self, gateway: StripeGateway):
        price_id = os.getenv("STRIPE_ANNUAL_PRICE_ID")
        if not price_id:
            pytest.skip("STRIPE_ANNUAL_PRICE_ID not configured")

        customer = await gateway.create_customer(
            email="checkout-test@holidayprograms.test",
            name="Checkout Test Parent",
            user_id="test-checkout-user-id",
        )
        session = await gateway.create_checkout_session(
            customer_id=customer.id,
            price_id=price_id,
            user_id="test-checkout-user-id",
            success_url="https://example.com/success",
            cancel_url="https://example.com/cancel",
        )
        assert session.id.startswith("cs_")
        assert "checkout.stripe.com" in session.url

    async def test_retrieve_nonexistent_subscription(self, gateway: StripeGateway):
        with pytest.raises(stripe.InvalidRequestError):
            await gateway.get_subscription("sub_nonexistent_12345")
