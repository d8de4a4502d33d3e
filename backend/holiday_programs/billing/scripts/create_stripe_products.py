"""Create the annual subscription product and price in Stripe test mode.

Run once inside the backend container:
    python -m holiday_programs.billing.scripts.create_stripe_products

Outputs the price ID to set in .env:
    STRIPE_ANNUAL_PRICE_ID=price_xxx
"""

import asyncio

import stripe
from stripe import StripeClient

from holiday_programs.config import settings

ANNUAL_AMOUNT_CENTS = 4900
CURRENCY = "aud"


async def main() -> None:
    if not settings.stripe_secret_key:
        print("ERROR: STRIPE_SECRET_KEY is not set in .env")
        return

    client = StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(),
    )

    product = await client.v1.products.create_async(
        params={
            "name": "Holiday Programs Annual Membership",
            "description": "12 months of access to holiday program listings and bookings",
        }
    )
    price = await client.v1.prices.create_async(
        params={
            "product": product.id,
            "unit_amount": ANNUAL_AMOUNT_CENTS,
            "currency": CURRENCY,
            "recurring": {"interval": "year"},
        }
    )
    print(f"Created product: {product.name} ({product.id})")
    print(f"  Price: ${ANNUAL_AMOUNT_CENTS / 100:.2f} {CURRENCY.upper()}/yr ({price.id})")

    print("\n--- Add this to your .env ---")
    print(f"STRIPE_ANNUAL_PRICE_ID={price.id}")


if __name__ == "__main__":
    asyncio.run(main())
