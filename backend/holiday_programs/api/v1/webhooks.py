"""Stripe webhook endpoint — receives and reconciles Stripe events."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from holiday_programs.api.deps import get_session_factory
from holiday_programs.billing.errors import WebhookVerificationError
from holiday_programs.billing.webhooks import WebhookReconciler, get_webhook_reconciler
from holiday_programs.schemas.billing import WebhookResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> WebhookResponse:
    """Receive and process Stripe webhook events.

    A 5xx answer makes Stripe redeliver, so processing failures roll back
    and surface as 500 while unhandled event types are acknowledged.
    """
    # 1. Read raw body (MUST be raw bytes for signature verification)
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    # 2. Verify signature
    try:
        event = reconciler.verify(payload, sig_header)
    except WebhookVerificationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=e.message,
        ) from e

    # 3. Own DB session (webhook has no auth context)
    async with session_factory() as db:
        try:
            handled = await reconciler.apply(db, event)
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.exception("Error processing webhook event %s", event.id)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Webhook processing failed",
            ) from e

    return WebhookResponse(status="processed" if handled else "ignored")
