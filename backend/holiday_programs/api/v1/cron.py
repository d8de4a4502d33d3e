"""Scheduled job endpoints, called by the external cron scheduler."""

import logging
import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, status
from fastapi.responses import JSONResponse

from holiday_programs.billing.errors import LifecycleSweepError
from holiday_programs.config import settings
from holiday_programs.schemas.billing import LifecycleRunResponse
from holiday_programs.services.lifecycle_service import (
    LifecycleResults,
    SubscriptionLifecycleSweeper,
    get_lifecycle_sweeper,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"])


def verify_cron_secret(authorization: str | None = Header(default=None)) -> None:
    """Require ``Authorization: Bearer <CRON_SECRET>``.

    An unset secret rejects every call rather than leaving the job open.
    """
    expected = settings.cron_secret
    scheme, _, token = (authorization or "").partition(" ")
    if (
        not expected
        or scheme.lower() != "bearer"
        or not secrets.compare_digest(token.encode(), expected.encode())
    ):
        logger.warning("Rejected unauthorized lifecycle job call")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )


def _failure(error: str, results: LifecycleResults | None = None) -> JSONResponse:
    content: dict = {"success": False, "error": error}
    if results is not None:
        content["processed"] = results.as_payload()
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=content,
    )


@router.get(
    "/subscription-lifecycle",
    response_model=LifecycleRunResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def run_subscription_lifecycle(
    sweeper: SubscriptionLifecycleSweeper = Depends(get_lifecycle_sweeper),
):
    """Send renewal reminders and expire lapsed subscriptions."""
    try:
        results = await sweeper.run()
    except LifecycleSweepError as e:
        logger.error("Subscription lifecycle run incomplete: %s", e)
        return _failure(str(e), e.results)
    except Exception as e:
        logger.exception("Subscription lifecycle run failed")
        return _failure(str(e))

    return LifecycleRunResponse(success=True, processed=results.as_payload())
