"""Subscription lifecycle job — renewal reminders and eager expiration.

Run once per day by an external scheduler. Both passes are safe to repeat:
reminders are deduplicated per billing period and expiry is a
compare-and-set shared with the request-time access guard.
"""

import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from holiday_programs.billing.entitlement import utcnow
from holiday_programs.billing.errors import LifecycleSweepError
from holiday_programs.config import settings
from holiday_programs.database import get_session_factory
from holiday_programs.models.subscription import Subscription
from holiday_programs.services.notification_service import (
    NotificationDispatcher,
    get_notifier,
    send_expiration_notice,
    send_renewal_reminder,
)
from holiday_programs.services.subscription_service import (
    list_lapsed_active,
    list_reminder_candidates,
    mark_expired,
    record_reminder_sent,
)

logger = logging.getLogger(__name__)

SLOW_RUN_SECONDS = 30.0


@dataclass
class LifecycleResults:
    """Summary returned to the scheduler."""

    reminders_sent: int = 0
    expired_count: int = 0
    errors: list[str] = field(default_factory=list)

    def as_payload(self) -> dict:
        return {
            "reminders": self.reminders_sent,
            "expired": self.expired_count,
            "errors": list(self.errors),
        }


@dataclass
class LifecycleMetrics:
    reminders_queued: int = 0
    reminders_sent: int = 0
    reminders_failed: int = 0
    subscriptions_expired: int = 0
    expiration_notices_sent: int = 0
    expiration_notices_failed: int = 0
    started_at: float = field(default_factory=time.monotonic)

    @property
    def total_errors(self) -> int:
        return self.reminders_failed + self.expiration_notices_failed

    def log(self) -> None:
        elapsed = time.monotonic() - self.started_at
        snapshot = asdict(self)
        snapshot.pop("started_at")
        logger.info(
            "Subscription lifecycle metrics: %s total_errors=%d elapsed=%.2fs",
            snapshot,
            self.total_errors,
            elapsed,
        )
        if self.total_errors:
            logger.warning(
                "%d errors occurred during subscription lifecycle processing",
                self.total_errors,
            )
        if elapsed > SLOW_RUN_SECONDS:
            logger.warning("Subscription lifecycle processing took %.1fs", elapsed)
        if self.reminders_failed > self.reminders_sent:
            logger.warning("More reminder failures than successes")


@dataclass(frozen=True)
class _Candidate:
    """Detached view of a row, safe to use after its session closes."""

    subscription_id: uuid.UUID
    user_id: uuid.UUID
    email: str | None
    name: str | None
    period_end: datetime | None

    @classmethod
    def from_row(cls, subscription: Subscription) -> "_Candidate":
        user = subscription.user
        return cls(
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            email=user.email if user else None,
            name=user.name if user else None,
            period_end=subscription.current_period_end,
        )


def _start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


class SubscriptionLifecycleSweeper:
    """Process every subscription that needs a reminder or an expiry.

    Each row is handled in its own short session so one failure cannot
    poison the rest of the batch.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: NotificationDispatcher,
        *,
        renewal_url: str,
        reminder_days: int = 7,
    ) -> None:
        self.session_factory = session_factory
        self.notifier = notifier
        self.renewal_url = renewal_url
        self.reminder_days = reminder_days

    async def run(self, now: datetime | None = None) -> LifecycleResults:
        """Run both passes and return the summary.

        Raises:
            LifecycleSweepError: A pass could not load its candidates. The
                other pass still ran; its work is in ``error.results``.
        """
        now = now or utcnow()
        results = LifecycleResults()
        metrics = LifecycleMetrics()
        failed_passes: list[str] = []

        try:
            reminders = await self._load_reminder_candidates(now)
        except Exception as e:
            logger.exception("Reminder candidate query failed")
            results.errors.append(f"Reminder query error: {e}")
            failed_passes.append("reminders")
        else:
            await self._send_renewal_reminders(reminders, now, results, metrics)

        try:
            lapsed = await self._load_lapsed(now)
        except Exception as e:
            logger.exception("Expiration candidate query failed")
            results.errors.append(f"Expiration query error: {e}")
            failed_passes.append("expirations")
        else:
            await self._expire_lapsed(lapsed, results, metrics)

        logger.info(
            "Subscription lifecycle run completed: reminders=%d expired=%d errors=%d",
            results.reminders_sent,
            results.expired_count,
            len(results.errors),
        )
        metrics.log()

        if failed_passes:
            raise LifecycleSweepError(
                f"Could not load candidates for: {', '.join(failed_passes)}",
                results,
            )
        return results

    async def _load_reminder_candidates(self, now: datetime) -> list[_Candidate]:
        window_start = _start_of_day(now) + timedelta(days=self.reminder_days)
        window_end = window_start + timedelta(days=1)
        async with self.session_factory() as db:
            rows = await list_reminder_candidates(db, window_start, window_end)
            return [_Candidate.from_row(row) for row in rows]

    async def _load_lapsed(self, now: datetime) -> list[_Candidate]:
        async with self.session_factory() as db:
            rows = await list_lapsed_active(db, now)
            return [_Candidate.from_row(row) for row in rows]

    async def _send_renewal_reminders(
        self,
        candidates: list[_Candidate],
        now: datetime,
        results: LifecycleResults,
        metrics: LifecycleMetrics,
    ) -> None:
        metrics.reminders_queued += len(candidates)
        for candidate in candidates:
            if not candidate.email:
                results.errors.append(f"No email for user {candidate.user_id}")
                metrics.reminders_failed += 1
                continue

            try:
                await send_renewal_reminder(
                    self.notifier,
                    candidate.email,
                    user_name=candidate.name,
                    expiration_date=candidate.period_end,
                    days_remaining=self.reminder_days,
                    renewal_url=self.renewal_url,
                )
                async with self.session_factory() as db:
                    await record_reminder_sent(db, candidate.subscription_id, now)
                    await db.commit()
            except Exception as e:
                logger.warning("Renewal reminder failed for user %s: %s", candidate.user_id, e)
                results.errors.append(
                    f"Failed to send reminder for {candidate.user_id}: {e}"
                )
                metrics.reminders_failed += 1
                continue

            results.reminders_sent += 1
            metrics.reminders_sent += 1

    async def _expire_lapsed(
        self,
        candidates: list[_Candidate],
        results: LifecycleResults,
        metrics: LifecycleMetrics,
    ) -> None:
        for candidate in candidates:
            try:
                async with self.session_factory() as db:
                    won = await mark_expired(db, candidate.subscription_id)
                    await db.commit()
            except Exception as e:
                logger.warning("Expiry failed for subscription %s: %s", candidate.subscription_id, e)
                results.errors.append(
                    f"Failed to process expiration for {candidate.user_id}: {e}"
                )
                continue

            if not won:
                logger.info(
                    "Subscription %s was already expired by another path",
                    candidate.subscription_id,
                )
                continue

            results.expired_count += 1
            metrics.subscriptions_expired += 1

            if not candidate.email:
                logger.info("User %s has no email, skipping expiration notice", candidate.user_id)
                continue

            try:
                await send_expiration_notice(
                    self.notifier,
                    candidate.email,
                    user_name=candidate.name,
                    expired_date=candidate.period_end,
                    renewal_url=self.renewal_url,
                )
            except Exception as e:
                logger.warning("Expiration notice failed for user %s: %s", candidate.user_id, e)
                results.errors.append(
                    f"Failed to send expiration notice for {candidate.user_id}: {e}"
                )
                metrics.expiration_notices_failed += 1
            else:
                metrics.expiration_notices_sent += 1


def get_lifecycle_sweeper(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> SubscriptionLifecycleSweeper:
    """FastAPI dependency building the sweeper from settings."""
    return SubscriptionLifecycleSweeper(
        session_factory,
        notifier,
        renewal_url=settings.renewal_url,
        reminder_days=settings.reminder_days_before,
    )
