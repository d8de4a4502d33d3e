"""Tests for the request-time access guard."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from holiday_programs.billing.dependencies import check_access
from holiday_programs.billing.entitlement import utcnow
from holiday_programs.billing.errors import SubscriptionAccessDenied
from holiday_programs.services.subscription_service import get_subscription_for_user
from tests.factories import create_subscription, create_user


async def _subscribed_user(db_session: AsyncSession, status="active", days_left=30, **fields):
    user = await create_user(db_session)
    fields.setdefault("current_period_end", utcnow() + timedelta(days=days_left))
    subscription = await create_subscription(db_session, user, status=status, **fields)
    return user, subscription


class TestCheckAccess:
    """Test check_access."""

    async def test_entitled_returns_subscription(self, db_session: AsyncSession):
        user, subscription = await _subscribed_user(db_session)
        result = await check_access(db_session, user.id)
        assert result.id == subscription.id

    async def test_no_subscription_denied(self, db_session: AsyncSession):
        user = await create_user(db_session)
        await db_session.commit()

        with pytest.raises(SubscriptionAccessDenied) as exc_info:
            await check_access(db_session, user.id)

        assert exc_info.value.code == "SUBSCRIPTION_REQUIRED"
        assert exc_info.value.lazily_expired is False

    async def test_pending_denied(self, db_session: AsyncSession):
        user, _ = await _subscribed_user(db_session, status="pending", current_period_end=None)
        with pytest.raises(SubscriptionAccessDenied):
            await check_access(db_session, user.id)

    async def test_canceled_with_time_left_denied(self, db_session: AsyncSession):
        user, _ = await _subscribed_user(db_session, status="canceled")
        with pytest.raises(SubscriptionAccessDenied):
            await check_access(db_session, user.id)

    async def test_lapsed_active_is_expired_and_committed(
        self, db_session: AsyncSession, session_factory
    ):
        user, _ = await _subscribed_user(db_session, days_left=-1)
        on_expired = AsyncMock()

        with pytest.raises(SubscriptionAccessDenied) as exc_info:
            await check_access(db_session, user.id, on_expired=on_expired)

        assert exc_info.value.code == "SUBSCRIPTION_EXPIRED"
        assert exc_info.value.lazily_expired is True
        on_expired.assert_awaited_once()
        # Visible from a different connection, so it was committed
        async with session_factory() as other:
            stored = await get_subscription_for_user(other, user.id)
            assert stored.status == "expired"

    async def test_second_caller_loses_the_transition(self, db_session: AsyncSession):
        user, _ = await _subscribed_user(db_session, days_left=-1)
        on_expired = AsyncMock()

        for _ in range(2):
            with pytest.raises(SubscriptionAccessDenied):
                await check_access(db_session, user.id, on_expired=on_expired)

        on_expired.assert_awaited_once()

    async def test_concurrent_losers_do_not_notify(
        self, db_session: AsyncSession, session_factory
    ):
        """Two sessions that both saw ``active``: only one write wins."""
        user, _ = await _subscribed_user(db_session, days_left=-1)
        winner_hook, loser_hook = AsyncMock(), AsyncMock()

        async with session_factory() as first, session_factory() as second:
            # Both load the lapsed-but-active row before either writes
            await get_subscription_for_user(first, user.id)
            await get_subscription_for_user(second, user.id)
            await first.commit()
            await second.commit()

            with pytest.raises(SubscriptionAccessDenied) as won:
                await check_access(first, user.id, on_expired=winner_hook)
            with pytest.raises(SubscriptionAccessDenied) as lost:
                await check_access(second, user.id, on_expired=loser_hook)

        assert won.value.lazily_expired is True
        assert lost.value.lazily_expired is False
        winner_hook.assert_awaited_once()
        loser_hook.assert_not_awaited()

    async def test_hook_failure_does_not_change_outcome(self, db_session: AsyncSession):
        user, _ = await _subscribed_user(db_session, days_left=-1)
        on_expired = AsyncMock(side_effect=RuntimeError("mail down"))

        with pytest.raises(SubscriptionAccessDenied) as exc_info:
            await check_access(db_session, user.id, on_expired=on_expired)

        assert exc_info.value.lazily_expired is True

    async def test_write_failure_still_denies(self, db_session: AsyncSession):
        """A failed expiry write never grants access and never notifies."""
        user, _ = await _subscribed_user(db_session, days_left=-1)
        on_expired = AsyncMock()

        with patch(
            "holiday_programs.billing.dependencies.mark_expired",
            new_callable=AsyncMock,
            side_effect=OperationalError("UPDATE", {}, Exception("database is locked")),
        ):
            with pytest.raises(SubscriptionAccessDenied) as exc_info:
                await check_access(db_session, user.id, on_expired=on_expired)

        assert exc_info.value.lazily_expired is False
        on_expired.assert_not_awaited()

    async def test_missing_period_grace(self, db_session: AsyncSession):
        """An active row waiting for its first period update is let in briefly."""
        user, _ = await _subscribed_user(db_session, current_period_end=None)
        result = await check_access(db_session, user.id, grace=timedelta(minutes=60))
        assert result.status == "active"
