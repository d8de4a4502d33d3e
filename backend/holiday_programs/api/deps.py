"""Shared API dependencies — single import point for all routers.

Re-exports database session, authentication and subscription-gating
dependencies so that router modules can import everything they need from
one place::

    from holiday_programs.api.deps import get_db, require_active_subscription
"""

from holiday_programs.auth.dependencies import (
    get_current_active_user,
    get_current_user,
)
from holiday_programs.billing.dependencies import require_active_subscription
from holiday_programs.database import get_db, get_session_factory

__all__ = [
    "get_db",
    "get_session_factory",
    "get_current_user",
    "get_current_active_user",
    "require_active_subscription",
]
