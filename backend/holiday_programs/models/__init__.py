"""SQLAlchemy models for Holiday Programs billing.

All models are imported here so that ``Base.metadata`` sees every table
before ``create_all`` runs. If you add a new model, import it in this file.
"""

from holiday_programs.models.subscription import Subscription, SubscriptionStatus
from holiday_programs.models.user import User

__all__ = [
    "Subscription",
    "SubscriptionStatus",
    "User",
]
