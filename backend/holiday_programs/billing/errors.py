"""Billing error taxonomy.

Every user-facing failure carries a stable ``code`` the UI maps to a message,
plus the HTTP status the API layer answers with.
"""

from fastapi import status


class BillingError(Exception):
    """Base class for billing failures surfaced to API callers."""

    code: str = "BILLING_ERROR"
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_detail(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class SubscriptionConflictError(BillingError):
    """The requested change conflicts with the current subscription state."""

    code = "SUBSCRIPTION_ALREADY_ACTIVE"
    status_code = status.HTTP_409_CONFLICT


class SubscriptionNotFoundError(BillingError):
    code = "NO_SUBSCRIPTION"
    status_code = status.HTTP_404_NOT_FOUND


class SubscriptionAccessDenied(BillingError):
    """The user is not currently entitled to protected resources.

    ``lazily_expired`` is true only for the caller whose compare-and-set
    moved the subscription from ``active`` to ``expired``.
    """

    code = "SUBSCRIPTION_REQUIRED"
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        lazily_expired: bool = False,
    ) -> None:
        super().__init__(message, code=code)
        self.lazily_expired = lazily_expired


class PaymentProviderError(BillingError):
    """Stripe failed or was unreachable; money flow is affected, never swallowed."""

    code = "PAYMENT_PROVIDER_UNAVAILABLE"
    status_code = status.HTTP_502_BAD_GATEWAY


class BillingConfigurationError(BillingError):
    code = "BILLING_NOT_CONFIGURED"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class WebhookVerificationError(BillingError):
    """Webhook payload could not be authenticated or parsed."""

    code = "INVALID_WEBHOOK"
    status_code = status.HTTP_400_BAD_REQUEST


class NotificationError(Exception):
    """The email provider rejected or failed to deliver a message."""


class LifecycleSweepError(Exception):
    """The lifecycle job could not load its candidate set.

    ``results`` holds whatever the run still managed to process.
    """

    def __init__(self, message: str, results) -> None:
        super().__init__(message)
        self.results = results
