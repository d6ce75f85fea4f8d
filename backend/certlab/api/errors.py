"""
Application exceptions

Every business error derives from ``AppError``; ``certlab.main`` registers a
handler that turns it into the standard ``{code, message, data}`` envelope.

Subscription error taxonomy:
- ValidationError: malformed request, shown to the caller
- LockContention: another lifecycle operation holds the user's lock; retryable
- ProviderUnavailable: billing provider unreachable; reads degrade, writes fail
- ProviderError: provider rejected the request
- NotFound: no subscription/customer on file ("never subscribed")
- InvalidTransition: the requested plan change is not legal from the current state
- EventUnmappable: webhook references an unknown customer; acknowledged as a no-op
"""
from __future__ import annotations


class AppError(Exception):
    """
    Base business exception.

    - code: business error code the front end switches on
    - message: user facing message
    - status_code: HTTP status

    Example:
        raise AppError(code=404301, message="Subscription not found", status_code=404)
    """

    def __init__(self, *, code: int, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


class ValidationError(AppError):
    def __init__(self, message: str, *, code: int = 400301) -> None:
        super().__init__(code=code, message=message, status_code=400)


class LockContention(AppError):
    """
    Raised when a user's subscription lock could not be acquired in time.

    ``retryable`` is always true: the caller should retry after a short delay.
    """

    retryable = True

    def __init__(self, key: str, operation: str | None) -> None:
        super().__init__(
            code=409301,
            message=(
                f"Failed to acquire lock for user {key}. "
                f'Operation "{operation}" is still in progress.'
            ),
            status_code=409,
        )
        self.key = key
        self.operation = operation


class ProviderUnavailable(AppError):
    def __init__(self, message: str = "Billing provider is unavailable") -> None:
        super().__init__(code=503301, message=message, status_code=503)


class ProviderError(AppError):
    def __init__(self, message: str, *, provider_status: int | None = None) -> None:
        super().__init__(code=502301, message=message, status_code=502)
        self.provider_status = provider_status


class NotFound(AppError):
    def __init__(self, message: str = "No subscription found", *, code: int = 404301) -> None:
        super().__init__(code=code, message=message, status_code=404)


class InvalidTransition(AppError):
    def __init__(self, message: str, *, code: int = 400302) -> None:
        super().__init__(code=code, message=message, status_code=400)


class EventUnmappable(AppError):
    def __init__(self, customer_id: str | None) -> None:
        super().__init__(
            code=200301,
            message=f"No user found for customer ID: {customer_id}",
            status_code=200,
        )
        self.customer_id = customer_id


def provider_not_configured() -> ProviderUnavailable:
    """
    The provider API key is missing; subscription writes cannot proceed.
    """
    return ProviderUnavailable("Subscription service is not configured. Please contact support.")
