from __future__ import annotations

from typing import Optional


REAUTH_FOR_PAYMENTS_MESSAGE = (
    "Payment permission was not granted. Please log out and log in again "
    "with Pi to allow payments."
)


class KeyBaseError(Exception):
    """Base class for errors raised by the KeyBase services."""


class ConfigurationError(KeyBaseError):
    pass


class AuthError(KeyBaseError):
    """Pi access token verification failed.

    ``reason`` is one of ``expired`` (the caller must force a new login),
    ``unreachable`` (transient, the caller may retry) or ``rejected``.
    """

    EXPIRED = "expired"
    UNREACHABLE = "unreachable"
    REJECTED = "rejected"

    def __init__(self, reason: str, message: str = ""):
        self.reason = reason
        super().__init__(message or f"Pi authentication failed ({reason})")

    @property
    def expired(self) -> bool:
        return self.reason == self.EXPIRED


class GatewayError(KeyBaseError):
    """A Pi Network platform API call returned an error or could not be made."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}
        super().__init__(message)

    @property
    def already_completed(self) -> bool:
        return self.error_code == "already_completed"


class ConflictError(KeyBaseError):
    """Unique constraint violation on a local record."""

    def __init__(self, field: str):
        self.field = field
        super().__init__(f"Unique constraint violated on {field}")


class ScopeDeniedError(KeyBaseError):
    def __init__(self, message: str = REAUTH_FOR_PAYMENTS_MESSAGE):
        super().__init__(message)


class PaymentInFlightError(KeyBaseError):
    def __init__(self, payment_id: Optional[str] = None):
        self.payment_id = payment_id
        super().__init__("Another payment is already in progress")


class InvalidTransitionError(KeyBaseError, ValueError):
    def __init__(self, current: str, new: str):
        self.current = current
        self.new = new
        super().__init__(f"Invalid transition: {current} -> {new}")


class PaymentFailedError(KeyBaseError):
    """A payment attempt ended without completing; ``detail`` keeps the underlying message."""

    def __init__(self, message: str, detail: Optional[str] = None):
        self.detail = detail
        super().__init__(message)
