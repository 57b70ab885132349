"""Structured errors for the callable billing endpoints.

Codes follow the callable-function vocabulary the web client already
understands (``invalid-argument``, ``unauthenticated`` ...).
"""

from fastapi import status

# Error code -> HTTP status
ERROR_STATUS = {
    "invalid-argument": status.HTTP_400_BAD_REQUEST,
    "unauthenticated": status.HTTP_401_UNAUTHORIZED,
    "permission-denied": status.HTTP_403_FORBIDDEN,
    "not-found": status.HTTP_404_NOT_FOUND,
    "failed-precondition": status.HTTP_409_CONFLICT,
    "internal": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class CallableError(Exception):
    """Error raised from a callable endpoint and rendered as ``{"error": {...}}``."""

    def __init__(self, code: str, message: str) -> None:
        if code not in ERROR_STATUS:
            raise ValueError(f"Unknown error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def status_code(self) -> int:
        return ERROR_STATUS[self.code]

    def to_dict(self) -> dict:
        return {"error": {"code": self.code, "message": self.message}}


class StripeNotConfiguredError(RuntimeError):
    """Raised when a Stripe call is attempted without an API key."""


class WebhookSecretMissingError(RuntimeError):
    """Raised when the webhook signing secret is not configured."""
