"""
Gateway error taxonomy.

Rejections (authorization, availability, credits) are cheap and terminal.
Provider errors carry a kind that drives the retry policy. Internal
inconsistencies are programming errors and always fail loudly.
"""

from decimal import Decimal
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Error kinds recorded on failed query records."""
    AUTHORIZATION_DENIED = "AuthorizationDenied"
    PROVIDER_UNAVAILABLE = "ProviderUnavailable"
    INSUFFICIENT_CREDITS = "InsufficientCredits"
    UNAUTHORIZED = "Unauthorized"
    RATE_LIMITED = "RateLimited"
    TIMEOUT = "Timeout"
    MALFORMED = "Malformed"
    NOT_FOUND = "NotFound"
    UNKNOWN = "Unknown"


# Provider error kinds worth a fresh attempt
RETRYABLE_KINDS = frozenset({ErrorKind.RATE_LIMITED, ErrorKind.TIMEOUT})

PROVIDER_ERROR_KINDS = frozenset({
    ErrorKind.UNAUTHORIZED,
    ErrorKind.RATE_LIMITED,
    ErrorKind.TIMEOUT,
    ErrorKind.MALFORMED,
    ErrorKind.NOT_FOUND,
    ErrorKind.UNKNOWN,
})


class GatewayError(Exception):
    """Base class for all gateway errors."""
    kind: Optional[ErrorKind] = None

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthorizationDenied(GatewayError):
    """Officer is not allowed to run the operation (plan or status)."""
    kind = ErrorKind.AUTHORIZATION_DENIED


class ProviderUnavailable(GatewayError):
    """No usable integration is configured for the operation."""
    kind = ErrorKind.PROVIDER_UNAVAILABLE


class InsufficientCredits(GatewayError):
    """Officer balance does not cover the operation's cost."""
    kind = ErrorKind.INSUFFICIENT_CREDITS

    def __init__(self, officer_id: str, required: Decimal, available: Decimal):
        super().__init__(
            f"Insufficient credits. Required: {required}, Available: {available}"
        )
        self.officer_id = officer_id
        self.required = required
        self.available = available


class ProviderError(GatewayError):
    """Typed failure returned by a provider adapter."""

    def __init__(self, kind: ErrorKind, message: str, status_code: Optional[int] = None):
        if kind not in PROVIDER_ERROR_KINDS:
            raise ValueError(f"Not a provider error kind: {kind}")
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


class InternalInconsistency(GatewayError):
    """Reservation settled inconsistently or referenced by an unknown token."""
