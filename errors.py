"""Error types raised while talking to Money Lover.

Every error carries a ``kind`` that is decided where the error is first
created, so callers classify failures by matching on the tag instead of
inspecting messages.
"""

from enum import Enum
from typing import Any, Optional

# Money Lover returns error code 1 for "user_unauthenticated"
UNAUTHENTICATED_CODES = (1, 401)
AUTH_MESSAGE_MARKERS = ("unauth", "token")


class ErrorKind(Enum):
    """Classification of a failure."""
    AUTH = "auth"
    API = "api"
    TRANSPORT = "transport"
    AUTH_EXCHANGE = "auth_exchange"
    CREDENTIALS_REQUIRED = "credentials_required"


class MoneyloverError(Exception):
    """Base class for all errors surfaced by this server."""

    kind: ErrorKind = ErrorKind.API

    def __init__(self, message: str, code: Optional[int] = None, detail: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.detail = detail


class MoneyloverApiError(MoneyloverError):
    """Structured error returned in a Money Lover response body."""

    def __init__(self, message: str, code: Optional[int] = None, detail: Optional[Any] = None) -> None:
        super().__init__(message, code=code, detail=detail)
        self.kind = classify_api_error(code, message)


class MoneyloverHTTPError(MoneyloverError):
    """Money Lover answered with a non-success HTTP status."""

    kind = ErrorKind.TRANSPORT

    def __init__(self, message: str, status_code: int, detail: Optional[Any] = None) -> None:
        super().__init__(message, detail=detail)
        self.status_code = status_code


class MoneyloverTransportError(MoneyloverError):
    """The request never produced a response (DNS, TLS, timeout, reset)."""

    kind = ErrorKind.TRANSPORT


class AuthenticationExchangeError(MoneyloverError):
    """The login-url / token exchange did not produce an access token."""

    kind = ErrorKind.AUTH_EXCHANGE


class CredentialsRequiredError(MoneyloverError):
    kind = ErrorKind.CREDENTIALS_REQUIRED


def classify_api_error(code: Optional[int], message: str) -> ErrorKind:
    """Decide whether an API error payload means the token was rejected."""
    if isinstance(code, int) and code in UNAUTHENTICATED_CODES:
        return ErrorKind.AUTH
    lowered = (message or "").lower()
    if any(marker in lowered for marker in AUTH_MESSAGE_MARKERS):
        return ErrorKind.AUTH
    return ErrorKind.API


def is_auth_error(error: BaseException) -> bool:
    """Return True only for API errors tagged as authentication failures.

    Transport errors never qualify, even when their text mentions a token.
    """
    return isinstance(error, MoneyloverError) and error.kind is ErrorKind.AUTH
