"""
Exception taxonomy for the sync pipeline.

Auth failures abort a run. API errors carry a kind and a retryable flag so
the retry layer can classify them without inspecting status codes itself.
"""

from enum import Enum

import httpx


class LinnworksSyncError(Exception):
    """Base exception for all pipeline errors."""
    pass


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

class AuthFailure(str, Enum):
    NO_CONNECTION = "no_connection"
    REFRESH_FAILED = "refresh_failed"


class AuthError(LinnworksSyncError):
    """Raised when no session token can be obtained. Fatal for the run."""

    def __init__(self, reason: AuthFailure, account_id: str, detail: str | None = None):
        message = f"Authentication failed for account '{account_id}': {reason.value}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.reason = reason
        self.account_id = account_id
        self.detail = detail


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------

class ApiErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    NETWORK = "network"
    NOT_FOUND = "not_found"
    AUTH = "auth"
    CLIENT_ERROR = "client_error"
    INVALID_RESPONSE = "invalid_response"


RETRYABLE_KINDS = frozenset({
    ApiErrorKind.RATE_LIMITED,
    ApiErrorKind.TIMEOUT,
    ApiErrorKind.SERVER_ERROR,
    ApiErrorKind.NETWORK,
})


class ApiError(LinnworksSyncError):
    """Base exception for vendor API errors."""

    kind: ApiErrorKind = ApiErrorKind.CLIENT_ERROR

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code:
            return f"{base} (HTTP {self.status_code})"
        return base


class RateLimitError(ApiError):
    """HTTP 429, or the local gate refused to wait any longer."""
    kind = ApiErrorKind.RATE_LIMITED


class ServerError(ApiError):
    """5xx responses - retryable."""
    kind = ApiErrorKind.SERVER_ERROR


class ApiTimeoutError(ApiError):
    kind = ApiErrorKind.TIMEOUT


class NetworkError(ApiError):
    """Connection-level failure before any response arrived."""
    kind = ApiErrorKind.NETWORK


class NotFoundError(ApiError):
    kind = ApiErrorKind.NOT_FOUND


class SessionExpiredError(ApiError):
    """401/403 on a data call. The cached token is dropped, the call is not retried."""
    kind = ApiErrorKind.AUTH


class ClientError(ApiError):
    kind = ApiErrorKind.CLIENT_ERROR


class InvalidResponseError(ApiError):
    kind = ApiErrorKind.INVALID_RESPONSE


def is_retryable_error(exception: BaseException) -> bool:
    """Determine if an exception should trigger a retry."""
    if isinstance(exception, ApiError):
        return exception.retryable
    if isinstance(exception, (httpx.TimeoutException, httpx.TransportError)):
        return True
    return False


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------

class PayloadValidationError(LinnworksSyncError):
    """Vendor payload is not an order object at all."""
    pass


class OrderImportError(LinnworksSyncError):
    """A single order could not be persisted."""

    def __init__(self, identifier: str, message: str):
        super().__init__(f"Order {identifier}: {message}")
        self.identifier = identifier
