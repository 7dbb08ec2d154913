"""
Linnworks API Client

Synchronous HTTP client with:
- Session tokens from the SessionManager (auth exchange lives here too)
- A shared rate-limit gate checked before every data call
- Fixed-schedule retries for transient errors (429, 408, 5xx, network)
- Connection pooling
- Request/response logging
"""

import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable

import httpx
import structlog

from linnworks_sync.exceptions import (
    ApiError,
    ApiTimeoutError,
    ClientError,
    InvalidResponseError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ServerError,
    SessionExpiredError,
)
from linnworks_sync.models import (
    ApiCredentials,
    ApiErrorInfo,
    ApiRequest,
    ApiResponse,
    DateRange,
    OrderSource,
    PageResult,
    ProcessedOrderFilters,
    SessionToken,
    VendorOrder,
)
from linnworks_sync.rate_limiter import RateLimiter
from linnworks_sync.retry import RetryExecutor
from linnworks_sync.sanitizer import parse_page, sanitize_order

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://api.linnworks.net/api/"
USER_AGENT = "linnworks-sync/1.0"

AUTH_ENDPOINT = "Auth/AuthorizeByApplication"
PROCESSED_ORDERS_ENDPOINT = "ProcessedOrders/SearchProcessedOrders"
OPEN_ORDERS_ENDPOINT = "OpenOrders/GetOpenOrders"
ORDERS_BY_ID_ENDPOINT = "Orders/GetOrdersById"


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Retry-After as seconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - (now or datetime.now(timezone.utc))).total_seconds())


# ---------------------------------------------------------------------------
# Request builders
# ---------------------------------------------------------------------------

def processed_orders_request(
    date_range: DateRange,
    filters: ProcessedOrderFilters | None = None,
    page_number: int = 1,
    page_size: int = 200,
    cursor: str | None = None,
) -> ApiRequest:
    filters = filters or ProcessedOrderFilters()
    start, end = date_range.isoformat_pair()

    search: dict[str, Any] = {
        "FromDate": start,
        "ToDate": end,
        "DateField": filters.date_field.value,
        "PageNumber": page_number,
        "ResultsPerPage": page_size,
    }
    if filters.search_term:
        search["SearchTerm"] = filters.search_term
    if cursor:
        search["NextPageToken"] = cursor

    return ApiRequest.post(PROCESSED_ORDERS_ENDPOINT, {"request": search})


def open_orders_request(
    date_range: DateRange,
    page_number: int = 1,
    page_size: int = 200,
    cursor: str | None = None,
    view_id: int = 0,
    location_id: str | None = None,
) -> ApiRequest:
    start, end = date_range.isoformat_pair()

    body: dict[str, Any] = {
        "ViewId": view_id,
        "LocationId": location_id or "00000000-0000-0000-0000-000000000000",
        "EntriesPerPage": page_size,
        "PageNumber": page_number,
        "Filters": {
            "DateFields": [
                {
                    "FieldCode": "GENERAL_INFO_DATE",
                    "Type": "Range",
                    "DateFrom": start,
                    "DateTo": end,
                }
            ]
        },
    }
    if cursor:
        body["NextPageToken"] = cursor

    return ApiRequest.post(OPEN_ORDERS_ENDPOINT, body)


def orders_by_id_request(order_ids: list[str]) -> ApiRequest:
    return ApiRequest.post(ORDERS_BY_ID_ENDPOINT, {"pkOrderIds": list(order_ids)})


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class ApiClient:
    """
    Linnworks API client.

    `send()` performs exactly one HTTP exchange and maps failures onto the
    ApiError family. `call()` is what the pipeline uses: token, rate-limit
    gate and send, all inside the RetryExecutor.

    Example:
        client = ApiClient(rate_limiter=limiter, retry_executor=executor)
        client.sessions = SessionManager(client, {"default": credentials})

        with client:
            page = client.fetch_page("default", OrderSource.PROCESSED, date_range)
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        rate_limiter: RateLimiter | None = None,
        retry_executor: RetryExecutor | None = None,
        sessions: Any = None,
        timeout: float = 30.0,
        max_rate_limit_wait: float = 120.0,
        session_ttl_minutes: int = 55,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            base_url: Auth endpoint root; data calls go to the session's server
            rate_limiter: Shared gate (a private in-memory one if omitted)
            retry_executor: Retry policy for `call()`
            sessions: SessionManager supplying tokens for `call()`
            timeout: Default request timeout in seconds
            max_rate_limit_wait: Longest cumulative wait on the local gate
                before a call gives up with RateLimitError
            session_ttl_minutes: Token lifetime assumed when the auth response
                carries no ExpiresAt
            transport: httpx transport override (tests use MockTransport)
            sleep: Sleep function used for rate-limit waits
        """
        self.base_url = base_url if base_url.endswith("/") else f"{base_url}/"
        self.rate_limiter = rate_limiter or RateLimiter()
        self.retry = retry_executor or RetryExecutor()
        self.sessions = sessions
        self.timeout = timeout
        self.max_rate_limit_wait = max_rate_limit_wait
        self.session_ttl_minutes = session_ttl_minutes
        self._transport = transport
        self._sleep = sleep

        self._client: httpx.Client | None = None

        self._request_count = 0
        self._error_count = 0
        self._rate_limit_wait = 0.0

        self._log = logger.bind(base_url=self.base_url)

    def _build_client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.timeout,
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            transport=self._transport,
        )

    def __enter__(self) -> "ApiClient":
        if self._client is None:
            self._client = self._build_client()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = self._build_client()
        return self._client

    # -------------------------------------------------------------------------
    # Core exchange
    # -------------------------------------------------------------------------

    def send(self, request: ApiRequest, token: SessionToken | None = None) -> ApiResponse:
        """
        Issue one HTTP request. No rate limiting, no retries.

        Raises:
            ApiError subclass matching the failure
        """
        base = token.base_url if token else self.base_url
        url = f"{base}{request.endpoint.lstrip('/')}"
        headers = {**(token.auth_headers() if token else {}), **request.headers}
        log = self._log.bind(endpoint=request.endpoint, method=request.method)

        self._request_count += 1
        request_id = self._request_count
        requested_at = datetime.now(timezone.utc)

        log.debug("API request", request_id=request_id)

        start_time = time.monotonic()
        try:
            if request.method.upper() == "GET":
                response = self.client.request(
                    "GET", url, params=request.parameters, headers=headers, timeout=request.timeout
                )
            else:
                response = self.client.request(
                    request.method.upper(), url, json=request.parameters, headers=headers,
                    timeout=request.timeout,
                )
        except httpx.TimeoutException as e:
            self._error_count += 1
            raise ApiTimeoutError(f"Request to {request.endpoint} timed out: {e}") from e
        except httpx.TransportError as e:
            self._error_count += 1
            raise NetworkError(f"Network error calling {request.endpoint}: {e}") from e
        elapsed_ms = round((time.monotonic() - start_time) * 1000)

        log.debug(
            "API response",
            request_id=request_id,
            status_code=response.status_code,
            elapsed_ms=elapsed_ms,
        )

        if response.status_code >= 400:
            self._error_count += 1
            self._raise_for_status(request, response, token)

        try:
            payload = response.json() if response.content else None
        except ValueError as e:
            self._error_count += 1
            raise InvalidResponseError(
                f"Invalid JSON response from {request.endpoint}: {e}",
                status_code=response.status_code,
                response_body=response.text[:500],
            ) from e

        return ApiResponse(
            status_code=response.status_code,
            payload=payload,
            headers=dict(response.headers),
            requested_at=requested_at,
            elapsed_ms=elapsed_ms,
        )

    def _raise_for_status(
        self, request: ApiRequest, response: httpx.Response, token: SessionToken | None
    ) -> None:
        status = response.status_code
        body = response.text[:500]

        if status == 429:
            raise RateLimitError(
                "Rate limit exceeded - will retry",
                status_code=429,
                response_body=body,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )

        if status in (401, 403):
            if token is not None and self.sessions is not None:
                self.sessions.invalidate(token.account_id)
            raise SessionExpiredError(
                "Authentication failed - session token rejected",
                status_code=status,
            )

        if status == 404:
            raise NotFoundError(f"Resource not found: {request.endpoint}", status_code=404)

        if status == 408:
            raise ApiTimeoutError("Request timeout - will retry", status_code=408, response_body=body)

        if status >= 500:
            raise ServerError(
                f"Server error {status} - will retry",
                status_code=status,
                response_body=body,
            )

        raise ClientError(f"API error: {response.text[:200]}", status_code=status, response_body=body)

    def _wait_for_rate_limit(self) -> None:
        waited = 0.0
        while True:
            decision = self.rate_limiter.acquire()
            if decision:
                return

            if waited + decision.wait_seconds > self.max_rate_limit_wait:
                raise RateLimitError(
                    f"Local rate limit wait would exceed {self.max_rate_limit_wait}s",
                    retry_after=decision.wait_seconds,
                )

            delay = max(decision.wait_seconds, 0.05)
            self._log.info("Throttling for rate limit window", wait_seconds=round(delay, 2))
            self._sleep(delay)
            waited += delay
            self._rate_limit_wait += delay

    def call(self, account_id: str, request: ApiRequest) -> ApiResponse:
        """
        Rate-limited, retrying, authenticated call.

        Raises:
            AuthError: no usable session (never retried)
            ApiError: non-retryable failure, or retries exhausted
        """
        def attempt() -> ApiResponse:
            token = None
            if request.requires_auth:
                if self.sessions is None:
                    raise RuntimeError("ApiClient.sessions must be set for authenticated calls")
                token = self.sessions.get_valid_token(account_id)
            self._wait_for_rate_limit()
            return self.send(request, token)

        return self.retry.execute(attempt, operation_name=request.endpoint)

    # -------------------------------------------------------------------------
    # Auth
    # -------------------------------------------------------------------------

    def authorize(self, credentials: ApiCredentials, account_id: str) -> SessionToken:
        """Exchange application credentials for a session token."""
        request = ApiRequest.post(
            AUTH_ENDPOINT,
            {
                "ApplicationId": credentials.application_id,
                "ApplicationSecret": credentials.application_secret.get_secret_value(),
                "Token": credentials.installation_token.get_secret_value(),
            },
        ).without_auth()

        response = self.send(request)
        if not isinstance(response.payload, dict):
            raise InvalidResponseError("Auth response is not an object")
        return SessionToken.from_api_response(
            response.payload, account_id, default_ttl_minutes=self.session_ttl_minutes
        )

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    def fetch_page(
        self,
        account_id: str,
        source: OrderSource,
        date_range: DateRange,
        filters: ProcessedOrderFilters | None = None,
        page_number: int = 1,
        page_size: int = 200,
        cursor: str | None = None,
    ) -> PageResult:
        """Fetch one page of open or processed orders."""
        if source is OrderSource.PROCESSED:
            request = processed_orders_request(date_range, filters, page_number, page_size, cursor)
        else:
            request = open_orders_request(date_range, page_number, page_size, cursor)

        response = self.call(account_id, request)
        page = parse_page(response.payload)
        if page.page_number is None:
            page.page_number = page_number
        return page

    def get_orders_by_id(self, account_id: str, order_ids: list[str]) -> list[VendorOrder]:
        """Full (nested) order details for up to one batch of ids."""
        if not order_ids:
            return []
        response = self.call(account_id, orders_by_id_request(order_ids))
        return [sanitize_order(row) for row in parse_page(response.payload).orders]

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    def describe_error(self, error: ApiError) -> ApiErrorInfo:
        return ApiErrorInfo(
            kind=error.kind.value,
            retryable=error.retryable,
            message=str(error),
            retry_after=error.retry_after,
        )

    def get_stats(self) -> dict[str, Any]:
        """Get client statistics for monitoring."""
        return {
            "request_count": self._request_count,
            "error_count": self._error_count,
            "error_rate": round(self._error_count / max(1, self._request_count), 4),
            "rate_limit_wait_seconds": round(self._rate_limit_wait, 2),
            "rate_limiter": self.rate_limiter.get_stats(),
            "retry": self.retry.get_stats(),
        }

    def health_check(self, account_id: str) -> dict[str, Any]:
        """Verify credentials by obtaining a session token."""
        try:
            token = self.sessions.get_valid_token(account_id)
            return {
                "status": "healthy",
                "server": token.server_host,
                "expires_at": token.expires_at.isoformat(),
            }
        except Exception as e:
            return {"status": "error", "message": str(e)}
