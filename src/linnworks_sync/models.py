"""
Pydantic models for the Linnworks API contract and the canonical order shape.

Request/response pairs and session tokens are frozen: derived variants
(`with_header`, `without_auth`) return new instances.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC (Linnworks and SQLite both return them)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class ApiCredentials(BaseModel):
    """Application credentials exchanged for a session token."""

    model_config = ConfigDict(frozen=True)

    application_id: str
    application_secret: SecretStr
    installation_token: SecretStr


class SessionToken(BaseModel):
    """Short-lived session credential. Replaced on refresh, never mutated."""

    model_config = ConfigDict(frozen=True)

    token: str
    server_host: str
    expires_at: datetime
    account_id: str

    @classmethod
    def from_api_response(
        cls,
        data: dict[str, Any],
        account_id: str,
        default_ttl_minutes: int = 55,
        now: datetime | None = None,
    ) -> "SessionToken":
        token = data.get("Token") or data.get("token")
        server = data.get("Server") or data.get("server")
        if not token or not server:
            raise ValueError("Missing token or server in session response")

        expires_raw = data.get("ExpiresAt") or data.get("expires_at")
        if expires_raw:
            expires_at = ensure_utc(datetime.fromisoformat(str(expires_raw).replace("Z", "+00:00")))
        else:
            expires_at = (now or utc_now()) + timedelta(minutes=default_ttl_minutes)

        return cls(token=token, server_host=server, expires_at=expires_at, account_id=account_id)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utc_now()) >= self.expires_at

    def is_expiring_soon(self, buffer: timedelta = timedelta(minutes=5), now: datetime | None = None) -> bool:
        return (now or utc_now()) >= self.expires_at - buffer

    @property
    def base_url(self) -> str:
        server = self.server_host.rstrip("/")
        if not server.startswith("http"):
            server = f"https://{server.lstrip('/')}"
        return f"{server}/api/"

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": self.token}


# ---------------------------------------------------------------------------
# Request / response
# ---------------------------------------------------------------------------


class ApiRequest(BaseModel):
    """One outbound call. Immutable; use the `with_*` helpers for variants."""

    model_config = ConfigDict(frozen=True)

    endpoint: str
    method: str = "POST"
    parameters: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    timeout: float = 30.0
    requires_auth: bool = True

    @classmethod
    def get(cls, endpoint: str, parameters: dict[str, Any] | None = None) -> "ApiRequest":
        return cls(endpoint=endpoint, method="GET", parameters=parameters or {})

    @classmethod
    def post(cls, endpoint: str, parameters: dict[str, Any] | None = None) -> "ApiRequest":
        return cls(endpoint=endpoint, method="POST", parameters=parameters or {})

    def with_header(self, key: str, value: str) -> "ApiRequest":
        return self.model_copy(update={"headers": {**self.headers, key: value}})

    def with_timeout(self, timeout: float) -> "ApiRequest":
        return self.model_copy(update={"timeout": timeout})

    def without_auth(self) -> "ApiRequest":
        return self.model_copy(update={"requires_auth": False})


class ApiErrorInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    retryable: bool
    message: str
    retry_after: float | None = None


class ApiResponse(BaseModel):
    """Normalized response. `payload` is the decoded JSON body."""

    model_config = ConfigDict(frozen=True)

    status_code: int
    payload: Any = None
    headers: dict[str, str] = Field(default_factory=dict)
    error: ApiErrorInfo | None = None
    requested_at: datetime = Field(default_factory=utc_now)
    elapsed_ms: int = 0

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300 and self.error is None


# ---------------------------------------------------------------------------
# Query parameters
# ---------------------------------------------------------------------------


class OrderSource(str, Enum):
    OPEN = "open"
    PROCESSED = "processed"


class ProcessedOrderDateField(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    PAID = "paid"
    CANCELLED = "cancelled"


class ProcessedOrderFilters(BaseModel):
    model_config = ConfigDict(frozen=True)

    date_field: ProcessedOrderDateField = ProcessedOrderDateField.RECEIVED
    search_term: str | None = None


class DateRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if ensure_utc(self.start) > ensure_utc(self.end):
            raise ValueError("start must not be after end")
        return self

    @classmethod
    def last_days(cls, days: int, now: datetime | None = None) -> "DateRange":
        end = now or utc_now()
        start = (end - timedelta(days=days)).replace(hour=0, minute=0, second=0, microsecond=0)
        return cls(start=start, end=end)

    def isoformat_pair(self) -> tuple[str, str]:
        start = ensure_utc(self.start).isoformat().replace("+00:00", "Z")
        end = ensure_utc(self.end).isoformat().replace("+00:00", "Z")
        return start, end


# ---------------------------------------------------------------------------
# Canonical vendor order
# ---------------------------------------------------------------------------


class VendorOrderItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    sku: str | None = None
    title: str | None = None
    quantity: int = 0
    unit_cost: float = 0.0
    price_per_unit: float = 0.0
    line_total: float = 0.0


class VendorOrder(BaseModel):
    """
    One order as seen by the vendor, after shape normalization.

    Both the flat (open/processed search) and nested (GetOrdersById) payload
    shapes end up here. `raw` keeps the original payload for failure capture.
    """

    model_config = ConfigDict(frozen=True)

    vendor_order_id: str | None = None
    order_number: int | None = None
    channel_reference: str | None = None

    received_at: datetime | None = None
    processed_at: datetime | None = None

    channel: str | None = None
    sub_source: str | None = None
    currency: str = "GBP"
    total_charge: float = 0.0

    is_paid: bool = False
    is_open: bool = True
    is_processed: bool = False
    is_cancelled: bool = False

    items: list[VendorOrderItem] = Field(default_factory=list)
    # Feed the payload came from; a recovered payload is re-read the same way
    source: OrderSource | None = None
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)

    @property
    def has_identifier(self) -> bool:
        return self.vendor_order_id is not None or self.order_number is not None

    @property
    def identifier(self) -> str:
        """Best available identifier for logs and failure records."""
        if self.vendor_order_id:
            return self.vendor_order_id
        if self.order_number is not None:
            return f"number:{self.order_number}"
        if self.channel_reference:
            return f"ref:{self.channel_reference}"
        return "unknown"

    @property
    def dedup_key(self) -> str:
        return self.vendor_order_id or f"number:{self.order_number}"


class PageResult(BaseModel):
    """One page of orders, independent of the envelope it arrived in."""

    orders: list[dict[str, Any]] = Field(default_factory=list)
    page_number: int | None = None
    total_pages: int | None = None
    total_entries: int | None = None
    entries_per_page: int | None = None
    next_cursor: str | None = None
