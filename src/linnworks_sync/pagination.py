"""
Paginated fetch orchestration.

Walks one order feed page by page (or cursor by cursor) for a date range.
Pages are fetched sequentially: the next request depends on what the
previous page reported.
"""

import threading
from dataclasses import dataclass, field
from typing import Callable

import structlog

from linnworks_sync.client import ApiClient
from linnworks_sync.exceptions import ApiError, PayloadValidationError
from linnworks_sync.models import (
    ApiErrorInfo,
    DateRange,
    OrderSource,
    ProcessedOrderFilters,
    VendorOrder,
)
from linnworks_sync.sanitizer import sanitize_order

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PageProgress:
    """Reported to `on_progress` after every successful page."""
    source: OrderSource
    page_number: int
    total_pages: int | None
    page_count: int
    fetched: int


@dataclass(frozen=True)
class PageFailure:
    page_number: int
    error: ApiErrorInfo


@dataclass
class FetchResult:
    orders: list[VendorOrder] = field(default_factory=list)
    pages_fetched: int = 0
    failed_pages: list[PageFailure] = field(default_factory=list)
    invalid_payloads: int = 0
    duplicates: int = 0
    cancelled: bool = False

    @property
    def complete(self) -> bool:
        return not self.failed_pages and not self.cancelled


class PaginatedFetchOrchestrator:
    """
    Assembles the full result set for one feed and date range.

    Stops when the vendor has no further pages, when `max_items` have been
    collected (rounded up to a page boundary, then truncated), or when the
    run is cancelled between pages. A page that exhausts its retries is
    dropped and the walk continues if the page count is known; pages that
    already succeeded are kept either way. AuthError is never swallowed.

    Example:
        fetcher = PaginatedFetchOrchestrator(client, page_size=200)
        result = fetcher.fetch_all("default", DateRange.last_days(7), max_items=5000)
    """

    def __init__(self, client: ApiClient, page_size: int = 200):
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.client = client
        self.page_size = page_size

    def fetch_all(
        self,
        account_id: str,
        date_range: DateRange,
        filters: ProcessedOrderFilters | None = None,
        max_items: int | None = None,
        on_progress: Callable[[PageProgress], None] | None = None,
        source: OrderSource = OrderSource.PROCESSED,
        cancel_event: threading.Event | None = None,
    ) -> FetchResult:
        log = logger.bind(account_id=account_id, source=source.value)
        result = FetchResult()
        seen: set[str] = set()

        page_number = 1
        cursor: str | None = None
        total_pages: int | None = None

        while True:
            if cancel_event is not None and cancel_event.is_set():
                log.info("Fetch cancelled at page boundary", page=page_number)
                result.cancelled = True
                break

            try:
                page = self.client.fetch_page(
                    account_id,
                    source,
                    date_range,
                    filters=filters,
                    page_number=page_number,
                    page_size=self.page_size,
                    cursor=cursor,
                )
            except ApiError as e:
                result.failed_pages.append(
                    PageFailure(page_number=page_number, error=self.client.describe_error(e))
                )
                log.warning("Dropping page after retries", page=page_number, error=str(e))

                # Without a known page count (or with a cursor) there is no way past this page
                if cursor is None and total_pages is not None and page_number < total_pages:
                    page_number += 1
                    continue
                if result.pages_fetched == 0:
                    log.error("Feed unavailable, no orders fetched", page=page_number, error=str(e))
                break

            result.pages_fetched += 1
            if page.total_pages is not None:
                total_pages = page.total_pages

            for raw in page.orders:
                try:
                    order = sanitize_order(raw, source=source)
                except PayloadValidationError as e:
                    result.invalid_payloads += 1
                    log.warning("Dropping malformed order payload", page=page_number, error=str(e))
                    continue

                # Pagination shifts can repeat an order across pages
                if order.has_identifier:
                    if order.dedup_key in seen:
                        result.duplicates += 1
                        continue
                    seen.add(order.dedup_key)

                result.orders.append(order)

            log.info(
                "Fetched orders page",
                page=page_number,
                total_pages=total_pages,
                count=len(page.orders),
                fetched=len(result.orders),
            )

            if on_progress is not None:
                on_progress(PageProgress(
                    source=source,
                    page_number=page_number,
                    total_pages=total_pages,
                    page_count=len(page.orders),
                    fetched=len(result.orders),
                ))

            if max_items is not None and len(result.orders) >= max_items:
                log.info("Fetch cap reached", max_items=max_items, pages=result.pages_fetched)
                break

            if page.next_cursor:
                cursor = page.next_cursor
                page_number += 1
                continue
            if cursor is not None:
                # Cursor walk ends when the vendor stops issuing tokens
                break

            if not page.orders:
                break
            if total_pages is not None:
                if page_number >= total_pages:
                    break
            elif len(page.orders) < self.page_size:
                break

            page_number += 1

        if max_items is not None and len(result.orders) > max_items:
            result.orders = result.orders[:max_items]

        return result
