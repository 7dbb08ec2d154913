"""
Tests for paginated fetch orchestration.
"""

import threading
import pytest
from datetime import datetime, timezone

from structlog.testing import capture_logs

from linnworks_sync.exceptions import ServerError
from linnworks_sync.models import ApiErrorInfo, DateRange, OrderSource, PageResult
from linnworks_sync.pagination import PaginatedFetchOrchestrator


RANGE = DateRange(
    start=datetime(2024, 3, 1, tzinfo=timezone.utc),
    end=datetime(2024, 3, 8, tzinfo=timezone.utc),
)


class PagedVendor:
    """
    Stands in for ApiClient.fetch_page: `pages` full pages of `per_page` rows.

    `report_total=False` hides TotalPages, `cursors=True` switches to
    NextPageToken paging, `fail_pages` raise a retry-exhausted ServerError.
    """

    def __init__(self, pages, per_page, report_total=True, cursors=False, fail_pages=(), last_page_size=None):
        self.pages = pages
        self.per_page = per_page
        self.report_total = report_total
        self.cursors = cursors
        self.fail_pages = set(fail_pages)
        self.last_page_size = last_page_size
        self.requested: list[int] = []
        self.cursors_seen: list[str | None] = []

    def fetch_page(self, account_id, source, date_range, filters=None, page_number=1, page_size=200, cursor=None):
        self.requested.append(page_number)
        self.cursors_seen.append(cursor)
        if page_number in self.fail_pages:
            raise ServerError("Server error 503 - will retry", status_code=503)
        if page_number > self.pages:
            return PageResult(orders=[], page_number=page_number)

        size = self.per_page
        if page_number == self.pages and self.last_page_size is not None:
            size = self.last_page_size
        rows = [
            {"pkOrderID": f"p{page_number}-{i}", "nOrderId": page_number * 10000 + i, "fTotalCharge": 5.0}
            for i in range(size)
        ]
        return PageResult(
            orders=rows,
            page_number=page_number,
            total_pages=self.pages if self.report_total else None,
            next_cursor=f"cursor-{page_number + 1}" if self.cursors and page_number < self.pages else None,
        )

    def describe_error(self, error):
        return ApiErrorInfo(kind=error.kind.value, retryable=error.retryable, message=str(error))


class TestFetchAll:
    """Tests for PaginatedFetchOrchestrator.fetch_all."""

    def test_cap_stops_on_page_boundary(self):
        """Test 10 pages of 200 with max 500 fetches exactly 3 pages, never page 4."""
        vendor = PagedVendor(pages=10, per_page=200)
        fetcher = PaginatedFetchOrchestrator(vendor, page_size=200)

        result = fetcher.fetch_all("default", RANGE, max_items=500)

        assert vendor.requested == [1, 2, 3]
        assert result.pages_fetched == 3
        assert len(result.orders) == 500

    def test_walks_all_pages(self):
        vendor = PagedVendor(pages=3, per_page=200)
        fetcher = PaginatedFetchOrchestrator(vendor, page_size=200)

        result = fetcher.fetch_all("default", RANGE)

        assert vendor.requested == [1, 2, 3]
        assert len(result.orders) == 600
        assert result.complete is True

    def test_short_page_ends_walk_without_total(self):
        """Test a short page ends the walk when no page count is reported."""
        vendor = PagedVendor(pages=2, per_page=200, report_total=False, last_page_size=37)
        fetcher = PaginatedFetchOrchestrator(vendor, page_size=200)

        result = fetcher.fetch_all("default", RANGE)

        assert vendor.requested == [1, 2]
        assert len(result.orders) == 237

    def test_empty_page_ends_walk(self):
        vendor = PagedVendor(pages=0, per_page=200, report_total=False)
        fetcher = PaginatedFetchOrchestrator(vendor, page_size=200)

        result = fetcher.fetch_all("default", RANGE)

        assert vendor.requested == [1]
        assert result.orders == []

    def test_failed_page_dropped_and_walk_continues(self):
        """Test a page that exhausts retries is dropped; other pages are kept."""
        vendor = PagedVendor(pages=4, per_page=10, fail_pages={2})
        fetcher = PaginatedFetchOrchestrator(vendor, page_size=10)

        with capture_logs() as logs:
            result = fetcher.fetch_all("default", RANGE)

        assert vendor.requested == [1, 2, 3, 4]
        assert [e["event"] for e in logs if e["log_level"] == "warning"] == ["Dropping page after retries"]
        assert not [e for e in logs if e["log_level"] == "error"]
        assert len(result.orders) == 30
        assert [f.page_number for f in result.failed_pages] == [2]
        assert result.failed_pages[0].error.kind == "server_error"
        assert result.complete is False

    def test_failed_first_page_stops(self):
        """Test with no known page count a failed page ends the walk, logged as an error."""
        vendor = PagedVendor(pages=4, per_page=10, fail_pages={1})
        fetcher = PaginatedFetchOrchestrator(vendor, page_size=10)

        with capture_logs() as logs:
            result = fetcher.fetch_all("default", RANGE)

        assert vendor.requested == [1]
        assert result.orders == []
        assert len(result.failed_pages) == 1
        errors = [e for e in logs if e["log_level"] == "error"]
        assert [e["event"] for e in errors] == ["Feed unavailable, no orders fetched"]
        assert errors[0]["page"] == 1

    def test_follows_cursor(self):
        vendor = PagedVendor(pages=3, per_page=10, report_total=False, cursors=True)
        fetcher = PaginatedFetchOrchestrator(vendor, page_size=10)

        result = fetcher.fetch_all("default", RANGE)

        assert vendor.cursors_seen == [None, "cursor-2", "cursor-3"]
        assert len(result.orders) == 30

    def test_duplicates_across_pages(self):
        """Test an order repeated by a pagination shift is kept once."""
        vendor = PagedVendor(pages=2, per_page=3)
        original = vendor.fetch_page

        def shifted(*args, **kwargs):
            page = original(*args, **kwargs)
            if page.page_number == 2:
                page.orders[0] = {"pkOrderID": "p1-2", "nOrderId": 10002, "fTotalCharge": 5.0}
            return page

        vendor.fetch_page = shifted
        fetcher = PaginatedFetchOrchestrator(vendor, page_size=3)

        result = fetcher.fetch_all("default", RANGE)

        assert result.duplicates == 1
        assert len(result.orders) == 5

    def test_malformed_payload_counted(self):
        vendor = PagedVendor(pages=1, per_page=2)
        original = vendor.fetch_page

        def with_garbage(*args, **kwargs):
            page = original(*args, **kwargs)
            page.orders.append("not-an-order")
            return page

        vendor.fetch_page = with_garbage
        fetcher = PaginatedFetchOrchestrator(vendor, page_size=3)

        result = fetcher.fetch_all("default", RANGE)

        assert result.invalid_payloads == 1
        assert len(result.orders) == 2

    def test_progress_callback(self):
        vendor = PagedVendor(pages=2, per_page=5)
        fetcher = PaginatedFetchOrchestrator(vendor, page_size=5)
        progress = []

        fetcher.fetch_all("default", RANGE, on_progress=progress.append, source=OrderSource.OPEN)

        assert [(p.page_number, p.page_count, p.fetched) for p in progress] == [(1, 5, 5), (2, 5, 10)]
        assert progress[0].source is OrderSource.OPEN
        assert progress[0].total_pages == 2

    def test_processed_source_marks_orders_processed(self):
        vendor = PagedVendor(pages=1, per_page=2)
        fetcher = PaginatedFetchOrchestrator(vendor, page_size=2)

        result = fetcher.fetch_all("default", RANGE, source=OrderSource.PROCESSED)

        assert all(order.is_processed for order in result.orders)

    def test_cancelled_before_first_page(self):
        vendor = PagedVendor(pages=3, per_page=5)
        fetcher = PaginatedFetchOrchestrator(vendor, page_size=5)
        cancel = threading.Event()
        cancel.set()

        result = fetcher.fetch_all("default", RANGE, cancel_event=cancel)

        assert vendor.requested == []
        assert result.cancelled is True

    def test_cancelled_between_pages(self):
        vendor = PagedVendor(pages=3, per_page=5)
        fetcher = PaginatedFetchOrchestrator(vendor, page_size=5)
        cancel = threading.Event()

        result = fetcher.fetch_all("default", RANGE, on_progress=lambda p: cancel.set(), cancel_event=cancel)

        assert vendor.requested == [1]
        assert len(result.orders) == 5
        assert result.cancelled is True

    def test_invalid_page_size(self):
        with pytest.raises(ValueError):
            PaginatedFetchOrchestrator(PagedVendor(1, 1), page_size=0)
