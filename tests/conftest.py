"""
Pytest configuration and fixtures for Linnworks sync tests.
"""

import json
import math
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from linnworks_sync.config import SyncSettings
from linnworks_sync.db import create_store


def _iso(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%S.0000000Z")


class FakeClock:
    """Monotonic-style float clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class FakeDateClock:
    """Aware-UTC datetime clock for the store-facing components."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class EventRecorder:
    """Subscribes to event types and keeps every event it sees."""

    def __init__(self, bus, *event_types):
        self.events = []
        for event_type in event_types:
            bus.subscribe(event_type, self.events.append)

    def of_type(self, event_type):
        return [e for e in self.events if isinstance(e, event_type)]


def make_processed_row(index: int, received: datetime | None = None, total: float = 19.99) -> dict:
    """One row of the ProcessedOrders search feed (flat shape)."""
    received = received or datetime.now(timezone.utc) - timedelta(days=2)
    return {
        "pkOrderID": f"p-{index:05d}",
        "nOrderId": 50000 + index,
        "ReferenceNum": str(50000 + index),
        "ChannelReferenceNumber": f"AMZ-{index}",
        "Source": "AMAZON",
        "SubSource": "Amazon UK",
        "dReceivedDate": _iso(received),
        "dProcessedOn": _iso(received + timedelta(hours=3)),
        "fTotalCharge": total,
        "cCurrency": "GBP",
        "PaidDateTime": _iso(received + timedelta(minutes=5)),
    }


def make_open_order(index: int, received: datetime | None = None, total: float = 25.5) -> dict:
    """One open order in the nested GeneralInfo/TotalsInfo shape."""
    received = received or datetime.now(timezone.utc) - timedelta(days=1)
    return {
        "OrderId": f"o-{index:05d}",
        "NumOrderId": 70000 + index,
        "Processed": False,
        "GeneralInfo": {
            "Status": 1,
            "ReceivedDate": _iso(received),
            "Source": "EBAY",
            "SubSource": "eBay UK",
            "ReferenceNum": f"EB-{index}",
            "HoldOrCancel": False,
        },
        "TotalsInfo": {"TotalCharge": total, "Currency": "GBP"},
        "Items": [
            {"SKU": "MUG-RED", "Title": "Red mug", "Quantity": 2, "UnitCost": 3.1,
             "PricePerUnit": 8.5, "Cost": 17.0},
            {"SKU": "COASTER", "Title": "Coaster", "Quantity": 1, "UnitCost": 0.4,
             "PricePerUnit": 8.5},
        ],
    }


class FakeLinnworks:
    """
    In-memory vendor double served through httpx.MockTransport.

    Holds the two order feeds and the by-id lookup, paginates them the way
    the real endpoints do, and records every request it receives.
    """

    SERVER = "https://eu-ext.linnworks.net"

    def __init__(self, open_orders=None, processed_orders=None):
        self.open_orders = list(open_orders or [])
        self.processed_orders = list(processed_orders or [])
        self.orders_by_id: dict[str, dict] = {}
        self.requests: list[tuple[str, dict, httpx.Headers]] = []
        self.auth_status = 200
        self.auth_calls = 0
        # (endpoint suffix, page number) -> HTTP status to return instead
        self.page_failures: dict[tuple[str, int], int] = {}

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def paths(self) -> list[str]:
        return [path for path, _, _ in self.requests]

    def _page(self, rows: list, page: int, size: int) -> tuple[list, int]:
        total_pages = max(1, math.ceil(len(rows) / size))
        return rows[(page - 1) * size: page * size], total_pages

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content) if request.content else {}
        self.requests.append((path, body, request.headers))

        if path.endswith("Auth/AuthorizeByApplication"):
            self.auth_calls += 1
            if self.auth_status != 200:
                return httpx.Response(self.auth_status, json={"Message": "Invalid application"})
            return httpx.Response(200, json={"Token": f"session-{self.auth_calls}", "Server": self.SERVER})

        if request.headers.get("Authorization") is None:
            return httpx.Response(401, json={"Message": "Missing token"})

        if path.endswith("ProcessedOrders/SearchProcessedOrders"):
            search = body["request"]
            page, size = search["PageNumber"], search["ResultsPerPage"]
            status = self.page_failures.get(("processed", page))
            if status:
                return httpx.Response(status, text="upstream unavailable")
            rows, total_pages = self._page(self.processed_orders, page, size)
            return httpx.Response(200, json={
                "ProcessedOrders": {
                    "Data": rows,
                    "PageNumber": page,
                    "EntriesPerPage": size,
                    "TotalEntries": len(self.processed_orders),
                    "TotalPages": total_pages,
                }
            })

        if path.endswith("OpenOrders/GetOpenOrders"):
            page, size = body["PageNumber"], body["EntriesPerPage"]
            status = self.page_failures.get(("open", page))
            if status:
                return httpx.Response(status, text="upstream unavailable")
            rows, total_pages = self._page(self.open_orders, page, size)
            return httpx.Response(200, json={
                "Data": rows,
                "PageNumber": page,
                "EntriesPerPage": size,
                "TotalEntries": len(self.open_orders),
                "TotalPages": total_pages,
            })

        if path.endswith("Orders/GetOrdersById"):
            ids = body.get("pkOrderIds", [])
            return httpx.Response(200, json=[self.orders_by_id[i] for i in ids if i in self.orders_by_id])

        return httpx.Response(404, json={"Message": "Unknown endpoint"})


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def date_clock():
    return FakeDateClock()


@pytest.fixture
def session_factory(tmp_path):
    """Fresh SQLite order store per test."""
    return create_store(f"sqlite:///{tmp_path / 'orders.db'}")


@pytest.fixture
def sample_processed_row():
    """Sample ProcessedOrders search row (flat shape)."""
    return make_processed_row(1)


@pytest.fixture
def sample_open_order():
    """Sample open order (nested shape)."""
    return make_open_order(1)


@pytest.fixture
def sample_processed_page(sample_processed_row):
    """Sample ProcessedOrders envelope with one row."""
    return {
        "ProcessedOrders": {
            "Data": [sample_processed_row],
            "PageNumber": 1,
            "EntriesPerPage": 200,
            "TotalEntries": 1,
            "TotalPages": 1,
        }
    }


@pytest.fixture
def vendor():
    """Vendor double with 3 open and 5 processed orders."""
    return FakeLinnworks(
        open_orders=[make_open_order(i) for i in range(1, 4)],
        processed_orders=[make_processed_row(i) for i in range(1, 6)],
    )


@pytest.fixture
def settings(tmp_path):
    """Settings pointing every file at tmp_path, with test credentials."""
    return SyncSettings(
        application_id="app-123",
        application_secret="app-secret",
        installation_token="install-token",
        database_url=f"sqlite:///{tmp_path / 'sync.db'}",
        state_file=str(tmp_path / "state.json"),
        page_size=2,
        batch_size=3,
        warming_debounce_seconds=0,
        warming_workers=2,
    )


@pytest.fixture
def processed_row():
    """Factory for processed feed rows: processed_row(index, received=None, total=19.99)."""
    return make_processed_row


@pytest.fixture
def open_order():
    """Factory for nested open orders: open_order(index, received=None, total=25.5)."""
    return make_open_order


@pytest.fixture
def recorder():
    """Factory: recorder(bus, *event_types) -> EventRecorder."""
    return EventRecorder


@pytest.fixture
def vendor_factory():
    """Factory: vendor_factory(open_orders=..., processed_orders=...) -> FakeLinnworks."""
    return FakeLinnworks
