"""
Vendor payload normalization.

Linnworks returns orders in two shapes depending on the endpoint:

- FLAT: search endpoints (open/processed orders) put every field at the top
  level with Hungarian-ish names (`pkOrderID`, `fTotalCharge`, `dReceivedDate`).
- NESTED: `Orders/GetOrdersById` groups fields under `GeneralInfo` and
  `TotalsInfo`.

Both are reduced to one `VendorOrder` here, so nothing downstream ever
branches on payload shape.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any

import structlog

from linnworks_sync.exceptions import InvalidResponseError, PayloadValidationError
from linnworks_sync.models import (
    OrderSource,
    PageResult,
    VendorOrder,
    VendorOrderItem,
    ensure_utc,
)

logger = structlog.get_logger(__name__)

# Fractional seconds beyond microseconds (.NET emits 7 digits)
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


class PayloadShape(str, Enum):
    FLAT = "flat"
    NESTED = "nested"


def detect_shape(payload: dict[str, Any]) -> PayloadShape:
    if isinstance(payload.get("GeneralInfo"), dict) or isinstance(payload.get("TotalsInfo"), dict):
        return PayloadShape.NESTED
    return PayloadShape.FLAT


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None and value != "":
            return value
    return None


def parse_datetime(value: Any) -> datetime | None:
    """
    Parse a vendor timestamp into an aware UTC datetime.

    Returns None for empty values and for the .NET `0001-01-01` sentinel.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = _FRACTION_RE.sub(r"\1", str(value).strip()).replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.debug("Unparseable vendor date", value=str(value)[:40])
            return None
    if parsed.year <= 1:
        return None
    return ensure_utc(parsed)


def _to_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _to_float(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    try:
        return round(float(value), 2)
    except (TypeError, ValueError):
        return 0.0


def sanitize_item(data: dict[str, Any]) -> VendorOrderItem:
    quantity = _to_int(_first(data.get("Quantity"), data.get("quantity"))) or 0
    price_per_unit = _to_float(_first(data.get("PricePerUnit"), data.get("price_per_unit")))
    line_total = _first(data.get("Cost"), data.get("LineTotal"), data.get("line_total"))

    return VendorOrderItem(
        sku=_first(data.get("SKU"), data.get("ItemNumber"), data.get("sku")),
        title=_first(data.get("Title"), data.get("ItemTitle"), data.get("item_title")),
        quantity=quantity,
        unit_cost=_to_float(_first(data.get("UnitCost"), data.get("unit_cost"))),
        price_per_unit=price_per_unit,
        line_total=_to_float(line_total) if line_total is not None else round(price_per_unit * quantity, 2),
    )


def sanitize_order(payload: Any, source: OrderSource | None = None) -> VendorOrder:
    """
    Normalize one raw vendor order.

    Args:
        payload: Raw JSON object from any order endpoint
        source: Feed the payload came from. Orders from the processed feed
            are processed even when the payload omits the flag.

    Raises:
        PayloadValidationError: payload is not a JSON object
    """
    if not isinstance(payload, dict):
        raise PayloadValidationError(
            f"Expected order object, got {type(payload).__name__}"
        )

    shape = detect_shape(payload)
    general = (payload.get("GeneralInfo") or {}) if shape is PayloadShape.NESTED else {}
    totals = (payload.get("TotalsInfo") or {}) if shape is PayloadShape.NESTED else {}

    vendor_order_id = _first(payload.get("OrderId"), payload.get("pkOrderID"), payload.get("order_id"))
    order_number = _to_int(_first(
        payload.get("NumOrderId"),
        payload.get("nOrderId"),
        payload.get("order_number"),
        # ProcessedOrders rows carry the numeric id as ReferenceNum
        payload.get("ReferenceNum") if shape is PayloadShape.FLAT else None,
    ))

    received_at = parse_datetime(_first(
        general.get("ReceivedDate"), payload.get("dReceivedDate"), payload.get("received_date"),
    ))
    processed_flag = bool(_first(
        payload.get("Processed"), payload.get("bProcessed"),
        general.get("Processed"), general.get("bProcessed"),
    ))
    processed_at = parse_datetime(_first(
        payload.get("dProcessedOn"), payload.get("ProcessedDateTime"), payload.get("ProcessedDate"),
        payload.get("dProcessedDate"), general.get("ProcessedDate"), general.get("dProcessedDate"),
    ))
    is_processed = processed_flag or processed_at is not None or source is OrderSource.PROCESSED
    if is_processed and processed_at is None:
        processed_at = received_at

    paid_at = parse_datetime(_first(
        payload.get("PaidDateTime"), payload.get("PaidDate"), payload.get("dPaidDate"),
    ))
    status = _to_int(_first(general.get("Status"), payload.get("nStatus"))) or 0

    raw_items = payload.get("Items") or payload.get("items") or []
    items = [sanitize_item(item) for item in raw_items if isinstance(item, dict)]

    return VendorOrder(
        vendor_order_id=str(vendor_order_id) if vendor_order_id is not None else None,
        order_number=order_number,
        channel_reference=_first(
            general.get("ReferenceNum"), payload.get("ChannelReferenceNumber"),
            payload.get("channel_reference_number"),
        ),
        received_at=received_at,
        processed_at=processed_at,
        channel=_first(general.get("Source"), payload.get("Source"), payload.get("order_source")),
        sub_source=_first(general.get("SubSource"), payload.get("SubSource"), payload.get("subsource")),
        currency=_first(totals.get("Currency"), payload.get("cCurrency"), payload.get("currency")) or "GBP",
        total_charge=_to_float(_first(
            totals.get("TotalCharge"), payload.get("fTotalCharge"), payload.get("total_charge"),
        )),
        is_paid=paid_at is not None or status == 1,
        is_open=not is_processed,
        is_processed=is_processed,
        is_cancelled=bool(_first(
            general.get("HoldOrCancel"), payload.get("HoldOrCancel"), payload.get("is_cancelled"),
        )),
        items=items,
        source=source,
        raw=payload,
    )


def parse_page(payload: Any) -> PageResult:
    """
    Reduce any order-list response to a PageResult.

    Accepts a bare list, the `ProcessedOrders` envelope, or a `Data` envelope.
    """
    if isinstance(payload, list):
        return PageResult(orders=payload)

    if not isinstance(payload, dict):
        raise InvalidResponseError(f"Unexpected page payload type: {type(payload).__name__}")

    envelope = payload.get("ProcessedOrders", payload)
    if not isinstance(envelope, dict) or not isinstance(envelope.get("Data", []), list):
        raise InvalidResponseError("Page envelope has no Data list")

    if "Data" not in envelope and "ProcessedOrders" not in payload:
        raise InvalidResponseError("Unrecognized page envelope")

    return PageResult(
        orders=envelope.get("Data") or [],
        page_number=_to_int(envelope.get("PageNumber")),
        total_pages=_to_int(envelope.get("TotalPages")),
        total_entries=_to_int(envelope.get("TotalEntries")),
        entries_per_page=_to_int(envelope.get("EntriesPerPage")),
        next_cursor=_first(envelope.get("NextPageToken"), payload.get("NextPageToken")),
    )
