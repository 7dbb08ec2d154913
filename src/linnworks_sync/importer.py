"""
Idempotent order import.

Orders are written in fixed-size chunks, one transaction per chunk, with a
SAVEPOINT around each record: a record that throws is rolled back on its own
and reported as a FAILED result while the rest of the chunk commits.

Existing rows are rewritten only when a tracked field (or the line-item set)
actually changed, so re-importing an unchanged order costs no writes.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from linnworks_sync.db import Order, OrderItem, SyncStatus, utc_naive
from linnworks_sync.exceptions import OrderImportError
from linnworks_sync.models import VendorOrder, VendorOrderItem, utc_now

logger = structlog.get_logger(__name__)

DEFAULT_TRACKED_FIELDS: tuple[str, ...] = (
    "total_charge",
    "is_paid",
    "is_open",
    "is_processed",
    "is_cancelled",
    "channel",
    "received_at",
    "processed_at",
)

# Columns copied from VendorOrder onto Order whenever a row is written
ORDER_COLUMNS: tuple[str, ...] = (
    "vendor_order_id",
    "order_number",
    "channel_reference",
    "received_at",
    "processed_at",
    "channel",
    "sub_source",
    "currency",
    "total_charge",
    "is_paid",
    "is_open",
    "is_processed",
    "is_cancelled",
)


class ImportOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED_INVALID = "skipped_invalid"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    FAILED = "failed"


SKIPPED_OUTCOMES = frozenset({
    ImportOutcome.UNCHANGED,
    ImportOutcome.SKIPPED_INVALID,
    ImportOutcome.SKIPPED_DUPLICATE,
})


@dataclass(frozen=True)
class RecordResult:
    """Per-record outcome. A failure is a value here, not an exception."""
    identifier: str
    outcome: ImportOutcome
    local_id: int | None = None
    error: str | None = None
    order: VendorOrder | None = field(default=None, repr=False, compare=False)

    @property
    def ok(self) -> bool:
        return self.outcome is not ImportOutcome.FAILED


@dataclass
class ImportSummary:
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    results: list[RecordResult] = field(default_factory=list, repr=False)
    cancelled: bool = False

    def add(self, result: RecordResult) -> None:
        self.results.append(result)
        self.processed += 1
        if result.outcome is ImportOutcome.CREATED:
            self.created += 1
        elif result.outcome is ImportOutcome.UPDATED:
            self.updated += 1
        elif result.outcome is ImportOutcome.FAILED:
            self.failed += 1
        else:
            self.skipped += 1

    @property
    def failures(self) -> list[RecordResult]:
        return [r for r in self.results if r.outcome is ImportOutcome.FAILED]

    def counts(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
        }


@dataclass(frozen=True)
class ChunkReport:
    """Passed to `on_chunk` after each committed chunk."""
    chunk_index: int
    total_chunks: int
    chunk_size: int
    summary: ImportSummary


@dataclass
class ProcessedStatusSummary:
    checked: int = 0
    marked: int = 0
    unchanged: int = 0
    missing: int = 0


def dedupe_orders(orders: Iterable[VendorOrder]) -> tuple[list[VendorOrder], list[VendorOrder]]:
    """
    Collapse duplicates of the same identifier within one import call.

    The processed variant wins over an open one; otherwise the first seen
    wins. Keeps first-seen ordering. Returns (kept, dropped).
    """
    kept: dict[str, VendorOrder] = {}
    order_keys: list[str] = []
    dropped: list[VendorOrder] = []
    anonymous: list[tuple[int, VendorOrder]] = []

    for position, order in enumerate(orders):
        if not order.has_identifier:
            anonymous.append((position, order))
            order_keys.append(f"__anon_{position}")
            continue

        key = order.dedup_key
        current = kept.get(key)
        if current is None:
            kept[key] = order
            order_keys.append(key)
        elif order.is_processed and not current.is_processed:
            kept[key] = order
            dropped.append(current)
        else:
            dropped.append(order)

    anon_by_key = {f"__anon_{pos}": order for pos, order in anonymous}
    result = [kept[key] if key in kept else anon_by_key[key] for key in order_keys]
    return result, dropped


def _chunks(items: Sequence[VendorOrder], size: int) -> list[Sequence[VendorOrder]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def _normalize(name: str, value: Any) -> Any:
    if isinstance(value, datetime):
        return utc_naive(value).replace(microsecond=0)
    if isinstance(value, float):
        return round(value, 2)
    return value


def _item_signature(items: Iterable[Any]) -> list[tuple]:
    return sorted(
        (
            item.sku or "",
            item.title or "",
            int(item.quantity or 0),
            round(float(item.unit_cost or 0), 2),
            round(float(item.price_per_unit or 0), 2),
            round(float(item.line_total or 0), 2),
        )
        for item in items
    )


class OrderImportEngine:
    """
    Chunked, transactional upsert of vendor orders.

    Example:
        engine = OrderImportEngine(session_factory, chunk_size=50)
        summary = engine.import_orders(fetch_result.orders)
        print(summary.created, summary.updated, summary.failed)
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        chunk_size: int = 50,
        tracked_fields: Sequence[str] = DEFAULT_TRACKED_FIELDS,
        workers: int = 1,
        clock: Callable[[], datetime] = utc_now,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        unknown = set(tracked_fields) - set(ORDER_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown tracked fields: {sorted(unknown)}")

        self.session_factory = session_factory
        self.chunk_size = chunk_size
        self.tracked_fields = tuple(tracked_fields)
        self.workers = max(1, workers)
        self._clock = clock

        # SQLite has one writer; chunk transactions queue here instead of
        # failing with "database is locked"
        bind = session_factory.kw.get("bind")
        dialect = getattr(getattr(bind, "dialect", None), "name", None)
        self._write_lock = threading.Lock() if dialect == "sqlite" else None

    # -------------------------------------------------------------------------
    # Import
    # -------------------------------------------------------------------------

    def import_orders(
        self,
        orders: Sequence[VendorOrder],
        force_update: bool = False,
        on_chunk: Callable[[ChunkReport], None] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ImportSummary:
        """
        Import orders; returns counts plus one RecordResult per input order.

        Cancellation is honored between chunks only. Store-level errors that
        break a chunk transaction propagate; per-record errors never do.
        """
        summary = ImportSummary()
        lock = threading.Lock()

        kept, dropped = dedupe_orders(orders)
        for order in dropped:
            summary.add(RecordResult(order.identifier, ImportOutcome.SKIPPED_DUPLICATE, order=order))

        chunks = _chunks(kept, self.chunk_size)
        total_chunks = len(chunks)
        log = logger.bind(orders=len(orders), chunks=total_chunks)
        log.info("Importing orders", force_update=force_update, duplicates=len(dropped))

        def run_chunk(index: int, chunk: Sequence[VendorOrder]) -> None:
            if cancel_event is not None and cancel_event.is_set():
                with lock:
                    summary.cancelled = True
                return

            results = self._import_chunk(chunk, force_update)

            with lock:
                for result in results:
                    summary.add(result)
                report = ChunkReport(
                    chunk_index=index,
                    total_chunks=total_chunks,
                    chunk_size=len(chunk),
                    summary=summary,
                )
                if on_chunk is not None:
                    on_chunk(report)

        if self.workers == 1 or total_chunks <= 1:
            for index, chunk in enumerate(chunks, start=1):
                run_chunk(index, chunk)
                if summary.cancelled:
                    break
        else:
            with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="import") as pool:
                futures = [pool.submit(run_chunk, i, c) for i, c in enumerate(chunks, start=1)]
                for future in futures:
                    future.result()

        if summary.cancelled:
            log.info("Import cancelled at chunk boundary", **summary.counts())
        else:
            log.info("Import complete", **summary.counts())
        return summary

    def _import_chunk(self, chunk: Sequence[VendorOrder], force_update: bool) -> list[RecordResult]:
        results: list[RecordResult] = []

        with self._write_lock or nullcontext():
            with self.session_factory() as session, session.begin():
                for order in chunk:
                    results.append(self._import_one(session, order, force_update))

        return results

    def _import_one(self, session: Session, order: VendorOrder, force_update: bool) -> RecordResult:
        if not order.has_identifier:
            logger.warning("Skipping order without identifiers", channel_reference=order.channel_reference)
            return RecordResult(order.identifier, ImportOutcome.SKIPPED_INVALID, order=order)

        try:
            with session.begin_nested():
                outcome, local_id = self.upsert(session, order, force_update)
        except OperationalError:
            # Locks, lost connections: the store failed, not this record
            raise
        except Exception as e:
            logger.warning(
                "Order import failed",
                vendor_order_id=order.vendor_order_id,
                order_number=order.order_number,
                error=str(e),
                exc_info=True,
            )
            return RecordResult(order.identifier, ImportOutcome.FAILED, error=str(e), order=order)

        logger.debug("Order imported", identifier=order.identifier, outcome=outcome.value)
        return RecordResult(order.identifier, outcome, local_id=local_id, order=order)

    def find_existing(self, session: Session, order: VendorOrder) -> Order | None:
        """Vendor id first, then order number; first match wins."""
        if order.vendor_order_id:
            found = session.execute(
                select(Order).where(Order.vendor_order_id == order.vendor_order_id)
            ).scalar_one_or_none()
            if found is not None:
                return found

        if order.order_number is not None:
            return session.execute(
                select(Order).where(Order.order_number == order.order_number)
            ).scalar_one_or_none()

        return None

    def changed_fields(self, existing: Order, order: VendorOrder) -> list[str]:
        changed = [
            name for name in self.tracked_fields
            if _normalize(name, getattr(existing, name)) != _normalize(name, getattr(order, name))
        ]
        if _item_signature(existing.items) != _item_signature(order.items):
            changed.append("items")
        if existing.vendor_order_id is None and order.vendor_order_id:
            changed.append("vendor_order_id")
        return changed

    def upsert(self, session: Session, order: VendorOrder, force_update: bool) -> tuple[ImportOutcome, int]:
        now = utc_naive(self._clock())
        existing = self.find_existing(session, order)

        if existing is None:
            row = Order(created_at=now, updated_at=now, last_synced_at=now)
            self._apply(row, order)
            row.items = self._build_items(order.items)
            session.add(row)
            session.flush()
            return ImportOutcome.CREATED, row.id

        if existing.vendor_order_id and order.vendor_order_id and existing.vendor_order_id != order.vendor_order_id:
            raise OrderImportError(
                order.identifier,
                f"order number {order.order_number} already belongs to {existing.vendor_order_id}",
            )

        changed = self.changed_fields(existing, order)
        if not changed and not force_update:
            return ImportOutcome.UNCHANGED, existing.id

        items_changed = "items" in changed
        self._apply(existing, order)
        if items_changed or force_update:
            existing.items = self._build_items(order.items)
        existing.updated_at = now
        existing.last_synced_at = now
        existing.sync_status = SyncStatus.synced.value
        session.flush()

        logger.debug("Order changed", identifier=order.identifier, fields=changed)
        return ImportOutcome.UPDATED, existing.id

    @staticmethod
    def _apply(row: Order, order: VendorOrder) -> None:
        for name in ORDER_COLUMNS:
            value = getattr(order, name)
            if name in ("vendor_order_id", "order_number") and value is None:
                # Never erase an identifier we already hold
                continue
            if isinstance(value, datetime):
                value = utc_naive(value)
            setattr(row, name, value)

    @staticmethod
    def _build_items(items: Iterable[VendorOrderItem]) -> list[OrderItem]:
        return [
            OrderItem(
                sku=item.sku,
                title=item.title,
                quantity=item.quantity,
                unit_cost=item.unit_cost,
                price_per_unit=item.price_per_unit,
                line_total=item.line_total,
            )
            for item in items
        ]

    # -------------------------------------------------------------------------
    # Processed-status companion
    # -------------------------------------------------------------------------

    def open_vendor_order_ids(self, limit: int | None = None) -> list[str]:
        """Vendor ids of local orders still marked open."""
        with self.session_factory() as session:
            query = (
                select(Order.vendor_order_id)
                .where(Order.is_open.is_(True))
                .where(Order.vendor_order_id.is_not(None))
                .order_by(Order.received_at.desc())
            )
            if limit:
                query = query.limit(limit)
            return list(session.execute(query).scalars())

    def mark_processed(self, updates: Sequence[VendorOrder]) -> ProcessedStatusSummary:
        """
        Flag local orders processed when the vendor reports them processed.

        Writes only on an actual transition; `processed_at` keeps any value
        already stored, else takes the vendor's, else now.
        """
        summary = ProcessedStatusSummary()
        now = utc_naive(self._clock())

        for chunk in _chunks(list(updates), self.chunk_size):
            with self._write_lock or nullcontext(), self.session_factory() as session, session.begin():
                for update in chunk:
                    summary.checked += 1
                    existing = self.find_existing(session, update)
                    if existing is None:
                        summary.missing += 1
                        continue

                    if not update.is_processed or (existing.is_processed and not existing.is_open):
                        summary.unchanged += 1
                        continue

                    existing.is_processed = True
                    existing.is_open = False
                    if existing.processed_at is None:
                        existing.processed_at = utc_naive(update.processed_at) if update.processed_at else now
                    existing.sync_status = SyncStatus.processed_check.value
                    existing.updated_at = now
                    summary.marked += 1

        logger.info(
            "Processed status check applied",
            checked=summary.checked,
            marked=summary.marked,
            missing=summary.missing,
        )
        return summary
