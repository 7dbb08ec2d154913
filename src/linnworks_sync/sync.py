"""
Sync orchestration.

`OrderSyncRunner.run_sync()` is the single entry point for both the
scheduled and the manual trigger:

    token -> fetch open orders -> fetch processed orders
          -> import in chunks (progress after each) -> capture failures
          -> SyncCompleted (cache warming subscribes to it)

Only AuthError and store-level errors end a run early; dropped pages and
failed records are reported in the result instead.
"""

import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

import httpx
import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from linnworks_sync.cache import BoundedLRUCache
from linnworks_sync.client import ApiClient
from linnworks_sync.config import SyncSettings
from linnworks_sync.db import create_store
from linnworks_sync.events import (
    BatchProcessed,
    EventBus,
    SyncCompleted,
    SyncProgressUpdated,
    SyncStarted,
)
from linnworks_sync.exceptions import ApiError, AuthError
from linnworks_sync.importer import (
    ChunkReport,
    ImportSummary,
    OrderImportEngine,
    ProcessedStatusSummary,
)
from linnworks_sync.models import DateRange, OrderSource, ProcessedOrderFilters, utc_now
from linnworks_sync.pagination import FetchResult, PageProgress, PaginatedFetchOrchestrator
from linnworks_sync.rate_limiter import RateLimiter, SqlWindowStore
from linnworks_sync.recovery import FailedSyncRecovery, RecoverySweepResult
from linnworks_sync.retry import RetryExecutor
from linnworks_sync.session import SessionManager, SqlTokenStore
from linnworks_sync.state import StateManager
from linnworks_sync.telemetry import ProgressTelemetry, SyncProgressSnapshot
from linnworks_sync.warming import CacheWarmingOrchestrator, MetricsCalculator

logger = structlog.get_logger(__name__)

ORDERS_BY_ID_BATCH = 50


@dataclass
class SyncResult:
    run_id: str
    date_range: DateRange
    summary: ImportSummary = field(default_factory=ImportSummary)
    open_fetch: FetchResult | None = None
    processed_fetch: FetchResult | None = None
    skipped_exhausted: int = 0
    captured_failures: int = 0
    snapshot: SyncProgressSnapshot | None = None
    cancelled: bool = False
    error: str | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.error is None and self.summary.failed == 0 and not self.cancelled

    @property
    def failed_pages(self) -> int:
        return sum(len(f.failed_pages) for f in (self.open_fetch, self.processed_fetch) if f)


class OrderSyncRunner:
    """
    Wires the pipeline together and runs it.

    Example:
        runner = OrderSyncRunner.from_settings(load_config())
        result = runner.run_sync()
        print(result.summary.counts(), result.success)
    """

    def __init__(
        self,
        account_id: str,
        client: ApiClient,
        fetcher: PaginatedFetchOrchestrator,
        engine: OrderImportEngine,
        recovery: FailedSyncRecovery,
        bus: EventBus | None = None,
        telemetry: ProgressTelemetry | None = None,
        state: StateManager | None = None,
        warmer: CacheWarmingOrchestrator | None = None,
        max_open_orders: int = 1000,
        max_processed_orders: int = 5000,
        default_lookback_days: int = 30,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.account_id = account_id
        self.client = client
        self.fetcher = fetcher
        self.engine = engine
        self.recovery = recovery
        self.bus = bus or EventBus()
        self.telemetry = telemetry or ProgressTelemetry()
        self.state = state
        self.warmer = warmer
        self.max_open_orders = max_open_orders
        self.max_processed_orders = max_processed_orders
        self.default_lookback_days = default_lookback_days
        self._clock = clock

        self._runs = 0
        self._failed_runs = 0
        self._log = logger.bind(account_id=account_id)

    @classmethod
    def from_settings(
        cls,
        settings: SyncSettings,
        session_factory: sessionmaker | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        state: StateManager | None = None,
    ) -> "OrderSyncRunner":
        session_factory = session_factory or create_store(settings.database_url)

        limiter = RateLimiter(
            SqlWindowStore(session_factory),
            max_requests=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_seconds,
            key=f"linnworks:{settings.account_id}",
        )
        client = ApiClient(
            base_url=settings.base_url,
            rate_limiter=limiter,
            retry_executor=RetryExecutor(settings.backoff_schedule, settings.retry_after_cap, sleep=sleep),
            timeout=settings.timeout,
            max_rate_limit_wait=settings.max_rate_limit_wait,
            session_ttl_minutes=settings.session_ttl_minutes,
            transport=transport,
            sleep=sleep,
        )

        credentials = settings.credentials()
        client.sessions = SessionManager(
            client,
            {settings.account_id: credentials} if credentials else {},
            store=SqlTokenStore(session_factory),
            refresh_buffer=timedelta(minutes=settings.token_refresh_buffer_minutes),
        )

        engine = OrderImportEngine(
            session_factory,
            chunk_size=settings.batch_size,
            tracked_fields=settings.tracked_fields,
            workers=settings.import_workers,
        )
        bus = EventBus()
        warmer = CacheWarmingOrchestrator(
            bus,
            MetricsCalculator(session_factory),
            BoundedLRUCache(max_size=512, ttl_seconds=3600),
            periods=settings.warming_periods,
            channels=settings.warming_channels,
            statuses=settings.warming_statuses,
            debounce_seconds=settings.warming_debounce_seconds,
            workers=settings.warming_workers,
        )
        warmer.attach()

        return cls(
            account_id=settings.account_id,
            client=client,
            fetcher=PaginatedFetchOrchestrator(client, page_size=settings.page_size),
            engine=engine,
            recovery=FailedSyncRecovery(
                session_factory,
                engine,
                max_attempts=settings.recovery_max_attempts,
                backoff_hours=settings.recovery_backoff_hours,
            ),
            bus=bus,
            state=state or StateManager(settings.state_file),
            warmer=warmer,
            max_open_orders=settings.max_open_orders,
            max_processed_orders=settings.max_processed_orders,
            default_lookback_days=settings.default_lookback_days,
        )

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    def _progress(self, run_id: str, stage: str, message: str, count: int = 0) -> None:
        self._log.info(message, run_id=run_id, stage=stage, count=count)
        self.bus.publish(SyncProgressUpdated(run_id=run_id, stage=stage, message=message, count=count))

    def run_sync(
        self,
        date_range: DateRange | None = None,
        force_update: bool = False,
        cancel_event: threading.Event | None = None,
        filters: ProcessedOrderFilters | None = None,
    ) -> SyncResult:
        run_id = uuid.uuid4().hex
        date_range = date_range or DateRange.last_days(self.default_lookback_days, now=self._clock())
        result = SyncResult(run_id=run_id, date_range=date_range)
        log = self._log.bind(run_id=run_id)

        self._runs += 1
        checkpoint = self.state.load() if self.state else None
        if checkpoint is not None:
            checkpoint.begin_run(run_id, now=self._clock())
            self.state.save(checkpoint)

        log.info("Sync started", start=date_range.start.isoformat(), end=date_range.end.isoformat())
        self.bus.publish(SyncStarted(
            run_id=run_id, account_id=self.account_id, start=date_range.start, end=date_range.end,
        ))
        handle = self.telemetry.start(run_id)

        def on_page(progress: PageProgress) -> None:
            log.debug("Page progress", source=progress.source.value, page=progress.page_number,
                      fetched=progress.fetched)

        def on_chunk(report: ChunkReport) -> None:
            snapshot = self.telemetry.report_batch(
                handle, report.chunk_index, report.total_chunks, report.summary.counts()
            )
            result.snapshot = snapshot
            self.bus.publish(BatchProcessed(
                run_id=run_id,
                batch_index=snapshot.batch_index,
                total_batches=snapshot.total_batches,
                processed=snapshot.processed_count,
                created=snapshot.created_count,
                updated=snapshot.updated_count,
                failed=snapshot.failed_count,
                throughput_per_second=snapshot.throughput_per_second,
                eta_seconds=snapshot.eta_seconds,
            ))

        try:
            # Fail fast before touching any feed
            self.client.sessions.get_valid_token(self.account_id)

            self._progress(run_id, "fetching-open", "Fetching open orders")
            result.open_fetch = self.fetcher.fetch_all(
                self.account_id, date_range,
                max_items=self.max_open_orders,
                on_progress=on_page,
                source=OrderSource.OPEN,
                cancel_event=cancel_event,
            )

            self._progress(run_id, "fetching-processed", "Fetching processed orders")
            result.processed_fetch = self.fetcher.fetch_all(
                self.account_id, date_range,
                filters=filters,
                max_items=self.max_processed_orders,
                on_progress=on_page,
                source=OrderSource.PROCESSED,
                cancel_event=cancel_event,
            )

            for fetch in (result.open_fetch, result.processed_fetch):
                for failure in fetch.failed_pages:
                    result.errors.append(f"page {failure.page_number}: {failure.error.message}")

            orders = result.open_fetch.orders + result.processed_fetch.orders
            exhausted = self.recovery.exhausted_identifiers()
            if exhausted:
                kept = [o for o in orders if o.identifier not in exhausted]
                result.skipped_exhausted = len(orders) - len(kept)
                orders = kept

            result.cancelled = result.open_fetch.cancelled or result.processed_fetch.cancelled
            if not result.cancelled:
                self._progress(run_id, "importing", "Importing orders", count=len(orders))
                result.summary = self.engine.import_orders(
                    orders, force_update=force_update, on_chunk=on_chunk, cancel_event=cancel_event,
                )
                result.cancelled = result.summary.cancelled
                result.captured_failures = self.recovery.capture_failures(result.summary)
                result.errors.extend(
                    f"{r.identifier}: {r.error}" for r in result.summary.failures
                )

        except AuthError as e:
            result.error = str(e)
            log.error("Sync aborted: authentication failed", reason=e.reason.value)
        except SQLAlchemyError as e:
            result.error = f"Store error: {e}"
            log.error("Sync aborted: store error", error=str(e), exc_info=True)

        if not result.success:
            self._failed_runs += 1

        counts = result.summary.counts()
        log.info("Sync finished", success=result.success, cancelled=result.cancelled, **counts)
        self.bus.publish(SyncCompleted(
            run_id=run_id,
            processed=counts["processed"],
            created=counts["created"],
            updated=counts["updated"],
            failed=counts["failed"],
            success=result.success,
            error=result.error,
        ))

        if checkpoint is not None:
            checkpoint.latest_snapshot = result.snapshot.to_dict() if result.snapshot else None
            checkpoint.finish_run(
                result.success,
                counts,
                range_end=date_range.end,
                errors=([result.error] if result.error else []) + result.errors,
                now=self._clock(),
            )
            self.state.save(checkpoint)

        return result

    # -------------------------------------------------------------------------
    # Companion jobs
    # -------------------------------------------------------------------------

    def check_processed_orders(self, limit: int | None = None) -> ProcessedStatusSummary:
        """Ask the vendor about locally-open orders and mark the processed ones."""
        total = ProcessedStatusSummary()
        open_ids = self.engine.open_vendor_order_ids(limit=limit)
        self._log.info("Checking processed status", open_orders=len(open_ids))

        for start in range(0, len(open_ids), ORDERS_BY_ID_BATCH):
            batch = open_ids[start:start + ORDERS_BY_ID_BATCH]
            try:
                details = self.client.get_orders_by_id(self.account_id, batch)
            except ApiError as e:
                self._log.warning("Order lookup batch failed", batch_start=start, error=str(e))
                continue

            partial = self.engine.mark_processed(details)
            total.checked += partial.checked
            total.marked += partial.marked
            total.unchanged += partial.unchanged
            total.missing += partial.missing

        return total

    def retry_failed(self, limit: int = 50) -> RecoverySweepResult:
        return self.recovery.retry_due(limit=limit)

    def run_scheduled(
        self,
        interval_minutes: float,
        cancel_event: threading.Event | None = None,
        max_runs: int | None = None,
    ) -> int:
        """
        Run sync plus the recovery sweep every `interval_minutes` until cancelled.

        Returns the number of runs performed.
        """
        cancel_event = cancel_event or threading.Event()
        runs = 0

        while not cancel_event.is_set():
            self.run_sync(cancel_event=cancel_event)
            self.retry_failed()
            runs += 1

            if max_runs is not None and runs >= max_runs:
                break
            if cancel_event.wait(interval_minutes * 60):
                break

        self._log.info("Scheduler stopped", runs=runs)
        return runs

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "account_id": self.account_id,
            "runs": self._runs,
            "failed_runs": self._failed_runs,
            "client": self.client.get_stats(),
            "recovery": self.recovery.get_stats(),
            "events": self.bus.get_stats(),
        }
        if self.client.sessions is not None:
            stats["sessions"] = self.client.sessions.get_stats()
        if self.warmer is not None:
            stats["warming"] = self.warmer.get_stats()
        return stats

    def close(self) -> None:
        if self.warmer is not None:
            self.warmer.shutdown()
        self.client.close()

    def __enter__(self) -> "OrderSyncRunner":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
