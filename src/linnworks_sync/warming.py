"""
Post-sync cache warming.

When a sync completes, dashboard metrics for every (period, channel, status)
combination are recomputed in parallel as one named batch and stored in the
metrics cache. Rapid repeated completions inside the debounce window
collapse into one trailing batch that runs when the window closes, so the
last sync of a burst is always reflected.
"""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Sequence

import structlog
from sqlalchemy import case, func, select
from sqlalchemy.orm import sessionmaker

from linnworks_sync.cache import BoundedLRUCache
from linnworks_sync.db import Order, OrderItem, utc_naive
from linnworks_sync.events import (
    CachePeriodWarmed,
    CacheWarmingCompleted,
    CacheWarmingStarted,
    EventBus,
    SyncCompleted,
)
from linnworks_sync.models import utc_now

logger = structlog.get_logger(__name__)

BATCH_NAME = "warm-metrics-cache"
ALL = "all"


def metrics_cache_key(period_days: int, channel: str, status: str) -> str:
    return f"metrics_{period_days}d_{channel}_{status}"


class MetricsCalculator:
    """Aggregates order metrics straight from the store."""

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utc_now):
        self.session_factory = session_factory
        self._clock = clock

    def compute(self, period_days: int, channel: str = ALL, status: str = ALL) -> dict[str, Any]:
        now = self._clock()
        since = utc_naive(now - timedelta(days=period_days))

        filters = [Order.received_at >= since]
        if channel != ALL:
            filters.append(Order.channel == channel)
        if status == "open":
            filters.append(Order.is_open.is_(True))
        elif status == "processed":
            filters.append(Order.is_processed.is_(True))
        elif status == "cancelled":
            filters.append(Order.is_cancelled.is_(True))
        elif status != ALL:
            raise ValueError(f"Unknown status filter: {status}")

        with self.session_factory() as session:
            order_count, revenue, processed, open_count = session.execute(
                select(
                    func.count(Order.id),
                    func.coalesce(func.sum(Order.total_charge), 0.0),
                    func.coalesce(func.sum(case((Order.is_processed.is_(True), 1), else_=0)), 0),
                    func.coalesce(func.sum(case((Order.is_open.is_(True), 1), else_=0)), 0),
                ).where(*filters)
            ).one()

            items_sold = session.execute(
                select(func.coalesce(func.sum(OrderItem.quantity), 0))
                .join(Order, OrderItem.order_id == Order.id)
                .where(*filters)
            ).scalar_one()

        revenue = round(float(revenue), 2)
        return {
            "period_days": period_days,
            "channel": channel,
            "status": status,
            "order_count": int(order_count),
            "revenue": revenue,
            "items_sold": int(items_sold),
            "average_order_value": round(revenue / order_count, 2) if order_count else 0.0,
            "processed_count": int(processed),
            "open_count": int(open_count),
            "computed_at": now.isoformat(),
        }


@dataclass(frozen=True)
class WarmingTask:
    period_days: int
    channel: str
    status: str

    @property
    def cache_key(self) -> str:
        return metrics_cache_key(self.period_days, self.channel, self.status)


@dataclass
class WarmingBatch:
    name: str
    tasks: list[WarmingTask]
    futures: list[Future] = field(default_factory=list)
    warmed: int = 0
    failed: int = 0
    remaining: int = 0
    done: threading.Event = field(default_factory=threading.Event)


class CacheWarmingOrchestrator:
    """
    Fans out metric recomputation after each completed sync.

    The first completion dispatches immediately. Completions within
    `debounce_seconds` of that dispatch schedule a single trailing batch at
    the end of the window; further completions before it fires join it.

    Example:
        warmer = CacheWarmingOrchestrator(bus, MetricsCalculator(session_factory), cache)
        warmer.attach()
    """

    def __init__(
        self,
        bus: EventBus,
        calculator: MetricsCalculator,
        cache: BoundedLRUCache[str, dict[str, Any]],
        periods: Sequence[int] = (7, 30, 90),
        channels: Sequence[str] = (ALL,),
        statuses: Sequence[str] = (ALL, "open", "processed"),
        debounce_seconds: float = 30.0,
        workers: int = 4,
        cache_ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
        timer_factory: Callable[[float, Callable[[], None]], Any] = threading.Timer,
    ):
        self.bus = bus
        self.calculator = calculator
        self.cache = cache
        self.periods = tuple(periods)
        self.channels = tuple(channels)
        self.statuses = tuple(statuses)
        self.debounce_seconds = debounce_seconds
        self.workers = max(1, workers)
        self.cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock
        self._timer_factory = timer_factory

        self._lock = threading.Lock()
        self._last_dispatch: float | None = None
        self._trailing: Any = None
        self._executor: ThreadPoolExecutor | None = None
        self._current: WarmingBatch | None = None
        self._unsubscribe: Callable[[], None] | None = None

        self._dispatched = 0
        self._debounced = 0
        self._trailing_dispatches = 0

    def attach(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.bus.subscribe(SyncCompleted, self.on_sync_completed)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def on_sync_completed(self, event: SyncCompleted) -> None:
        self.trigger(reason=event.run_id)

    def build_tasks(self) -> list[WarmingTask]:
        return [
            WarmingTask(period_days=period, channel=channel, status=status)
            for period in self.periods
            for channel in self.channels
            for status in self.statuses
        ]

    def trigger(self, reason: str | None = None) -> WarmingBatch | None:
        """
        Dispatch a warming batch now, or fold the request into the trailing
        batch when one went out within the debounce window.
        """
        with self._lock:
            now = self._clock()
            if self._last_dispatch is not None and now - self._last_dispatch < self.debounce_seconds:
                self._debounced += 1
                delay = self._last_dispatch + self.debounce_seconds - now
                if self._trailing is None:
                    self._trailing = self._timer_factory(delay, self._fire_trailing)
                    self._trailing.daemon = True
                    self._trailing.start()
                logger.debug(
                    "Cache warming debounced",
                    reason=reason,
                    trailing_in_seconds=round(delay, 2),
                )
                return None
            self._last_dispatch = now
            self._dispatched += 1
            # This batch already covers anything the pending one would
            pending, self._trailing = self._trailing, None

        if pending is not None:
            pending.cancel()
        return self._dispatch(reason)

    def _fire_trailing(self) -> None:
        with self._lock:
            if self._trailing is None:
                return
            self._trailing = None
            self._last_dispatch = self._clock()
            self._dispatched += 1
            self._trailing_dispatches += 1

        self._dispatch("trailing")

    def _dispatch(self, reason: str | None) -> WarmingBatch:
        tasks = self.build_tasks()
        batch = WarmingBatch(name=BATCH_NAME, tasks=tasks, remaining=len(tasks))

        logger.info("Cache warming dispatched", batch=batch.name, tasks=len(tasks), reason=reason)
        self.bus.publish(CacheWarmingStarted(batch_name=batch.name, task_count=len(tasks)))

        with self._lock:
            self._current = batch
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="warm")
            executor = self._executor

        if not tasks:
            self._finish(batch)
            return batch

        for task in tasks:
            future = executor.submit(self._warm, task)
            future.add_done_callback(lambda f, b=batch: self._task_done(b, f))
            batch.futures.append(future)

        return batch

    def _warm(self, task: WarmingTask) -> dict[str, Any]:
        metrics = self.calculator.compute(task.period_days, task.channel, task.status)
        self.cache.set(task.cache_key, metrics, ttl_seconds=self.cache_ttl_seconds)
        self.bus.publish(CachePeriodWarmed(
            cache_key=task.cache_key,
            period_days=task.period_days,
            channel=task.channel,
            status=task.status,
        ))
        return metrics

    def _task_done(self, batch: WarmingBatch, future: Future) -> None:
        error = future.exception()
        with self._lock:
            if error is None:
                batch.warmed += 1
            else:
                batch.failed += 1
            batch.remaining -= 1
            finished = batch.remaining == 0

        if error is not None:
            logger.warning("Cache warming task failed", batch=batch.name, error=str(error))
        if finished:
            self._finish(batch)

    def _finish(self, batch: WarmingBatch) -> None:
        try:
            logger.info("Cache warming complete", batch=batch.name, warmed=batch.warmed, failed=batch.failed)
            self.bus.publish(CacheWarmingCompleted(
                batch_name=batch.name, warmed=batch.warmed, failed=batch.failed,
            ))
        finally:
            batch.done.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the most recent batch has finished. Returns False on timeout."""
        batch = self._current
        if batch is None:
            return True
        wait(batch.futures, timeout=timeout)
        return batch.done.wait(timeout)

    def get_cached(self, period_days: int, channel: str = ALL, status: str = ALL) -> dict[str, Any] | None:
        return self.cache.get(metrics_cache_key(period_days, channel, status))

    def shutdown(self) -> None:
        self.detach()
        with self._lock:
            executor, self._executor = self._executor, None
            pending, self._trailing = self._trailing, None
        if pending is not None:
            pending.cancel()
        if executor is not None:
            executor.shutdown(wait=True)

    def get_stats(self) -> dict[str, Any]:
        return {
            "dispatched": self._dispatched,
            "debounced": self._debounced,
            "trailing": self._trailing_dispatches,
            "trailing_pending": self._trailing is not None,
            "combinations": len(self.periods) * len(self.channels) * len(self.statuses),
            "cache": self.cache.get_stats(),
        }
