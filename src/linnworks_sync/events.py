"""
In-process event bus.

Events are fire-and-forget notifications for whatever presentation layer is
listening. A failing handler is logged and never affects the publisher.
"""

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, TypeVar

import structlog

from linnworks_sync.models import utc_now

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Event:
    occurred_at: datetime = field(default_factory=utc_now, kw_only=True)


@dataclass(frozen=True)
class SyncStarted(Event):
    run_id: str
    account_id: str
    start: datetime
    end: datetime


@dataclass(frozen=True)
class SyncProgressUpdated(Event):
    run_id: str
    stage: str
    message: str
    count: int = 0


@dataclass(frozen=True)
class BatchProcessed(Event):
    run_id: str
    batch_index: int
    total_batches: int
    processed: int
    created: int
    updated: int
    failed: int
    throughput_per_second: float
    eta_seconds: float | None


@dataclass(frozen=True)
class SyncCompleted(Event):
    run_id: str
    processed: int
    created: int
    updated: int
    failed: int
    success: bool
    error: str | None = None


@dataclass(frozen=True)
class CacheWarmingStarted(Event):
    batch_name: str
    task_count: int


@dataclass(frozen=True)
class CachePeriodWarmed(Event):
    cache_key: str
    period_days: int
    channel: str
    status: str


@dataclass(frozen=True)
class CacheWarmingCompleted(Event):
    batch_name: str
    warmed: int
    failed: int


E = TypeVar("E", bound=Event)


class EventBus:
    """
    Synchronous publish/subscribe keyed by event class.

    Example:
        bus = EventBus()
        bus.subscribe(SyncCompleted, lambda e: print(e.success))
        bus.publish(SyncCompleted(run_id="r1", processed=1, ...))
    """

    def __init__(self):
        self._handlers: dict[type, list[Callable[[Any], None]]] = defaultdict(list)
        self._lock = threading.Lock()
        self._published = 0
        self._handler_errors = 0

    def subscribe(self, event_type: type[E], handler: Callable[[E], None]) -> Callable[[], None]:
        """Register a handler; returns a callable that unsubscribes it."""
        with self._lock:
            self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers[event_type]:
                    self._handlers[event_type].remove(handler)

        return unsubscribe

    def publish(self, event: Event) -> None:
        with self._lock:
            handlers = list(self._handlers.get(type(event), ()))
            self._published += 1

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                self._handler_errors += 1
                logger.warning(
                    "Event handler failed",
                    event_type=type(event).__name__,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    exc_info=True,
                )

    def get_stats(self) -> dict[str, int]:
        return {"published": self._published, "handler_errors": self._handler_errors}

