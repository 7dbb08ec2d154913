"""
Fixed-window rate limiter shared across workers.

Linnworks enforces its quota per application, not per process, so the
request counter lives in a store every worker can see. Windows are aligned
to wall-clock epochs (a 60s window always starts on a whole minute) and
reset atomically; the counter is never decayed.

`acquire()` never blocks. When the window is full it returns a wait hint
and the caller decides whether to sleep, requeue or give up.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol

import structlog
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from linnworks_sync.db import RateLimitWindow

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of one acquire attempt. Truthy when the request may proceed."""
    permitted: bool
    wait_seconds: float = 0.0
    count: int = 0

    def __bool__(self) -> bool:
        return self.permitted


@dataclass
class RateLimiterStats:
    """Statistics for monitoring rate limiter behavior."""
    requests_permitted: int = 0
    requests_denied: int = 0
    last_wait_hint: float = 0.0


class WindowStore(Protocol):
    def increment(self, key: str, limit: int, window_seconds: int, now: float) -> RateLimitDecision:
        """Atomically count one request in the current window if under `limit`."""
        ...

    def reset(self, key: str) -> None:
        ...


def window_bounds(now: float, window_seconds: int) -> tuple[float, float]:
    start = math.floor(now / window_seconds) * window_seconds
    return start, start + window_seconds


class MemoryWindowStore:
    """Single-process store. Shared by threads, not by processes."""

    def __init__(self):
        self._windows: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()

    def increment(self, key: str, limit: int, window_seconds: int, now: float) -> RateLimitDecision:
        _, window_end = window_bounds(now, window_seconds)

        with self._lock:
            count, expires_at = self._windows.get(key, (0, 0.0))
            if expires_at <= now:
                count, expires_at = 0, window_end

            if count >= limit:
                return RateLimitDecision(False, wait_seconds=max(0.0, expires_at - now), count=count)

            self._windows[key] = (count + 1, expires_at)
            return RateLimitDecision(True, count=count + 1)

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)


class SqlWindowStore:
    """
    Store backed by the `rate_limit_windows` table.

    Every mutation is a conditional UPDATE, so concurrent workers can't
    both take the last slot or both reset an expired window.
    """

    MAX_INSERT_RACES = 3

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def increment(self, key: str, limit: int, window_seconds: int, now: float) -> RateLimitDecision:
        _, window_end = window_bounds(now, window_seconds)

        for _ in range(self.MAX_INSERT_RACES):
            with self._session_factory() as session, session.begin():
                # Expired window: whoever flips it first takes slot 1
                reset = session.execute(
                    update(RateLimitWindow)
                    .where(RateLimitWindow.window_key == key)
                    .where(RateLimitWindow.window_expires_at <= now)
                    .values(count=1, window_expires_at=window_end)
                    .execution_options(synchronize_session=False)
                )
                if reset.rowcount == 1:
                    return RateLimitDecision(True, count=1)

                bumped = session.execute(
                    update(RateLimitWindow)
                    .where(RateLimitWindow.window_key == key)
                    .where(RateLimitWindow.window_expires_at > now)
                    .where(RateLimitWindow.count < limit)
                    .values(count=RateLimitWindow.count + 1)
                    .execution_options(synchronize_session=False)
                )
                if bumped.rowcount == 1:
                    row = session.execute(
                        select(RateLimitWindow.count).where(RateLimitWindow.window_key == key)
                    ).scalar_one()
                    return RateLimitDecision(True, count=row)

                current = session.execute(
                    select(RateLimitWindow).where(RateLimitWindow.window_key == key)
                ).scalar_one_or_none()

                if current is not None:
                    return RateLimitDecision(
                        False,
                        wait_seconds=max(0.0, current.window_expires_at - now),
                        count=current.count,
                    )

            if limit <= 0:
                return RateLimitDecision(False, wait_seconds=max(0.0, window_end - now))

            try:
                with self._session_factory() as session, session.begin():
                    session.execute(
                        insert(RateLimitWindow).values(
                            window_key=key, count=1, window_expires_at=window_end
                        )
                    )
                return RateLimitDecision(True, count=1)
            except IntegrityError:
                # Another worker created the row first; go round again
                logger.debug("Rate limit window insert raced", key=key)

        return RateLimitDecision(False, wait_seconds=max(0.0, window_end - now))

    def reset(self, key: str) -> None:
        with self._session_factory() as session, session.begin():
            row = session.get(RateLimitWindow, key)
            if row is not None:
                session.delete(row)


class RateLimiter:
    """
    Gate for outbound vendor requests.

    Example:
        limiter = RateLimiter(SqlWindowStore(session_factory), max_requests=150)

        decision = limiter.acquire()
        if not decision:
            time.sleep(decision.wait_seconds)
    """

    def __init__(
        self,
        store: WindowStore | None = None,
        max_requests: int = 150,
        window_seconds: int = 60,
        key: str = "linnworks:api",
        clock: Callable[[], float] = time.time,
    ):
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.store = store or MemoryWindowStore()
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.key = key
        self._clock = clock
        self.stats = RateLimiterStats()

    def acquire(self) -> RateLimitDecision:
        decision = self.store.increment(self.key, self.max_requests, self.window_seconds, self._clock())

        if decision.permitted:
            self.stats.requests_permitted += 1
        else:
            self.stats.requests_denied += 1
            self.stats.last_wait_hint = decision.wait_seconds
            logger.debug(
                "Rate limit window full",
                key=self.key,
                count=decision.count,
                wait_seconds=round(decision.wait_seconds, 2),
            )

        return decision

    def reset(self) -> None:
        self.store.reset(self.key)

    def get_stats(self) -> dict:
        """Get rate limiter statistics for monitoring."""
        return {
            "key": self.key,
            "requests_permitted": self.stats.requests_permitted,
            "requests_denied": self.stats.requests_denied,
            "last_wait_hint_seconds": round(self.stats.last_wait_hint, 2),
            "max_requests": self.max_requests,
            "window_seconds": self.window_seconds,
        }
