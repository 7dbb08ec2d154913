"""
Session token lifecycle.

One token per account, exchanged from application credentials and shared by
every worker. A token is handed out only while `now < expires_at - buffer`;
past that it is replaced, never edited. Replacement goes through the store's
compare-and-swap so two workers refreshing at once can't clobber each other.
"""

import threading
from datetime import datetime, timedelta
from typing import Callable, Protocol

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from linnworks_sync.cache import BoundedLRUCache
from linnworks_sync.db import SessionTokenRow, utc_naive
from linnworks_sync.exceptions import ApiError, AuthError, AuthFailure
from linnworks_sync.models import ApiCredentials, SessionToken, ensure_utc, utc_now

logger = structlog.get_logger(__name__)


class TokenStore(Protocol):
    def get(self, account_id: str) -> SessionToken | None: ...

    def replace(self, account_id: str, expected: SessionToken | None, new: SessionToken) -> bool:
        """Store `new` only if the current entry is still `expected`."""
        ...

    def delete(self, account_id: str) -> None: ...


class MemoryTokenStore:
    """In-process store on top of the bounded TTL cache."""

    def __init__(self, max_accounts: int = 100):
        self._cache: BoundedLRUCache[str, SessionToken] = BoundedLRUCache(
            max_size=max_accounts, ttl_seconds=0
        )
        self._lock = threading.Lock()

    def get(self, account_id: str) -> SessionToken | None:
        return self._cache.get(account_id)

    def replace(self, account_id: str, expected: SessionToken | None, new: SessionToken) -> bool:
        with self._lock:
            current = self._cache.get(account_id)
            current_token = current.token if current else None
            expected_token = expected.token if expected else None
            if current_token != expected_token:
                return False

            # Cache TTL tracks the vendor lifetime, clamped to [60s, 30min]
            ttl = (new.expires_at - utc_now()).total_seconds()
            self._cache.set(account_id, new, ttl_seconds=max(60.0, min(1800.0, ttl)))
            return True

    def delete(self, account_id: str) -> None:
        self._cache.invalidate(account_id)


class SqlTokenStore:
    """Store on the `session_tokens` table, shared across processes."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get(self, account_id: str) -> SessionToken | None:
        with self._session_factory() as session:
            row = session.get(SessionTokenRow, account_id)
            if row is None:
                return None
            return SessionToken(
                token=row.token,
                server_host=row.server_host,
                expires_at=ensure_utc(row.expires_at),
                account_id=row.account_id,
            )

    def replace(self, account_id: str, expected: SessionToken | None, new: SessionToken) -> bool:
        values = {
            "token": new.token,
            "server_host": new.server_host,
            "expires_at": utc_naive(new.expires_at),
        }
        try:
            with self._session_factory() as session, session.begin():
                if expected is None:
                    existing = session.execute(
                        select(SessionTokenRow.account_id).where(SessionTokenRow.account_id == account_id)
                    ).first()
                    if existing is not None:
                        return False
                    session.add(SessionTokenRow(account_id=account_id, **values))
                    return True

                result = session.execute(
                    update(SessionTokenRow)
                    .where(SessionTokenRow.account_id == account_id)
                    .where(SessionTokenRow.token == expected.token)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1
        except IntegrityError:
            return False

    def delete(self, account_id: str) -> None:
        with self._session_factory() as session, session.begin():
            session.execute(delete(SessionTokenRow).where(SessionTokenRow.account_id == account_id))


class Authenticator(Protocol):
    def authorize(self, credentials: ApiCredentials, account_id: str) -> SessionToken: ...


class SessionManager:
    """
    Hands out valid session tokens.

    Does not retry on its own: callers wrap whatever needs the token in the
    RetryExecutor.

    Example:
        sessions = SessionManager(client, {"default": credentials})
        token = sessions.get_valid_token("default")
    """

    def __init__(
        self,
        authenticator: Authenticator,
        credentials: dict[str, ApiCredentials] | None = None,
        store: TokenStore | None = None,
        refresh_buffer: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utc_now,
    ):
        self.authenticator = authenticator
        self.credentials = dict(credentials or {})
        self.store = store or MemoryTokenStore()
        self.refresh_buffer = refresh_buffer
        self._clock = clock

        self._refresh_count = 0
        self._refresh_failures = 0

    def _is_usable(self, token: SessionToken | None) -> bool:
        return token is not None and not token.is_expiring_soon(self.refresh_buffer, now=self._clock())

    def get_valid_token(self, account_id: str) -> SessionToken:
        """
        Return a token usable for at least `refresh_buffer` more.

        Raises:
            AuthError(NO_CONNECTION): no credentials for the account
            AuthError(REFRESH_FAILED): the vendor rejected the exchange
        """
        log = logger.bind(account_id=account_id)

        cached = self.store.get(account_id)
        if self._is_usable(cached):
            return cached

        credentials = self.credentials.get(account_id)
        if credentials is None:
            raise AuthError(AuthFailure.NO_CONNECTION, account_id)

        log.info("Refreshing session token", had_token=cached is not None)

        try:
            fresh = self.authenticator.authorize(credentials, account_id)
        except (ApiError, ValueError) as e:
            self._refresh_failures += 1
            log.error("Session token refresh failed", error=str(e))
            raise AuthError(AuthFailure.REFRESH_FAILED, account_id, detail=str(e)) from e

        self._refresh_count += 1

        if not self.store.replace(account_id, cached, fresh):
            # Another worker refreshed first; prefer theirs if it is usable
            winner = self.store.get(account_id)
            if self._is_usable(winner):
                log.debug("Concurrent refresh won by another worker")
                return winner
            self.store.delete(account_id)
            self.store.replace(account_id, None, fresh)

        log.info("Session token refreshed", server=fresh.server_host, expires_at=fresh.expires_at.isoformat())
        return fresh

    def invalidate(self, account_id: str) -> None:
        """Drop the cached token (after a 401/403 on a data call)."""
        self.store.delete(account_id)
        logger.info("Session token invalidated", account_id=account_id)

    def has_credentials(self, account_id: str) -> bool:
        return account_id in self.credentials

    def get_stats(self) -> dict:
        return {
            "accounts": len(self.credentials),
            "refreshes": self._refresh_count,
            "refresh_failures": self._refresh_failures,
        }
