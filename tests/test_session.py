"""
Tests for session token lifecycle.
"""

import pytest
from datetime import timedelta

from linnworks_sync.exceptions import AuthError, AuthFailure, ClientError
from linnworks_sync.models import ApiCredentials, SessionToken, utc_now
from linnworks_sync.session import MemoryTokenStore, SessionManager, SqlTokenStore


CREDENTIALS = ApiCredentials(
    application_id="app-123", application_secret="secret", installation_token="install",
)


class StubAuthenticator:
    """Hands out sequential tokens; optionally fails or runs a hook first."""

    def __init__(self, now, lifetime=timedelta(hours=1), error=None):
        self.now = now
        self.lifetime = lifetime
        self.error = error
        self.calls = 0
        self.before_return = None

    def authorize(self, credentials, account_id):
        self.calls += 1
        if self.error is not None:
            raise self.error
        token = SessionToken(
            token=f"token-{self.calls}",
            server_host="eu-ext.linnworks.net",
            expires_at=self.now() + self.lifetime,
            account_id=account_id,
        )
        if self.before_return is not None:
            self.before_return()
        return token


@pytest.fixture(params=["memory", "sql"])
def token_store(request, session_factory):
    if request.param == "memory":
        return MemoryTokenStore()
    return SqlTokenStore(session_factory)


@pytest.fixture
def clock(date_clock):
    date_clock.now = utc_now()
    return date_clock


class TestSessionManager:
    """Tests for SessionManager.get_valid_token."""

    def test_first_call_exchanges_credentials(self, token_store, clock):
        auth = StubAuthenticator(clock)
        sessions = SessionManager(auth, {"default": CREDENTIALS}, store=token_store, clock=clock)

        token = sessions.get_valid_token("default")

        assert token.token == "token-1"
        assert auth.calls == 1

    def test_cached_token_reused(self, token_store, clock):
        auth = StubAuthenticator(clock)
        sessions = SessionManager(auth, {"default": CREDENTIALS}, store=token_store, clock=clock)

        first = sessions.get_valid_token("default")
        second = sessions.get_valid_token("default")

        assert first.token == second.token
        assert auth.calls == 1

    def test_refreshes_inside_buffer(self, token_store, clock):
        """Test a token inside the refresh buffer is replaced, not used."""
        auth = StubAuthenticator(clock, lifetime=timedelta(minutes=10))
        sessions = SessionManager(
            auth, {"default": CREDENTIALS}, store=token_store,
            refresh_buffer=timedelta(minutes=5), clock=clock,
        )
        sessions.get_valid_token("default")

        clock.advance(minutes=6)
        token = sessions.get_valid_token("default")

        assert token.token == "token-2"
        assert token_store.get("default").token == "token-2"

    def test_no_credentials(self, token_store, clock):
        sessions = SessionManager(StubAuthenticator(clock), {}, store=token_store, clock=clock)

        with pytest.raises(AuthError) as exc_info:
            sessions.get_valid_token("default")

        assert exc_info.value.reason is AuthFailure.NO_CONNECTION

    def test_rejected_exchange(self, token_store, clock):
        auth = StubAuthenticator(clock, error=ClientError("Invalid application", status_code=400))
        sessions = SessionManager(auth, {"default": CREDENTIALS}, store=token_store, clock=clock)

        with pytest.raises(AuthError) as exc_info:
            sessions.get_valid_token("default")

        assert exc_info.value.reason is AuthFailure.REFRESH_FAILED
        assert sessions.get_stats()["refresh_failures"] == 1

    def test_concurrent_refresh_prefers_winner(self, token_store, clock):
        """Test losing the compare-and-swap hands back the other worker's token."""
        auth = StubAuthenticator(clock)
        sessions = SessionManager(auth, {"default": CREDENTIALS}, store=token_store, clock=clock)
        winner = SessionToken(
            token="other-worker",
            server_host="eu-ext.linnworks.net",
            expires_at=clock() + timedelta(hours=1),
            account_id="default",
        )
        auth.before_return = lambda: token_store.replace("default", None, winner)

        token = sessions.get_valid_token("default")

        assert token.token == "other-worker"
        assert token_store.get("default").token == "other-worker"

    def test_invalidate(self, token_store, clock):
        auth = StubAuthenticator(clock)
        sessions = SessionManager(auth, {"default": CREDENTIALS}, store=token_store, clock=clock)
        sessions.get_valid_token("default")

        sessions.invalidate("default")
        sessions.get_valid_token("default")

        assert auth.calls == 2


class TestTokenStores:
    """Tests for compare-and-swap semantics of the stores."""

    def _token(self, value, clock):
        return SessionToken(
            token=value, server_host="h", expires_at=clock() + timedelta(hours=1), account_id="default",
        )

    def test_replace_requires_expected(self, token_store, clock):
        first = self._token("a", clock)
        assert token_store.replace("default", None, first) is True

        # A second "create" loses: the slot is no longer empty
        assert token_store.replace("default", None, self._token("b", clock)) is False
        # Stale expectation loses
        assert token_store.replace("default", self._token("zzz", clock), self._token("c", clock)) is False
        # Correct expectation wins
        assert token_store.replace("default", first, self._token("d", clock)) is True
        assert token_store.get("default").token == "d"

    def test_delete(self, token_store, clock):
        token_store.replace("default", None, self._token("a", clock))
        token_store.delete("default")
        assert token_store.get("default") is None

    def test_sql_store_round_trips_expiry(self, session_factory, clock):
        store = SqlTokenStore(session_factory)
        token = self._token("a", clock)
        store.replace("default", None, token)

        loaded = store.get("default")

        assert loaded.expires_at == token.expires_at
        assert loaded.expires_at.tzinfo is not None
