"""
Unit tests for social.graze.atoauth.atproto.refresh and token

Tests cover freshness checks, the refresh token grant, handling of rejected
refresh tokens, and token response verification.
"""

from datetime import datetime, timedelta, timezone

import pytest

from social.graze.atoauth.app.metrics import NoOpMetricsClient
from social.graze.atoauth.atproto.errors import (
    PersistenceError,
    SessionExpiredError,
    SessionNotFoundError,
    TokenExchangeError,
    TransientNetworkError,
)
from social.graze.atoauth.atproto.locks import MemoryKeyedLock
from social.graze.atoauth.atproto.refresh import TokenRefresher
from social.graze.atoauth.atproto.token import TokenResponse
from social.graze.atoauth.stores.memory import MemorySessionStore

from tests.test_helpers import (
    ALICE_DID,
    TOKEN_ENDPOINT,
    FakeHttpSession,
    FakeResponse,
    make_key_set,
    make_session,
    token_body,
)

CLIENT_ID = "https://app.example.com/client-metadata.json"


class FailingSessionStore(MemorySessionStore):
    def __init__(self):
        super().__init__()
        self.fail_writes = False

    async def set(self, sub, session):
        if self.fail_writes:
            raise ConnectionError("store unavailable")
        await super().set(sub, session)


def build_refresher(http_session, session_store, refresh_margin=60):
    return TokenRefresher(
        client_id=CLIENT_ID,
        signing_algorithms=["ES256"],
        key_set=make_key_set("0"),
        http_session=http_session,
        session_store=session_store,
        lock=MemoryKeyedLock(),
        metrics_client=NoOpMetricsClient(),
        dpop_nonces={},
        refresh_margin=refresh_margin,
    )


class TestIsFresh:
    """Test suite for TokenRefresher.is_fresh."""

    def test_fresh_and_stale(self):
        """Test tokens expiring within the margin are stale."""
        refresher = build_refresher(FakeHttpSession(), MemorySessionStore(), refresh_margin=60)
        now = datetime.now(timezone.utc)

        assert refresher.is_fresh(make_session(expires_in=3600), now)
        assert not refresher.is_fresh(make_session(expires_in=30), now)
        assert not refresher.is_fresh(make_session(expires_in=-30), now)

    def test_unknown_expiry_is_fresh(self):
        """Test tokens without an expiry are never refreshed on restore."""
        refresher = build_refresher(FakeHttpSession(), MemorySessionStore())
        assert refresher.is_fresh(make_session(expires_in=None))


class TestEnsureFresh:
    """Test suite for TokenRefresher.ensure_fresh."""

    async def test_fresh_session_makes_no_request(self):
        """Test a fresh session is returned without a network call."""
        http_session = FakeHttpSession()
        session = make_session()

        result = await build_refresher(http_session, MemorySessionStore()).ensure_fresh(session)

        assert result is session
        assert http_session.calls == []

    async def test_refresh(self):
        """Test a stale session is refreshed and stored."""
        http_session = FakeHttpSession()
        http_session.add("POST", TOKEN_ENDPOINT, FakeResponse(json_body=token_body()))
        session_store = MemorySessionStore()
        session = make_session(expires_in=10)
        await session_store.set(ALICE_DID, session)

        refreshed = await build_refresher(http_session, session_store).ensure_fresh(session)

        assert refreshed.access_token == "access-1"
        assert refreshed.refresh_token == "refresh-1"
        assert refreshed.dpop_jwk == session.dpop_jwk
        assert refreshed.created_at == session.created_at
        assert (await session_store.get(ALICE_DID)).access_token == "access-1"

        data = http_session.calls[0].data
        assert data["grant_type"] == "refresh_token"
        assert data["refresh_token"] == "refresh-0"
        assert data["client_id"] == CLIENT_ID
        assert "DPoP" in http_session.calls[0].headers

    async def test_refresh_keeps_refresh_token(self):
        """Test the old refresh token is kept when none is issued."""
        http_session = FakeHttpSession()
        http_session.add(
            "POST", TOKEN_ENDPOINT, FakeResponse(json_body=token_body(refresh_token=None))
        )
        session_store = MemorySessionStore()
        session = make_session(expires_in=10)
        await session_store.set(ALICE_DID, session)

        refreshed = await build_refresher(http_session, session_store).ensure_fresh(session)

        assert refreshed.refresh_token == "refresh-0"

    async def test_forced_refresh(self):
        """Test force refreshes a session that is still fresh."""
        http_session = FakeHttpSession()
        http_session.add("POST", TOKEN_ENDPOINT, FakeResponse(json_body=token_body()))
        session_store = MemorySessionStore()
        session = make_session()
        await session_store.set(ALICE_DID, session)

        refreshed = await build_refresher(http_session, session_store).ensure_fresh(
            session, force=True
        )

        assert refreshed.access_token == "access-1"
        assert len(http_session.calls) == 1

    async def test_deleted_while_waiting(self):
        """Test a session removed from the store is not refreshed."""
        http_session = FakeHttpSession()

        with pytest.raises(SessionNotFoundError):
            await build_refresher(http_session, MemorySessionStore()).ensure_fresh(
                make_session(expires_in=10)
            )
        assert http_session.calls == []

    async def test_already_refreshed(self):
        """Test a session refreshed by another caller is returned from the store."""
        http_session = FakeHttpSession()
        session_store = MemorySessionStore()
        stale = make_session(expires_in=10)
        await session_store.set(ALICE_DID, make_session(access_token="access-9"))

        result = await build_refresher(http_session, session_store).ensure_fresh(stale)

        assert result.access_token == "access-9"
        assert http_session.calls == []

    async def test_no_refresh_token(self):
        """Test a stale session without a refresh token expires and is deleted."""
        session_store = MemorySessionStore()
        session = make_session(expires_in=10, refresh_token=None)
        await session_store.set(ALICE_DID, session)

        with pytest.raises(SessionExpiredError):
            await build_refresher(FakeHttpSession(), session_store).ensure_fresh(session)
        assert await session_store.get(ALICE_DID) is None

    async def test_invalid_grant(self):
        """Test a rejected refresh token expires and deletes the session."""
        http_session = FakeHttpSession()
        http_session.add(
            "POST",
            TOKEN_ENDPOINT,
            FakeResponse(status=400, json_body={"error": "invalid_grant"}),
        )
        session_store = MemorySessionStore()
        session = make_session(expires_in=10)
        await session_store.set(ALICE_DID, session)

        with pytest.raises(SessionExpiredError):
            await build_refresher(http_session, session_store).ensure_fresh(session)
        assert await session_store.get(ALICE_DID) is None

    async def test_other_rejection_keeps_session(self):
        """Test other token errors propagate and keep the session."""
        http_session = FakeHttpSession()
        http_session.add(
            "POST",
            TOKEN_ENDPOINT,
            FakeResponse(status=401, json_body={"error": "invalid_client"}),
        )
        session_store = MemorySessionStore()
        session = make_session(expires_in=10)
        await session_store.set(ALICE_DID, session)

        with pytest.raises(TokenExchangeError) as exc_info:
            await build_refresher(http_session, session_store).ensure_fresh(session)
        assert exc_info.value.error == "invalid_client"
        assert await session_store.get(ALICE_DID) is not None

    async def test_server_error_is_transient(self):
        """Test a token endpoint 5xx is retryable and keeps the session."""
        http_session = FakeHttpSession()
        http_session.add("POST", TOKEN_ENDPOINT, FakeResponse(status=502, text_body="bad gateway"))
        session_store = MemorySessionStore()
        session = make_session(expires_in=10)
        await session_store.set(ALICE_DID, session)

        with pytest.raises(TransientNetworkError):
            await build_refresher(http_session, session_store).ensure_fresh(session)
        assert await session_store.get(ALICE_DID) is not None

    async def test_subject_mismatch(self):
        """Test a refreshed token for another subject is rejected."""
        http_session = FakeHttpSession()
        http_session.add(
            "POST", TOKEN_ENDPOINT, FakeResponse(json_body=token_body(sub="did:example:bob"))
        )
        session_store = MemorySessionStore()
        session = make_session(expires_in=10)
        await session_store.set(ALICE_DID, session)

        with pytest.raises(TokenExchangeError):
            await build_refresher(http_session, session_store).ensure_fresh(session)
        assert (await session_store.get(ALICE_DID)).access_token == "access-0"

    async def test_persistence_failure(self):
        """Test a failed store write surfaces as PersistenceError."""
        http_session = FakeHttpSession()
        http_session.add("POST", TOKEN_ENDPOINT, FakeResponse(json_body=token_body()))
        session_store = FailingSessionStore()
        session = make_session(expires_in=10)
        await session_store.set(ALICE_DID, session)
        session_store.fail_writes = True

        with pytest.raises(PersistenceError):
            await build_refresher(http_session, session_store).ensure_fresh(session)


class TestTokenResponse:
    """Test suite for TokenResponse.verify."""

    def test_valid(self):
        """Test a DPoP atproto token for the subject verifies."""
        TokenResponse.model_validate(token_body()).verify(ALICE_DID)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"token_type": "Bearer"},
            {"sub": "did:example:bob"},
            {"scope": "transition:generic"},
        ],
    )
    def test_unusable(self, overrides):
        """Test bearer tokens, other subjects and missing scopes are rejected."""
        token = TokenResponse.model_validate(token_body(**overrides))
        with pytest.raises(TokenExchangeError):
            token.verify(ALICE_DID)

    def test_expires_at(self):
        """Test expiry is computed from expires_in."""
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert TokenResponse.model_validate(token_body(expires_in=60)).expires_at(
            now
        ) == now + timedelta(seconds=60)
        assert TokenResponse.model_validate(token_body(expires_in=None)).expires_at(now) is None
