"""
Access token refresh.

A session whose access token is about to expire is refreshed with its refresh
token before it is handed back to the caller. Refreshes are single flight per
subject: concurrent callers wait on the subject's lock, then find the record
another caller already refreshed in the store.
"""

from datetime import datetime, timedelta, timezone
import logging
from typing import Dict, Optional, Sequence, Union

from aiohttp import ClientSession

from social.graze.atoauth.app.metrics import MetricsClient
from social.graze.atoauth.atproto.errors import (
    PersistenceError,
    SessionExpiredError,
    SessionNotFoundError,
    TokenExchangeError,
)
from social.graze.atoauth.atproto.keyset import KeySet
from social.graze.atoauth.atproto.locks import KeyedLock
from social.graze.atoauth.atproto.models import Session
from social.graze.atoauth.atproto.token import request_token, session_from_token
from social.graze.atoauth.stores.base import SessionStore

logger = logging.getLogger(__name__)


class TokenRefresher:
    def __init__(
        self,
        client_id: str,
        signing_algorithms: Union[str, Sequence[str]],
        key_set: KeySet,
        http_session: ClientSession,
        session_store: SessionStore,
        lock: KeyedLock,
        metrics_client: MetricsClient,
        dpop_nonces: Dict[str, str],
        refresh_margin: int = 60,
    ) -> None:
        self._client_id = client_id
        self._signing_algorithms = signing_algorithms
        self._key_set = key_set
        self._http_session = http_session
        self._session_store = session_store
        self._lock = lock
        self._metrics_client = metrics_client
        self._dpop_nonces = dpop_nonces
        self._refresh_margin = timedelta(seconds=refresh_margin)

    def is_fresh(self, session: Session, now: Optional[datetime] = None) -> bool:
        """True when the access token outlives the refresh margin, or has no known expiry."""
        if session.token_expires_at is None:
            return True
        if now is None:
            now = datetime.now(timezone.utc)
        return session.token_expires_at > now + self._refresh_margin

    async def ensure_fresh(self, session: Session, force: bool = False) -> Session:
        """
        Return a session whose access token is usable, refreshing it if needed.

        Raises:
            SessionNotFoundError: The session was deleted while waiting.
            SessionExpiredError: The refresh token is missing or was rejected
                with `invalid_grant`; the session has been deleted.
            TokenExchangeError: The provider rejected the refresh otherwise.
            TransientNetworkError: The provider could not be reached.
            PersistenceError: The refreshed session could not be stored.
        """
        if not force and self.is_fresh(session):
            return session

        async with self._lock.hold(session.sub):
            current = await self._session_store.get(session.sub)
            if current is None:
                raise SessionNotFoundError(f"No session for {session.sub}")

            if not force and self.is_fresh(current):
                logger.debug("Session for %s was refreshed by another caller", session.sub)
                return current

            if force and current.updated_at > session.updated_at:
                logger.debug("Session for %s was refreshed by another caller", session.sub)
                return current

            return await self._refresh(current)

    async def _refresh(self, session: Session) -> Session:
        if session.refresh_token is None:
            await self._session_store.delete(session.sub)
            self._metrics_client.increment(
                "refresh.count", 1, tag_dict={"result": "expired"}
            )
            raise SessionExpiredError(
                f"error-oauth-refresh-1000 Session for {session.sub} has no refresh token"
            )

        try:
            token = await request_token(
                self._http_session,
                self._metrics_client,
                self._key_set,
                self._client_id,
                self._signing_algorithms,
                session.issuer,
                session.token_endpoint,
                session.dpop_key(),
                self._dpop_nonces,
                {
                    "grant_type": "refresh_token",
                    "refresh_token": session.refresh_token,
                },
            )
        except TokenExchangeError as e:
            if e.error == "invalid_grant":
                await self._session_store.delete(session.sub)
                self._metrics_client.increment(
                    "refresh.count", 1, tag_dict={"result": "expired"}
                )
                raise SessionExpiredError(
                    f"error-oauth-refresh-1001 Refresh token for {session.sub} was rejected"
                ) from e
            self._metrics_client.increment(
                "refresh.count", 1, tag_dict={"result": "rejected"}
            )
            raise

        token.verify(session.sub)

        refreshed = session_from_token(
            token,
            issuer=session.issuer,
            aud=session.aud,
            dpop_jwk=session.dpop_jwk,
            token_endpoint=session.token_endpoint,
            revocation_endpoint=session.revocation_endpoint,
            created_at=session.created_at,
            previous_refresh_token=session.refresh_token,
        )

        try:
            await self._session_store.set(refreshed.sub, refreshed)
        except Exception as e:
            raise PersistenceError(
                f"error-oauth-refresh-1002 Unable to store refreshed session for {session.sub}"
            ) from e

        self._metrics_client.increment(
            "refresh.count", 1, tag_dict={"result": "refreshed"}
        )
        logger.info("Refreshed session for %s", session.sub)
        return refreshed
