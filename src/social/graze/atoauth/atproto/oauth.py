"""
AT Protocol OAuth Client Implementation

This module implements the OAuth 2.0 client engine used to sign users in with their
AT Protocol identity.

The implementation follows these OAuth 2.0 standards and specifications:
- OAuth 2.0 Authorization Code Grant (RFC 6749)
- Proof Key for Code Exchange (PKCE) (RFC 7636)
- OAuth 2.0 Demonstrating Proof of Possession (DPoP) (RFC 9449)
- OAuth 2.0 JWT Client Authentication (RFC 7523)
- OAuth 2.0 Pushed Authorization Requests (PAR) (RFC 9126)
- OAuth 2.0 Token Revocation (RFC 7009)

Each authorization attempt moves through these states:
1. Initiated (`authorize`): the subject is resolved, PKCE and DPoP parameters are
   generated and stored under a random attempt key
2. Awaiting callback: the user is at the authorization server
3. Completed (`callback`): the code is exchanged for tokens, the session is stored
   and the attempt is consumed
4. Failed or abandoned: the attempt is deleted, or expires from the state store

Sessions are resumed with `restore`, which refreshes stale access tokens through
the `TokenRefresher`.
"""

import asyncio
import base64
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import logging
import secrets
from typing import Dict, Literal, Mapping, Optional, Tuple, Union
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from aiohttp import ClientError, ClientSession
from jwcrypto import jwk

from social.graze.atoauth.app.metrics import MetricsClient, NoOpMetricsClient
from social.graze.atoauth.atproto.errors import (
    AuthorizationCancelledError,
    AuthorizationDeniedError,
    AuthorizationRequestError,
    InvalidStateError,
    OAuthClientException,
    PersistenceError,
    SessionNotFoundError,
    TokenExchangeError,
)
from social.graze.atoauth.atproto.jwt import generate_dpop_key
from social.graze.atoauth.atproto.keyset import KeySet
from social.graze.atoauth.atproto.locks import KeyedLock, MemoryKeyedLock
from social.graze.atoauth.atproto.metadata import ClientMetadataDocument
from social.graze.atoauth.atproto.models import AuthorizationState
from social.graze.atoauth.atproto.pds import (
    AuthorizationServerMetadata,
    discover_authorization_server,
)
from social.graze.atoauth.atproto.refresh import TokenRefresher
from social.graze.atoauth.atproto.session import AuthorizedSession
from social.graze.atoauth.atproto.token import (
    post_form,
    request_token,
    session_from_token,
)
from social.graze.atoauth.resolve.handle import IdentityResolver
from social.graze.atoauth.stores.base import SessionStore, StateStore

logger = logging.getLogger(__name__)


def generate_pkce_verifier() -> Tuple[str, str]:
    """
    Generate PKCE (Proof Key for Code Exchange) verifier and challenge.

    This implements the PKCE extension to OAuth 2.0 (RFC 7636) to prevent
    authorization code interception attacks. It creates a cryptographically
    random verifier and its corresponding S256 challenge.

    Returns:
        Tuple[str, str]: A tuple containing (pkce_verifier, pkce_challenge)
        - pkce_verifier: The secret verifier that will be sent in the token request
        - pkce_challenge: The challenge derived from the verifier, sent in the authorization request
    """
    pkce_token = secrets.token_urlsafe(80)

    hashed = hashlib.sha256(pkce_token.encode("ascii")).digest()
    encoded = base64.urlsafe_b64encode(hashed)
    pkce_challenge = encoded.decode("ascii").rstrip("=")
    return (pkce_token, pkce_challenge)


def url_with_query(url: str, params: Mapping[str, str]) -> str:
    parsed = urlparse(url)
    query = dict(parse_qsl(parsed.query))
    query.update(params)
    return urlunparse(parsed._replace(query=urlencode(query)))


@dataclass(repr=False, eq=False)
class CallbackResult:
    """
    The outcome of a successful callback.

    Attributes:
        session: The live session for the user who signed in
        caller_state: The opaque state passed to `authorize`, if any
    """

    session: AuthorizedSession
    caller_state: Optional[str] = None


class OAuthClient:
    """
    The authorization engine.

    Stores, the resolver and the refresh lock are injected; the client keeps no
    copies of state or sessions between calls.
    """

    def __init__(
        self,
        client_metadata: ClientMetadataDocument,
        key_set: KeySet,
        http_session: ClientSession,
        state_store: StateStore,
        session_store: SessionStore,
        resolver: IdentityResolver,
        metrics_client: Optional[MetricsClient] = None,
        refresh_lock: Optional[KeyedLock] = None,
        state_ttl: int = 600,
        token_refresh_margin: int = 60,
    ) -> None:
        self.client_metadata = client_metadata
        self.key_set = key_set
        self.http_session = http_session
        self.state_store = state_store
        self.session_store = session_store
        self.resolver = resolver
        self.metrics_client = metrics_client or NoOpMetricsClient()
        self.state_ttl = state_ttl

        # DPoP nonces per server origin, shared by every request.
        self.dpop_nonces: Dict[str, str] = {}

        self._signing_algorithms = [client_metadata.token_endpoint_auth_signing_alg]

        # NoUsableKeyError when no key can sign client assertions
        key_set.find_key(self._signing_algorithms)

        self.refresher = TokenRefresher(
            client_id=client_metadata.client_id,
            signing_algorithms=self._signing_algorithms,
            key_set=key_set,
            http_session=http_session,
            session_store=session_store,
            lock=refresh_lock or MemoryKeyedLock(),
            metrics_client=self.metrics_client,
            dpop_nonces=self.dpop_nonces,
            refresh_margin=token_refresh_margin,
        )

    @property
    def client_id(self) -> str:
        return self.client_metadata.client_id

    @property
    def redirect_uri(self) -> str:
        return self.client_metadata.redirect_uri

    async def authorize(
        self,
        subject: str,
        *,
        signal: Optional[asyncio.Event] = None,
        state: Optional[str] = None,
        ui_locales: Optional[str] = None,
    ) -> str:
        """
        Start an authorization attempt and return the URL to send the user to.

        Args:
            subject: Handle or DID of the user
            signal: Setting this event before the URL is returned cancels the
                attempt
            state: Opaque value returned to the caller from `callback`
            ui_locales: Preferred locales for the authorization server's UI

        Raises:
            ResolutionError: The subject or its authorization server does not resolve.
            TransientNetworkError: A resolution service or the authorization
                server could not be reached.
            AuthorizationRequestError: The pushed authorization request was rejected.
            AuthorizationCancelledError: `signal` was set.
            PersistenceError: The attempt could not be stored.
        """
        if signal is None:
            return await self._authorize(subject, state, ui_locales)

        if signal.is_set():
            raise AuthorizationCancelledError("error-oauth-authorize-1000 Authorization cancelled")

        attempt = asyncio.ensure_future(self._authorize(subject, state, ui_locales))
        cancelled = asyncio.ensure_future(signal.wait())
        try:
            await asyncio.wait({attempt, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            attempt.cancel()
            await asyncio.gather(attempt, return_exceptions=True)
            raise
        finally:
            cancelled.cancel()

        if not attempt.done():
            attempt.cancel()
            await asyncio.gather(attempt, return_exceptions=True)
            self.metrics_client.increment(
                "authorize.count", 1, tag_dict={"result": "cancelled"}
            )
            raise AuthorizationCancelledError("error-oauth-authorize-1000 Authorization cancelled")

        return attempt.result()

    async def _authorize(
        self, subject: str, caller_state: Optional[str], ui_locales: Optional[str]
    ) -> str:
        try:
            resolved_subject = await self.resolver.resolve(subject)
            server = await discover_authorization_server(
                self.http_session, resolved_subject.pds
            )
        except OAuthClientException:
            self.metrics_client.increment(
                "authorize.count", 1, tag_dict={"result": "unresolved"}
            )
            raise

        (pkce_verifier, code_challenge) = generate_pkce_verifier()
        dpop_key, _ = generate_dpop_key()
        attempt_key = secrets.token_urlsafe(32)

        now = datetime.now(timezone.utc)
        authorization_state = AuthorizationState(
            issuer=server.issuer,
            did=resolved_subject.did,
            handle=resolved_subject.handle,
            pds=resolved_subject.pds,
            token_endpoint=server.token_endpoint,
            revocation_endpoint=server.revocation_endpoint,
            redirect_uri=self.redirect_uri,
            pkce_verifier=pkce_verifier,
            dpop_jwk=dpop_key.export(private_key=True, as_dict=True),
            caller_state=caller_state,
            created_at=now,
            expires_at=now + timedelta(seconds=self.state_ttl),
        )

        try:
            try:
                await self.state_store.set(attempt_key, authorization_state)
            except Exception as e:
                raise PersistenceError(
                    "error-oauth-authorize-1001 Unable to store authorization state"
                ) from e

            params = {
                "client_id": self.client_id,
                "response_type": "code",
                "code_challenge": code_challenge,
                "code_challenge_method": "S256",
                "state": attempt_key,
                "redirect_uri": self.redirect_uri,
                "scope": self.client_metadata.scope,
                "login_hint": resolved_subject.handle,
            }
            if ui_locales:
                params["ui_locales"] = ui_locales

            if server.pushed_authorization_request_endpoint is not None:
                request_uri = await self._push_authorization_request(
                    server, dpop_key, params
                )
                query = {"client_id": self.client_id, "request_uri": request_uri}
            else:
                query = params

            redirect_destination = url_with_query(server.authorization_endpoint, query)
        except BaseException:
            await self._discard_state(attempt_key)
            raise

        self.metrics_client.increment(
            "authorize.count", 1, tag_dict={"result": "redirect"}
        )
        logger.info("Started authorization for %s at %s", resolved_subject.did, server.issuer)
        return redirect_destination

    async def _push_authorization_request(
        self,
        server: AuthorizationServerMetadata,
        dpop_key: jwk.JWK,
        params: Dict[str, str],
    ) -> str:
        assert server.pushed_authorization_request_endpoint is not None
        try:
            chain_response = await post_form(
                self.http_session,
                self.metrics_client,
                self.key_set,
                self.client_id,
                self._signing_algorithms,
                server.issuer,
                server.pushed_authorization_request_endpoint,
                dpop_key,
                self.dpop_nonces,
                params,
            )
        except ValueError as e:
            raise AuthorizationRequestError(
                "error-oauth-authorize-1002 Unreadable PAR response"
            ) from e

        if chain_response.status not in (200, 201):
            raise AuthorizationRequestError(
                f"error-oauth-authorize-1003 PAR rejected with status {chain_response.status}"
                + (f": {chain_response.error}" if chain_response.error else ""),
                status=chain_response.status,
            )

        request_uri = None
        if isinstance(chain_response.body, dict):
            request_uri = chain_response.body.get("request_uri", None)
        if not isinstance(request_uri, str):
            raise AuthorizationRequestError(
                "error-oauth-authorize-1004 No PAR request URI found",
                status=chain_response.status,
            )
        return request_uri

    async def callback(self, params: Mapping[str, str]) -> CallbackResult:
        """
        Complete an authorization attempt from the redirect's query parameters.

        The attempt is taken from the state store before the code is
        exchanged, so concurrent callbacks for one attempt exchange the code
        at most once, across every process sharing the store. The attempt is
        put back when the callback fails in a way that can be retried.

        Raises:
            InvalidStateError: The state is missing, unknown, consumed or
                expired, the issuer does not match, or the code is missing.
            AuthorizationDeniedError: The authorization server returned an error.
            TokenExchangeError: The code exchange was rejected or returned an
                unusable token.
            TransientNetworkError: The token endpoint could not be reached; the
                attempt can be retried.
            PersistenceError: The session could not be stored; the attempt is kept.
        """
        attempt_key = params.get("state", None)
        if not attempt_key:
            raise InvalidStateError.missing_state()

        authorization_state = await self.state_store.take(attempt_key)
        if authorization_state is None:
            raise InvalidStateError.unknown_state()

        if authorization_state.is_expired():
            raise InvalidStateError.expired()

        issuer = params.get("iss", None)
        if issuer is not None and issuer != authorization_state.issuer:
            await self._return_state(attempt_key, authorization_state)
            raise InvalidStateError.issuer_mismatch()

        error = params.get("error", None)
        if error:
            self.metrics_client.increment(
                "callback.count", 1, tag_dict={"result": "denied"}
            )
            raise AuthorizationDeniedError(
                error,
                params.get("error_description", None),
                authorization_state.caller_state,
            )

        code = params.get("code", None)
        if not code:
            await self._return_state(attempt_key, authorization_state)
            raise InvalidStateError.missing_code()

        try:
            token = await request_token(
                self.http_session,
                self.metrics_client,
                self.key_set,
                self.client_id,
                self._signing_algorithms,
                authorization_state.issuer,
                authorization_state.token_endpoint,
                jwk.JWK(**authorization_state.dpop_jwk),
                self.dpop_nonces,
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "code_verifier": authorization_state.pkce_verifier,
                    "redirect_uri": authorization_state.redirect_uri,
                },
            )
            token.verify(authorization_state.did)
        except TokenExchangeError:
            self.metrics_client.increment(
                "callback.count", 1, tag_dict={"result": "rejected"}
            )
            raise
        except BaseException:
            await self._return_state(attempt_key, authorization_state)
            raise

        session = session_from_token(
            token,
            issuer=authorization_state.issuer,
            aud=authorization_state.pds,
            dpop_jwk=authorization_state.dpop_jwk,
            token_endpoint=authorization_state.token_endpoint,
            revocation_endpoint=authorization_state.revocation_endpoint,
        )

        try:
            await self.session_store.set(session.sub, session)
        except Exception as e:
            await self._return_state(attempt_key, authorization_state)
            raise PersistenceError(
                f"error-oauth-callback-1001 Unable to store session for {session.sub}"
            ) from e

        self.metrics_client.increment(
            "callback.count", 1, tag_dict={"result": "session"}
        )
        logger.info("Completed authorization for %s", session.sub)
        return CallbackResult(
            session=AuthorizedSession(self, session),
            caller_state=authorization_state.caller_state,
        )

    async def _return_state(
        self, attempt_key: str, authorization_state: AuthorizationState
    ) -> None:
        try:
            await self.state_store.set(attempt_key, authorization_state)
        except Exception:
            logger.exception("Unable to return authorization state to the store")

    async def _discard_state(self, attempt_key: str) -> None:
        try:
            await self.state_store.delete(attempt_key)
        except Exception:
            logger.exception("Unable to discard authorization state")

    async def restore(
        self, sub: str, *, refresh: Union[bool, Literal["auto"]] = "auto"
    ) -> AuthorizedSession:
        """
        Resume the stored session for a subject.

        Args:
            sub: The subject DID
            refresh: "auto" refreshes a stale access token, True always
                refreshes, False never does

        Raises:
            SessionNotFoundError: No session is stored for `sub`.
            SessionExpiredError: The session could not be refreshed and was deleted.
        """
        session = await self.session_store.get(sub)
        if session is None:
            raise SessionNotFoundError(f"No session for {sub}")

        if refresh is not False:
            session = await self.refresher.ensure_fresh(session, force=refresh is True)

        return AuthorizedSession(self, session)

    async def revoke(self, sub: str) -> None:
        """
        Revoke a subject's tokens at the authorization server and delete the
        stored session. Revocation failures are logged; the session is always
        deleted.
        """
        session = await self.session_store.get(sub)
        if session is None:
            return

        if session.revocation_endpoint is not None:
            token = session.refresh_token or session.access_token
            try:
                chain_response = await post_form(
                    self.http_session,
                    self.metrics_client,
                    self.key_set,
                    self.client_id,
                    self._signing_algorithms,
                    session.issuer,
                    session.revocation_endpoint,
                    session.dpop_key(),
                    self.dpop_nonces,
                    {"token": token, "client_id": self.client_id},
                )
                if chain_response.status != 200:
                    logger.warning(
                        "Token revocation for %s returned %d", sub, chain_response.status
                    )
            except (OAuthClientException, ClientError, ValueError) as e:
                logger.warning("Token revocation for %s failed: %s", sub, type(e).__name__)

        await self.session_store.delete(sub)
        self.metrics_client.increment("revoke.count", 1)
        logger.info("Signed out %s", sub)
