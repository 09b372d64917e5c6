"""
Token endpoint requests.

Both the authorization code exchange and the refresh token grant post a form
to the token endpoint with a DPoP proof and a client assertion, and both get
back the same token response.
"""

import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Dict, Optional, Sequence, Union

from aiohttp import ClientError, ClientSession
from jwcrypto import jwk
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from social.graze.atoauth.app.metrics import MetricsClient
from social.graze.atoauth.atproto.chain import (
    ChainMiddlewareClient,
    ChainResponse,
    GenerateClaimAssertionMiddleware,
    GenerateDpopMiddleware,
    MetricsMiddleware,
)
from social.graze.atoauth.atproto.errors import TokenExchangeError, TransientNetworkError
from social.graze.atoauth.atproto.keyset import KeySet
from social.graze.atoauth.atproto.models import Session

logger = logging.getLogger(__name__)


class TokenResponse(BaseModel):
    """A successful token endpoint response."""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(repr=False)
    token_type: str
    sub: str
    scope: str
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = Field(default=None, repr=False)

    def verify(self, expected_sub: str) -> None:
        """
        Check the response is a usable atproto token set for `expected_sub`.

        Raises:
            TokenExchangeError: The token is not DPoP bound, belongs to another
                subject, or lacks the `atproto` scope.
        """
        if self.token_type.lower() != "dpop":
            raise TokenExchangeError(
                f"error-oauth-token-1000 Unexpected token type {self.token_type!r}"
            )
        if self.sub != expected_sub:
            raise TokenExchangeError(
                f"error-oauth-token-1001 Token subject {self.sub} does not match {expected_sub}"
            )
        if "atproto" not in self.scope.split():
            raise TokenExchangeError("error-oauth-token-1002 Token is missing the atproto scope")

    def expires_at(self, now: datetime) -> Optional[datetime]:
        if self.expires_in is None:
            return None
        return now + timedelta(seconds=self.expires_in)


def token_error(action: str, chain_response: ChainResponse) -> TokenExchangeError:
    error = chain_response.error
    return TokenExchangeError(
        f"error-oauth-token-1003 {action} rejected with status {chain_response.status}"
        + (f": {error}" if error else ""),
        error=error,
        error_description=chain_response.error_description,
        status=chain_response.status,
    )


async def post_form(
    http_session: ClientSession,
    metrics_client: MetricsClient,
    key_set: KeySet,
    client_id: str,
    signing_algorithms: Union[str, Sequence[str]],
    issuer: str,
    url: str,
    dpop_key: jwk.JWK,
    dpop_nonces: Dict[str, str],
    data: Dict[str, Any],
) -> ChainResponse:
    """
    Post a client-authenticated, DPoP-proved form to an authorization server.

    Raises:
        TransientNetworkError: The server could not be reached or returned 5xx.
    """
    chain_client = ChainMiddlewareClient(
        client_session=http_session,
        raise_for_status=False,
        middleware=[
            MetricsMiddleware(metrics_client),
            GenerateDpopMiddleware(dpop_key, dpop_nonces),
            GenerateClaimAssertionMiddleware(key_set, client_id, issuer, signing_algorithms),
        ],
    )

    try:
        async with chain_client.post(url, data=dict(data)) as (
            _,
            chain_response,
        ):
            pass
    except (ClientError, asyncio.TimeoutError) as e:
        raise TransientNetworkError(f"Unable to reach {url}: {type(e).__name__}") from e

    if chain_response.status >= 500:
        raise TransientNetworkError(f"{url} returned {chain_response.status}")

    return chain_response


async def request_token(
    http_session: ClientSession,
    metrics_client: MetricsClient,
    key_set: KeySet,
    client_id: str,
    signing_algorithms: Union[str, Sequence[str]],
    issuer: str,
    token_endpoint: str,
    dpop_key: jwk.JWK,
    dpop_nonces: Dict[str, str],
    data: Dict[str, Any],
) -> TokenResponse:
    """
    Make a token request and parse the response.

    Raises:
        TransientNetworkError: The token endpoint could not be reached or
            returned 5xx.
        TokenExchangeError: The request was rejected or the response is not a
            token response.
    """
    try:
        chain_response = await post_form(
            http_session,
            metrics_client,
            key_set,
            client_id,
            signing_algorithms,
            issuer,
            token_endpoint,
            dpop_key,
            dpop_nonces,
            {**data, "client_id": client_id},
        )
    except ValueError as e:
        raise TokenExchangeError("error-oauth-token-1004 Unreadable token response") from e

    if chain_response.status != 200:
        raise token_error(f"{data.get('grant_type', 'token')} grant", chain_response)

    if not isinstance(chain_response.body, dict):
        raise TokenExchangeError("error-oauth-token-1004 Unreadable token response")

    try:
        return TokenResponse.model_validate(chain_response.body)
    except ValidationError as e:
        raise TokenExchangeError(
            "error-oauth-token-1005 Token response is missing required fields"
        ) from e


def session_from_token(
    token: TokenResponse,
    issuer: str,
    aud: str,
    dpop_jwk: Dict[str, Any],
    token_endpoint: str,
    revocation_endpoint: Optional[str],
    created_at: Optional[datetime] = None,
    previous_refresh_token: Optional[str] = None,
) -> Session:
    now = datetime.now(timezone.utc)
    return Session(
        sub=token.sub,
        issuer=issuer,
        aud=aud,
        scope=token.scope,
        token_type="DPoP",
        access_token=token.access_token,
        refresh_token=token.refresh_token or previous_refresh_token,
        token_expires_at=token.expires_at(now),
        dpop_jwk=dpop_jwk,
        token_endpoint=token_endpoint,
        revocation_endpoint=revocation_endpoint,
        created_at=created_at or now,
        updated_at=now,
    )
