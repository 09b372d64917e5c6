"""
Live OAuth sessions.

An `AuthorizedSession` wraps a stored `Session` and makes requests to the
user's PDS with the DPoP-bound access token.
"""

import logging
from typing import TYPE_CHECKING, Any

from aiohttp.typedefs import StrOrURL
from yarl import URL

from social.graze.atoauth.atproto.chain import (
    ChainMiddlewareClient,
    ChainMiddlewareContext,
    GenerateDpopMiddleware,
    MetricsMiddleware,
)
from social.graze.atoauth.atproto.models import Session

if TYPE_CHECKING:
    from social.graze.atoauth.atproto.oauth import OAuthClient

logger = logging.getLogger(__name__)


class AuthorizedSession:
    def __init__(self, client: "OAuthClient", session: Session) -> None:
        self._client = client
        self._session = session

    def __repr__(self) -> str:
        return f"AuthorizedSession(sub={self.sub!r}, aud={self._session.aud!r})"

    @property
    def sub(self) -> str:
        return self._session.sub

    @property
    def session(self) -> Session:
        return self._session

    def request(
        self, method: str, url_or_path: StrOrURL, **kwargs: Any
    ) -> ChainMiddlewareContext:
        """
        Make a request to the PDS as the user.

        Relative paths are resolved against the PDS URL. The returned context
        is used like the chain client's:

            async with session.request("GET", "/xrpc/com.atproto.server.getSession") as (
                client_response,
                chain_response,
            ):
                ...
        """
        url = URL(str(url_or_path))
        if not url.is_absolute():
            url = URL(self._session.aud.rstrip("/") + "/" + str(url).lstrip("/"))

        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"DPoP {self._session.access_token}"

        chain_client = ChainMiddlewareClient(
            client_session=self._client.http_session,
            raise_for_status=False,
            middleware=[
                MetricsMiddleware(self._client.metrics_client),
                GenerateDpopMiddleware(
                    self._session.dpop_key(),
                    self._client.dpop_nonces,
                    access_token=self._session.access_token,
                ),
            ],
        )
        return chain_client.request(method, url, headers=headers, **kwargs)

    async def refresh(self, force: bool = True) -> Session:
        """Refresh the access token and keep the refreshed record."""
        self._session = await self._client.refresher.ensure_fresh(self._session, force=force)
        return self._session

    async def sign_out(self) -> None:
        """Revoke the tokens and delete the stored session."""
        await self._client.revoke(self._session.sub)
