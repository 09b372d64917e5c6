"""
Authorization server discovery.

A PDS advertises its authorization server in its protected resource metadata
(`/.well-known/oauth-protected-resource`); the authorization server publishes
its endpoints in `/.well-known/oauth-authorization-server`.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from aiohttp import ClientError, ClientSession, ContentTypeError
from pydantic import BaseModel, ValidationError

from social.graze.atoauth.atproto.errors import ResolutionError, TransientNetworkError

logger = logging.getLogger(__name__)


class AuthorizationServerMetadata(BaseModel):
    """The fields of RFC 8414 metadata the client relies on."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    pushed_authorization_request_endpoint: Optional[str] = None
    require_pushed_authorization_requests: bool = False
    revocation_endpoint: Optional[str] = None
    dpop_signing_alg_values_supported: List[str] = []
    token_endpoint_auth_signing_alg_values_supported: List[str] = []
    scopes_supported: List[str] = []


async def _get_json(session: ClientSession, url: str) -> Optional[Any]:
    try:
        async with session.get(url) as resp:
            if resp.status >= 500:
                raise TransientNetworkError(f"{url} returned {resp.status}")
            if resp.status != 200:
                return None
            return await resp.json()
    except (ContentTypeError, ValueError):
        return None
    except (ClientError, asyncio.TimeoutError) as e:
        raise TransientNetworkError(f"Unable to fetch {url}: {type(e).__name__}") from e


async def oauth_protected_resource(session: ClientSession, pds: str) -> Optional[Any]:
    return await _get_json(session, f"{pds.rstrip('/')}/.well-known/oauth-protected-resource")


async def oauth_authorization_server(
    session: ClientSession, authorization_server: str
) -> Optional[Any]:
    return await _get_json(
        session,
        f"{authorization_server.rstrip('/')}/.well-known/oauth-authorization-server",
    )


async def discover_authorization_server(
    session: ClientSession, pds: str
) -> AuthorizationServerMetadata:
    """
    Find the authorization server responsible for a PDS.

    Raises:
        ResolutionError: The PDS or the authorization server published no
            usable metadata, or the metadata issuer does not match the
            server the PDS points to.
        TransientNetworkError: Either document could not be fetched.
    """
    protected_resource = await oauth_protected_resource(session, pds)
    if not isinstance(protected_resource, dict):
        raise ResolutionError(f"No protected resource metadata found for {pds}")

    first_authorization_server = next(
        iter(protected_resource.get("authorization_servers", None) or []), None
    )
    if not isinstance(first_authorization_server, str):
        raise ResolutionError(f"No authorization server advertised by {pds}")

    document: Optional[Dict[str, Any]] = await oauth_authorization_server(
        session, first_authorization_server
    )
    if not isinstance(document, dict):
        raise ResolutionError(
            f"No authorization server metadata found at {first_authorization_server}"
        )

    try:
        metadata = AuthorizationServerMetadata.model_validate(document)
    except ValidationError as e:
        raise ResolutionError(
            f"Invalid authorization server metadata at {first_authorization_server}"
        ) from e

    if metadata.issuer.rstrip("/") != first_authorization_server.rstrip("/"):
        raise ResolutionError(
            f"Authorization server issuer mismatch: {metadata.issuer} != {first_authorization_server}"
        )

    if (
        metadata.require_pushed_authorization_requests
        and metadata.pushed_authorization_request_endpoint is None
    ):
        raise ResolutionError(
            f"{metadata.issuer} requires pushed authorization requests but has no endpoint"
        )

    logger.debug("Discovered authorization server %s for %s", metadata.issuer, pds)
    return metadata
