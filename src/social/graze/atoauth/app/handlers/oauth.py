"""
AT Protocol OAuth Handlers

This module implements the web request handlers that expose the OAuth client over HTTP.

OAuth Flow with AT Protocol:
1. The user submits their handle to /login
2. The client resolves the handle and redirects to the user's authorization server
3. The user authenticates with their authorization server
4. The authorization server redirects back to /callback with an authorization code
5. The client exchanges the code for DPoP-bound tokens and stores the session

The handlers in this module provide the following endpoints:
- GET /client-metadata.json - OAuth client metadata
- GET /jwks.json - JWKS endpoint for client assertion verification
- GET /login - Start authorization for a handle or DID
- GET /callback - OAuth callback from the authorization server
"""

import logging
from typing import Dict, Optional, Tuple, Type

from aiohttp import web
import sentry_sdk

from social.graze.atoauth.app.config import (
    ClientMetadataAppKey,
    KeySetAppKey,
    OAuthClientAppKey,
)
from social.graze.atoauth.atproto.errors import (
    AuthorizationCancelledError,
    AuthorizationDeniedError,
    AuthorizationRequestError,
    InvalidStateError,
    OAuthClientException,
    PersistenceError,
    ResolutionError,
    SessionExpiredError,
    SessionNotFoundError,
    TokenExchangeError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

ERROR_RESPONSES: Dict[Type[OAuthClientException], Tuple[int, str]] = {
    ResolutionError: (400, "resolution_failed"),
    InvalidStateError: (400, "invalid_state"),
    AuthorizationCancelledError: (400, "cancelled"),
    AuthorizationDeniedError: (403, "access_denied"),
    SessionNotFoundError: (401, "session_not_found"),
    SessionExpiredError: (401, "session_expired"),
    AuthorizationRequestError: (502, "authorization_request_failed"),
    TokenExchangeError: (502, "token_exchange_failed"),
    TransientNetworkError: (503, "temporarily_unavailable"),
    PersistenceError: (500, "server_error"),
}
"""HTTP status and error code for each client error, most specific first."""


def error_response(e: OAuthClientException) -> web.Response:
    status, error = 500, "server_error"
    for error_type, (error_status, error_code) in ERROR_RESPONSES.items():
        if isinstance(e, error_type):
            status, error = error_status, error_code
            break

    if status >= 500 and not e.retryable:
        logger.exception("OAuth request failed")
        sentry_sdk.capture_exception(e)
    else:
        logger.warning("OAuth request failed: %s: %s", type(e).__name__, e)

    body: Dict[str, Optional[str]] = {"error": error, "message": str(e)}
    if isinstance(e, AuthorizationDeniedError):
        body["state"] = e.caller_state
    return web.json_response(body, status=status)


async def handle_atproto_client_metadata(request: web.Request):
    """
    Handle OAuth client metadata endpoint request.

    Returns the client metadata document computed at startup. Its URL is the
    client id.
    """
    client_metadata = request.app[ClientMetadataAppKey]
    return web.json_response(client_metadata.model_dump())


async def handle_jwks(request: web.Request):
    """
    Handle JWKS (JSON Web Key Set) endpoint request.

    Returns the public half of every signing key so authorization servers can
    verify client assertions.
    """
    key_set = request.app[KeySetAppKey]
    return web.json_response(key_set.jwks())


async def handle_atproto_login(request: web.Request):
    """
    Start authorization and redirect to the user's authorization server.

    Query Parameters:
        handle: AT Protocol handle or DID
        locale: Optional preferred locale for the authorization UI
        state: Optional opaque value returned from the callback

    Disconnecting before the redirect cancels the handler, which discards the
    authorization attempt.
    """
    handle: Optional[str] = request.query.get("handle", None)
    if handle is None or not handle.strip():
        return web.json_response(
            {"error": "invalid_request", "message": "No handle provided"}, status=400
        )

    oauth_client = request.app[OAuthClientAppKey]

    try:
        redirect_destination = await oauth_client.authorize(
            handle,
            state=request.query.get("state", None),
            ui_locales=request.query.get("locale", "en"),
        )
    except OAuthClientException as e:
        return error_response(e)

    raise web.HTTPFound(redirect_destination)


async def handle_atproto_callback(request: web.Request):
    """
    Handle OAuth callback from the authorization server.

    Query Parameters:
        state: Attempt key sent with the authorization request
        iss: Issuer identifier (authorization server)
        code: Authorization code to exchange for tokens
        error: Error code when the user or server denied the request

    Returns:
        JSON with the signed-in subject and the caller's state
    """
    oauth_client = request.app[OAuthClientAppKey]

    try:
        result = await oauth_client.callback(request.query)
    except OAuthClientException as e:
        return error_response(e)

    return web.json_response(
        {"ok": True, "sub": result.session.sub, "state": result.caller_state}
    )
