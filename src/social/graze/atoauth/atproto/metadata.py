"""
OAuth client metadata.

atproto clients are identified by the URL of their metadata document. The
document is computed once from settings and served unchanged on the client id
URL; the redirect URI the engine sends in authorization requests is always the
first entry of `redirect_uris`.
"""

from typing import List, Optional
from urllib.parse import urljoin, urlparse

from pydantic import BaseModel, ConfigDict

from social.graze.atoauth.atproto.errors import InvalidConfigError


class ClientMetadataDocument(BaseModel):
    """
    OAuth 2.0 Client Metadata for AT Protocol integration.

    This model follows the OAuth 2.0 Dynamic Client Registration Protocol
    (RFC 7591) with the fields atproto authorization servers require.
    """

    model_config = ConfigDict(frozen=True)

    client_id: str
    """Client identifier URI, also the location of this document"""

    client_name: str
    """Human-readable name of the client application"""

    client_uri: str
    """URI of the client's homepage"""

    logo_uri: str
    """URI of the client's logo"""

    tos_uri: str
    """URI of the client's terms of service"""

    policy_uri: str
    """URI of the client's policy document"""

    redirect_uris: List[str]
    """Allowed redirect URIs; the first one is used for callbacks"""

    scope: str
    """OAuth scopes requested by this client"""

    grant_types: List[str] = ["authorization_code", "refresh_token"]
    response_types: List[str] = ["code"]
    application_type: str = "web"

    token_endpoint_auth_method: str = "private_key_jwt"
    """Authentication method for the token endpoint"""

    token_endpoint_auth_signing_alg: str
    """Algorithm used for signing token endpoint authentication assertions"""

    dpop_bound_access_tokens: bool = True
    """Whether access tokens are bound to DPoP proofs"""

    jwks_uri: str
    """URI of the client's JWKS (JSON Web Key Set)"""

    @property
    def redirect_uri(self) -> str:
        return self.redirect_uris[0]


def _is_absolute_http_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def build_client_metadata(
    base_url: str,
    client_name: str,
    scope: str,
    token_endpoint_auth_signing_alg: str,
    redirect_uris: Optional[List[str]] = None,
    client_uri: Optional[str] = None,
    logo_uri: Optional[str] = None,
    tos_uri: Optional[str] = None,
    policy_uri: Optional[str] = None,
) -> ClientMetadataDocument:
    """
    Compute the client metadata document.

    Relative redirect URIs are resolved against `base_url`. Without any
    configured redirect URI, `{base_url}/callback` is used.

    Raises:
        InvalidConfigError: `base_url` is not an absolute http(s) URL, or no
            redirect URI resolves to an absolute http(s) URL.
    """
    base_url = base_url.rstrip("/")
    if not _is_absolute_http_url(base_url):
        raise InvalidConfigError.invalid_base_url(base_url)

    if not redirect_uris:
        redirect_uris = ["/callback"]

    resolved = [urljoin(f"{base_url}/", uri) for uri in redirect_uris if uri]
    resolved = [uri for uri in resolved if _is_absolute_http_url(uri)]
    if len(resolved) == 0:
        raise InvalidConfigError.no_redirect_uris()

    return ClientMetadataDocument(
        client_id=f"{base_url}/client-metadata.json",
        client_name=client_name,
        client_uri=client_uri or base_url,
        logo_uri=logo_uri or f"{base_url}/logo.png",
        tos_uri=tos_uri or f"{base_url}/tos",
        policy_uri=policy_uri or f"{base_url}/policy",
        redirect_uris=resolved,
        scope=scope,
        token_endpoint_auth_signing_alg=token_endpoint_auth_signing_alg,
        jwks_uri=f"{base_url}/jwks.json",
    )
