"""OAuth record models for authorization attempts and sessions.

Provides the pydantic models persisted by the state and session stores. Secret
fields are excluded from `repr` so records can be logged safely.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from jwcrypto import jwk
from pydantic import BaseModel, Field


class AuthorizationState(BaseModel):
    """Authorization attempt state with PKCE and DPoP parameters.

    Written by `authorize` under the engine-generated attempt key and consumed
    exactly once by `callback`.
    """

    issuer: str
    did: str
    handle: str
    pds: str
    token_endpoint: str
    revocation_endpoint: Optional[str] = None
    redirect_uri: str
    pkce_verifier: str = Field(repr=False)
    dpop_jwk: Dict[str, Any] = Field(repr=False)
    caller_state: Optional[str] = None
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if now is None:
            now = datetime.now(timezone.utc)
        return self.expires_at <= now


class Session(BaseModel):
    """Active OAuth session with access and refresh tokens.

    Keyed by `sub`, the user's DID, which never changes across refreshes.
    `dpop_jwk` is the private key the access token is bound to.
    """

    sub: str
    issuer: str
    aud: str
    scope: str
    token_type: str = "DPoP"
    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    token_expires_at: Optional[datetime] = None
    dpop_jwk: Dict[str, Any] = Field(repr=False)
    token_endpoint: str
    revocation_endpoint: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    def dpop_key(self) -> jwk.JWK:
        return jwk.JWK(**self.dpop_jwk)
