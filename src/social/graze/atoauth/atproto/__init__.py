"""
AT Protocol OAuth Engine

This package implements the OAuth client engine used to authenticate users against their
AT Protocol authorization server.

Key Components:
- oauth.py: OAuthClient with authorize, callback, restore and revoke
- refresh.py: Token refresh with per-subject single flight
- session.py: AuthorizedSession, a live session making DPoP-bound PDS requests
- keyset.py: Client signing keys and the public JWK Set
- metadata.py: Client metadata document
- chain.py: Middleware chain for outgoing requests (DPoP, client assertions, metrics)
- pds.py: Authorization server discovery
- jwt.py: DPoP proof and client assertion claims
- locks.py: Keyed locks (in-process and Redis)
- models.py: Authorization state and session records
- errors.py: Error taxonomy

Key Features:
- OAuth 2.0 authorization code flow with PKCE (S256)
- Pushed authorization requests when the server supports them
- DPoP-bound access tokens with server nonce handling
- `private_key_jwt` client authentication
"""
