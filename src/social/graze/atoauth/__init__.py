"""
atoauth - AT Protocol OAuth Client

This package implements an OAuth client for the Bluesky/AT Protocol ecosystem. It signs users
in through their own authorization server, keeps their DPoP-bound tokens, and refreshes them
when a session is resumed.

Key Components:
- app: Web application layer serving client metadata, keys, login and callback routes
- atproto: The OAuth client engine, signing keys, DPoP and client assertions
- stores: Pluggable storage for authorization state and sessions
- model: Database tables for the database-backed stores
- resolve: Identity resolution for AT Protocol DIDs and handles

Architecture Overview:
1. Authorization:
   - A handle or DID is resolved to its PDS and authorization server
   - PKCE and DPoP parameters are stored under a random attempt key
   - The user is redirected to the authorization server

2. Callback:
   - The attempt is validated and consumed exactly once
   - The code is exchanged for DPoP-bound tokens and a session is stored

3. Restore:
   - Stored sessions are returned directly while their access token is fresh
   - Stale sessions are refreshed once per subject, however many callers ask
"""
