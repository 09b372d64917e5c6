"""
atoauth Application Layer

This package exposes the OAuth client over HTTP using the aiohttp framework.

Key Components:
- server.py: Web server construction, dependency wiring and middleware
- config.py: Configuration management using Pydantic settings
- cli.py: Entry point and logging configuration
- metrics.py: Metrics abstraction (Telegraf or no-op)
- handlers/: Request handlers for the OAuth and internal endpoints
- util/: Operator utilities such as signing key generation

It provides the following endpoints:
- GET /client-metadata.json and GET /jwks.json
- GET /login and GET /callback
- GET /internal/alive
"""
