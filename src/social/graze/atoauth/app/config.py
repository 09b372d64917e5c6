"""
Configuration Module for the atoauth service

This module defines the configuration system for the AT Protocol OAuth client,
using Pydantic for settings validation and dependency injection through AppKeys.

Settings are loaded from environment variables (and a `.env` file when present).
Values that identify the client or carry key material have no defaults: a missing
or malformed value fails at startup with a `ConfigError` instead of falling back
to a placeholder.

Key configuration areas include:
- Client identity (base URL, display name and policy URIs)
- Signing keys (importable private key descriptors)
- State and session storage backends
- Token refresh behaviour
- Monitoring and error reporting
"""

import asyncio
import base64
import logging
from typing import Annotated, Any, Final, List, Literal, Optional, Tuple

from aiohttp import ClientSession, web
from cryptography.fernet import Fernet
from pydantic import (
    AliasChoices,
    Field,
    PostgresDsn,
    RedisDsn,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from redis import asyncio as redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from social.graze.atoauth.app.metrics import MetricsClient
from social.graze.atoauth.atproto.errors import ConfigError
from social.graze.atoauth.atproto.keyset import KeyDescriptor, KeySet
from social.graze.atoauth.atproto.metadata import (
    ClientMetadataDocument,
    build_client_metadata,
)
from social.graze.atoauth.atproto.oauth import OAuthClient

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings for the OAuth client.

    Environment variables are mapped to fields by name, e.g. BASE_URL,
    PRIVATE_KEY_1 or STORE_BACKEND.
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    debug: bool = False
    """
    Enable debug mode for verbose request tracing.
    Set with DEBUG=true environment variable.
    """

    http_port: int = Field(alias="port", default=3000)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    base_url: str
    """
    Public base URL of the client (required). The client id, JWKS URI and
    default redirect URI are derived from it.
    Set with BASE_URL environment variable.
    """

    client_name: str = Field(
        "My App", validation_alias=AliasChoices("client_name", "app_name")
    )
    """Human readable client name shown by the authorization server."""

    client_uri: Optional[str] = None
    """Client home page. Defaults to the base URL."""

    logo_uri: Optional[str] = None
    """Client logo. Defaults to {base_url}/logo.png."""

    tos_uri: Optional[str] = None
    """Terms of service. Defaults to {base_url}/tos."""

    policy_uri: Optional[str] = None
    """Privacy policy. Defaults to {base_url}/policy."""

    redirect_uris: Annotated[List[str], NoDecode] = list()
    """
    Comma-separated redirect URIs, absolute or relative to the base URL. The
    first one is used for callbacks. Defaults to {base_url}/callback.
    """

    scope: str = "atproto transition:generic"
    """OAuth scope requested for every authorization."""

    token_endpoint_auth_signing_alg: str = "ES256"
    """Algorithm used to sign client assertions."""

    private_key_1: Optional[str] = None
    private_key_2: Optional[str] = None
    private_key_3: Optional[str] = None
    """
    Private signing keys as JWK JSON or PEM. At least one must be set.
    Set with PRIVATE_KEY_1, PRIVATE_KEY_2 and PRIVATE_KEY_3.
    """

    plc_hostname: str = "plc.directory"
    """
    Hostname for the PLC directory service for DID resolution.
    Set with PLC_HOSTNAME environment variable.
    """

    store_backend: Literal["memory", "redis", "database"] = "memory"
    """
    Backend for authorization state and sessions. `memory` does not survive a
    restart and is only suitable for a single instance.
    """

    redis_dsn: Optional[RedisDsn] = Field(
        None,
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )
    """
    Redis connection string, required by the redis backend.
    Set with REDIS_DSN or REDIS_URL environment variables.
    """

    pg_dsn: Optional[PostgresDsn] = Field(
        None,
        validation_alias=AliasChoices("pg_dsn", "database_url"),
    )
    """
    PostgreSQL connection string, required by the database backend.
    Set with PG_DSN or DATABASE_URL environment variables.
    """

    encryption_key: Optional[Fernet] = None
    """
    Fernet key used to encrypt stored state and sessions, base64 encoded.
    Stored records are not encrypted when unset.
    Set with ENCRYPTION_KEY environment variable.
    """

    state_ttl: int = 600
    """Seconds an authorization attempt stays valid."""

    token_refresh_margin: int = 60
    """Access tokens expiring within this many seconds are refreshed on restore."""

    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    metrics_backend: Literal["noop", "telegraf"] = "noop"
    """Metrics backend."""

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    statsd_prefix: str = "atoauth"
    """Prepended to every metric name sent to Telegraf."""

    @field_validator("base_url", mode="after")
    @classmethod
    def strip_base_url(cls, v: str) -> str:
        return v.strip().rstrip("/")

    @field_validator("redirect_uris", mode="before")
    @classmethod
    def split_redirect_uris(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [uri.strip() for uri in v.split(",") if uri.strip()]
        return v

    @field_validator("encryption_key", mode="before")
    @classmethod
    def decode_encryption_key(cls, v: Any) -> Optional[Fernet]:
        """
        Accept a Fernet object or a base64-encoded Fernet key string.

        Raises:
            ValueError: If the input is neither a Fernet object nor a valid key
        """
        if v is None or isinstance(v, Fernet):
            return v
        elif isinstance(v, str):
            if not v:
                return None
            key_data = base64.b64decode(v)
            return Fernet(key_data)
        raise ValueError(
            "encryption_key must be a Fernet object or a base64-encoded key string"
        )

    @model_validator(mode="after")
    def check_store_backend(self) -> "Settings":
        if self.store_backend == "redis" and self.redis_dsn is None:
            raise ValueError("store_backend=redis requires REDIS_DSN")
        if self.store_backend == "database" and self.pg_dsn is None:
            raise ValueError("store_backend=database requires PG_DSN")
        return self

    @property
    def key_descriptors(self) -> List[KeyDescriptor]:
        """Configured private keys with their default key ids."""
        descriptors: List[Tuple[str, str]] = []
        for kid, value in enumerate(
            [self.private_key_1, self.private_key_2, self.private_key_3]
        ):
            if value is not None and value.strip():
                descriptors.append((str(kid), value))
        return descriptors

    def client_metadata(self) -> ClientMetadataDocument:
        """
        Build the client metadata document.

        Raises:
            InvalidConfigError: The base URL or redirect URIs are unusable.
        """
        return build_client_metadata(
            base_url=self.base_url,
            client_name=self.client_name,
            scope=self.scope,
            token_endpoint_auth_signing_alg=self.token_endpoint_auth_signing_alg,
            redirect_uris=self.redirect_uris,
            client_uri=self.client_uri,
            logo_uri=self.logo_uri,
            tos_uri=self.tos_uri,
            policy_uri=self.policy_uri,
        )


def load_settings(**overrides: Any) -> Settings:
    """
    Load settings from the environment.

    Raises:
        ConfigError: A required value is missing or malformed.
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'settings'}: {error['msg']}"
            for error in e.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from e


# Application context keys for dependency injection
SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

RedisClientAppKey: Final = web.AppKey("redis_client", redis.Redis)
"""AppKey for accessing the Redis client"""

DatabaseAppKey: Final = web.AppKey("database", AsyncEngine)
"""AppKey for accessing the SQLAlchemy async database engine"""

MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
"""AppKey for the metrics client"""

DatabaseSessionMakerAppKey: Final = web.AppKey(
    "database_session_maker", async_sessionmaker[AsyncSession]
)
"""AppKey for the SQLAlchemy async session factory"""

KeySetAppKey: Final = web.AppKey("key_set", KeySet)
"""AppKey for the client signing keys"""

ClientMetadataAppKey: Final = web.AppKey("client_metadata", ClientMetadataDocument)
"""AppKey for the client metadata document"""

OAuthClientAppKey: Final = web.AppKey("oauth_client", OAuthClient)
"""AppKey for the OAuth client engine"""

PruneStateTaskAppKey: Final = web.AppKey("prune_state_task", asyncio.Task[None])
"""AppKey for the expired authorization state cleanup task"""
