import asyncio
import contextlib
import logging
from time import time
from typing import Optional

import aiohttp
from aiohttp import web
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
)
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from social.graze.atoauth.app.config import (
    ClientMetadataAppKey,
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    KeySetAppKey,
    MetricsClientAppKey,
    OAuthClientAppKey,
    PruneStateTaskAppKey,
    RedisClientAppKey,
    SessionAppKey,
    Settings,
    SettingsAppKey,
    load_settings,
)
from social.graze.atoauth.app.handlers.internal import handle_internal_alive
from social.graze.atoauth.app.handlers.oauth import (
    handle_atproto_callback,
    handle_atproto_client_metadata,
    handle_atproto_login,
    handle_jwks,
)
from social.graze.atoauth.app.metrics import create_metrics_client
from social.graze.atoauth.app.tasks import prune_state_task
from social.graze.atoauth.atproto.keyset import KeySet
from social.graze.atoauth.atproto.locks import KeyedLock, MemoryKeyedLock, RedisKeyedLock
from social.graze.atoauth.atproto.oauth import OAuthClient
from social.graze.atoauth.resolve.handle import SubjectResolver
from social.graze.atoauth.stores.base import SessionStore, StateStore
from social.graze.atoauth.stores.database import DatabaseSessionStore, DatabaseStateStore
from social.graze.atoauth.stores.memory import MemorySessionStore, MemoryStateStore
from social.graze.atoauth.stores.redis import RedisSessionStore, RedisStateStore

logger = logging.getLogger(__name__)


def trace_config_for(settings: Settings) -> aiohttp.TraceConfig:
    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        # Bodies and query strings are never traced.
        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logging.info("Starting request: %s %s", params.method, params.url.with_query(None))

        async def on_request_end(
            session, trace_config_ctx, params: aiohttp.TraceRequestEndParams
        ):
            logging.info(
                "Ending request: %s %s %s",
                params.method,
                params.url.with_query(None),
                params.response.status,
            )

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    return trace_config


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    app[SessionAppKey] = aiohttp.ClientSession(
        trace_configs=[trace_config_for(settings)]
    )

    metrics_client = create_metrics_client(
        settings.metrics_backend,
        host=settings.statsd_host,
        port=settings.statsd_port,
        debug=settings.debug,
        prefix=settings.statsd_prefix,
    )
    await metrics_client.connect()
    app[MetricsClientAppKey] = metrics_client

    state_store: StateStore
    session_store: SessionStore
    refresh_lock: KeyedLock

    if settings.store_backend == "redis":
        app[RedisClientAppKey] = redis.Redis.from_url(str(settings.redis_dsn))
        state_store = RedisStateStore(
            app[RedisClientAppKey], ttl=settings.state_ttl, fernet=settings.encryption_key
        )
        session_store = RedisSessionStore(
            app[RedisClientAppKey], fernet=settings.encryption_key
        )
        refresh_lock = RedisKeyedLock(app[RedisClientAppKey])
    elif settings.store_backend == "database":
        engine = create_async_engine(str(settings.pg_dsn))
        app[DatabaseAppKey] = engine
        database_session = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )
        app[DatabaseSessionMakerAppKey] = database_session
        database_state_store = DatabaseStateStore(
            database_session, fernet=settings.encryption_key
        )
        state_store = database_state_store
        session_store = DatabaseSessionStore(
            database_session, fernet=settings.encryption_key
        )
        refresh_lock = MemoryKeyedLock()
        app[PruneStateTaskAppKey] = asyncio.create_task(
            prune_state_task(database_state_store, metrics_client)
        )
    else:
        logger.warning(
            "Using in-memory state and session stores; sessions will not survive a restart"
        )
        state_store = MemoryStateStore(ttl=settings.state_ttl)
        session_store = MemorySessionStore()
        refresh_lock = MemoryKeyedLock()

    app[OAuthClientAppKey] = OAuthClient(
        client_metadata=app[ClientMetadataAppKey],
        key_set=app[KeySetAppKey],
        http_session=app[SessionAppKey],
        state_store=state_store,
        session_store=session_store,
        resolver=SubjectResolver(app[SessionAppKey], settings.plc_hostname),
        metrics_client=metrics_client,
        refresh_lock=refresh_lock,
        state_ttl=settings.state_ttl,
        token_refresh_margin=settings.token_refresh_margin,
    )

    logger.info("Startup complete")

    yield

    logger.info("Shutting down background tasks")

    if PruneStateTaskAppKey in app:
        app[PruneStateTaskAppKey].cancel()
        with contextlib.suppress(asyncio.exceptions.CancelledError):
            await app[PruneStateTaskAppKey]

    if DatabaseAppKey in app:
        await app[DatabaseAppKey].dispose()
    if RedisClientAppKey in app:
        await app[RedisClientAppKey].aclose()
    await app[SessionAppKey].close()
    await app[MetricsClientAppKey].close()


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        response = await handler(request)
        return response
    except web.HTTPException:
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        raise e


@web.middleware
async def metrics_middleware(request: web.Request, handler):
    metrics_client = request.app.get(MetricsClientAppKey)
    if metrics_client is None:
        return await handler(request)

    request_method: str = request.method
    request_path = request.path

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except web.HTTPException as e:
        response_status_code = e.status
        raise e
    except Exception as e:
        metrics_client.increment(
            "server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        raise e
    finally:
        metrics_client.timer(
            "server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        metrics_client.increment(
            "server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


def build_app(settings: Settings) -> web.Application:
    """
    Build the web application without starting its background context.

    Signing keys and client metadata are checked here, so a misconfigured
    client fails before it listens.

    Raises:
        KeySetError: No private key is configured or a key cannot be imported.
        InvalidConfigError: The base URL or redirect URIs are unusable.
    """
    app = web.Application(middlewares=[metrics_middleware, sentry_middleware])

    app[SettingsAppKey] = settings
    app[KeySetAppKey] = KeySet.load(settings.key_descriptors)
    app[ClientMetadataAppKey] = settings.client_metadata()

    app.add_routes(
        [
            web.get("/client-metadata.json", handle_atproto_client_metadata),
            web.get("/jwks.json", handle_jwks),
            web.get("/login", handle_atproto_login),
            web.get("/callback", handle_atproto_callback),
        ]
    )

    app.add_routes([web.get("/internal/alive", handle_internal_alive)])

    return app


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = load_settings()
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            integrations=[AioHttpIntegration()],
        )

    app = build_app(settings)
    app.cleanup_ctx.append(background_tasks)

    return app
