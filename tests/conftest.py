"""
Shared test configuration and fixtures for atoauth tests.

Provides database setup for the database-backed stores, Redis clients, and the
fake HTTP session and OAuth client used across the flow tests.
"""

import os
import uuid
import pytest
import pytest_asyncio
import fakeredis.aioredis
import redis.asyncio as redis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from social.graze.atoauth.app.metrics import NoOpMetricsClient
from social.graze.atoauth.atproto.oauth import OAuthClient
from social.graze.atoauth.model.base import Base
from social.graze.atoauth.stores.memory import MemorySessionStore, MemoryStateStore

from tests.test_helpers import (
    FakeHttpSession,
    StubResolver,
    make_client_metadata,
    make_key_set,
)


# Test database configuration
TEST_DB_HOST = os.getenv("TEST_DB_HOST", "postgres")
TEST_DB_PORT = os.getenv("TEST_DB_PORT", "5432")
TEST_DB_USER = os.getenv("TEST_DB_USER", "postgres")
TEST_DB_PASSWORD = os.getenv("TEST_DB_PASSWORD", "password")
TEST_DB_NAME = os.getenv("TEST_DB_NAME", "atoauth_test_db")

# Admin URL for database creation/deletion (connects to postgres database)
ADMIN_DATABASE_URL = f"postgresql+asyncpg://{TEST_DB_USER}:{TEST_DB_PASSWORD}@{TEST_DB_HOST}:{TEST_DB_PORT}/postgres"


async def check_postgres_available():
    """Check if PostgreSQL is available for testing."""
    try:
        admin_engine = create_async_engine(ADMIN_DATABASE_URL, echo=False)
        async with admin_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        await admin_engine.dispose()
        return True
    except Exception:
        return False


@pytest_asyncio.fixture(scope="function")
async def test_database():
    """Create and clean up test database for each test function."""
    # Skip if PostgreSQL is not available
    if not await check_postgres_available():
        pytest.skip("PostgreSQL database not available for testing")

    # Use a unique database name for each test to avoid conflicts
    unique_db_name = f"atoauth_test_{uuid.uuid4().hex[:8]}"
    unique_db_url = (
        f"postgresql+asyncpg://{TEST_DB_USER}:{TEST_DB_PASSWORD}@"
        f"{TEST_DB_HOST}:{TEST_DB_PORT}/{unique_db_name}"
    )

    admin_engine = create_async_engine(
        ADMIN_DATABASE_URL, echo=False, isolation_level="AUTOCOMMIT"
    )

    try:
        async with admin_engine.connect() as conn:
            await conn.execute(text(f"CREATE DATABASE {unique_db_name}"))

        yield unique_db_url

    finally:
        async with admin_engine.connect() as conn:
            await conn.execute(text(f"DROP DATABASE IF EXISTS {unique_db_name}"))
        await admin_engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def engine(test_database):
    """Create async SQLAlchemy engine for testing with PostgreSQL."""
    engine = create_async_engine(
        test_database,
        echo=False,
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_maker(engine):
    """Create the async session factory the database stores are built with."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# Redis test configuration and fixtures
TEST_REDIS_HOST = os.getenv("TEST_REDIS_HOST", "valkey")
TEST_REDIS_PORT = int(os.getenv("TEST_REDIS_PORT", "6379"))
TEST_REDIS_DB = int(os.getenv("TEST_REDIS_DB", "15"))  # Use a separate test DB


async def check_redis_available():
    """Check if Redis is available for testing."""
    try:
        redis_client = redis.Redis(
            host=TEST_REDIS_HOST,
            port=TEST_REDIS_PORT,
            db=TEST_REDIS_DB,
            decode_responses=False,
        )
        await redis_client.ping()
        await redis_client.aclose()
        return True
    except Exception:
        return False


@pytest_asyncio.fixture
async def redis_client():
    """Provide real Redis client for integration tests."""
    if not await check_redis_available():
        pytest.skip("Redis server not available for testing")

    client = redis.Redis(
        host=TEST_REDIS_HOST,
        port=TEST_REDIS_PORT,
        db=TEST_REDIS_DB,
        decode_responses=False,
    )

    await client.flushdb()

    yield client

    await client.flushdb()
    await client.aclose()


@pytest_asyncio.fixture
async def fake_redis_client():
    """Provide fake Redis client for unit tests."""
    client = fakeredis.aioredis.FakeRedis(decode_responses=False)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def http_session():
    """A fake HTTP session with no routes."""
    return FakeHttpSession()


@pytest.fixture
def resolver():
    return StubResolver()


@pytest.fixture
def state_store():
    return MemoryStateStore()


@pytest.fixture
def session_store():
    return MemorySessionStore()


@pytest.fixture
def oauth_client(http_session, resolver, state_store, session_store):
    """An OAuth client wired to in-memory stores and the fake HTTP session."""
    return OAuthClient(
        client_metadata=make_client_metadata(),
        key_set=make_key_set("0"),
        http_session=http_session,
        state_store=state_store,
        session_store=session_store,
        resolver=resolver,
        metrics_client=NoOpMetricsClient(),
    )
