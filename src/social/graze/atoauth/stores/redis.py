"""
Redis stores.

Authorization state is written with a Redis expiry so abandoned attempts
disappear on their own. Sessions are written without expiry; they live until
revoked or until their refresh token is rejected.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from cryptography.fernet import Fernet

from social.graze.atoauth.atproto.models import AuthorizationState, Session
from social.graze.atoauth.stores.base import RecordCodec, SessionStore, StateStore

logger = logging.getLogger(__name__)


class RedisStateStore(StateStore):
    def __init__(
        self,
        redis_client: redis.Redis,
        ttl: int = 600,
        prefix: str = "atoauth:state:",
        fernet: Optional[Fernet] = None,
    ) -> None:
        self._redis = redis_client
        self._ttl = ttl
        self._prefix = prefix
        self._codec = RecordCodec(AuthorizationState, fernet)

    async def set(self, key: str, state: AuthorizationState) -> None:
        await self._redis.set(f"{self._prefix}{key}", self._codec.encode(state), ex=self._ttl)

    async def get(self, key: str) -> Optional[AuthorizationState]:
        value = await self._redis.get(f"{self._prefix}{key}")
        if value is None:
            return None
        return self._codec.decode(value)

    async def delete(self, key: str) -> None:
        await self._redis.delete(f"{self._prefix}{key}")

    async def take(self, key: str) -> Optional[AuthorizationState]:
        value = await self._redis.getdel(f"{self._prefix}{key}")
        if value is None:
            return None
        return self._codec.decode(value)


class RedisSessionStore(SessionStore):
    def __init__(
        self,
        redis_client: redis.Redis,
        prefix: str = "atoauth:session:",
        fernet: Optional[Fernet] = None,
    ) -> None:
        self._redis = redis_client
        self._prefix = prefix
        self._codec = RecordCodec(Session, fernet)

    async def set(self, sub: str, session: Session) -> None:
        await self._redis.set(f"{self._prefix}{sub}", self._codec.encode(session))

    async def get(self, sub: str) -> Optional[Session]:
        value = await self._redis.get(f"{self._prefix}{sub}")
        if value is None:
            return None
        return self._codec.decode(value)

    async def delete(self, sub: str) -> None:
        await self._redis.delete(f"{self._prefix}{sub}")
