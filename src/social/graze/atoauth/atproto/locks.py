"""
Keyed locks.

A keyed lock serializes work per key (a subject DID, an attempt key) without
blocking unrelated keys. `MemoryKeyedLock` serializes within one process;
`RedisKeyedLock` serializes across every process sharing a Redis server.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Dict, Tuple

import redis.asyncio as redis
from redis.exceptions import LockNotOwnedError

from social.graze.atoauth.atproto.errors import LockTimeoutError

logger = logging.getLogger(__name__)


class KeyedLock(ABC):
    @abstractmethod
    def hold(self, key: str) -> AsyncContextManager[None]:
        """Hold the lock for `key` for the duration of an `async with` block."""
        pass

class MemoryKeyedLock(KeyedLock):
    """
    One `asyncio.Lock` per key, dropped once no task holds or waits for it.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)

        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[key]
            if users <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)


class RedisKeyedLock(KeyedLock):
    """
    A redis-py lock per key.

    The lease expires after `expires_in` seconds so a crashed holder cannot
    block the key forever. Release runs as a single Lua script that only
    deletes the lease when it still carries this holder's token.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        prefix: str = "atoauth:lock:",
        expires_in: int = 30,
        wait_timeout: float = 30.0,
        poll_interval: float = 0.05,
    ) -> None:
        self._redis = redis_client
        self._prefix = prefix
        self._expires_in = expires_in
        self._wait_timeout = wait_timeout
        self._poll_interval = poll_interval

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        name = f"{self._prefix}{key}"
        lock = self._redis.lock(
            name,
            timeout=self._expires_in,
            sleep=self._poll_interval,
            blocking_timeout=self._wait_timeout,
        )
        if not await lock.acquire():
            raise LockTimeoutError(f"Timed out waiting for lock {name}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockNotOwnedError:
                logger.warning("Lock %s expired before it was released", name)
