"""
Unit tests for social.graze.atoauth.atproto.locks
"""

import asyncio
from unittest.mock import patch

import pytest

from social.graze.atoauth.atproto.errors import LockTimeoutError
from social.graze.atoauth.atproto.locks import MemoryKeyedLock, RedisKeyedLock


async def record_overlap(lock, key, events):
    async with lock.hold(key):
        events.append(("enter", key))
        await asyncio.sleep(0.01)
        events.append(("exit", key))


class TestMemoryKeyedLock:
    """Test suite for MemoryKeyedLock."""

    async def test_same_key_is_serialized(self):
        """Test holders of one key never overlap."""
        lock = MemoryKeyedLock()
        events = []

        await asyncio.gather(*[record_overlap(lock, "a", events) for _ in range(3)])

        assert events == [("enter", "a"), ("exit", "a")] * 3

    async def test_different_keys_run_concurrently(self):
        """Test unrelated keys do not wait for each other."""
        lock = MemoryKeyedLock()
        events = []

        await asyncio.gather(
            record_overlap(lock, "a", events), record_overlap(lock, "b", events)
        )

        assert [kind for kind, _ in events[:2]] == ["enter", "enter"]

    async def test_entries_are_dropped(self):
        """Test locks are removed once nobody holds or waits for them."""
        lock = MemoryKeyedLock()

        await asyncio.gather(*[record_overlap(lock, "a", []) for _ in range(3)])

        assert len(lock) == 0

    async def test_released_on_error(self):
        """Test an exception inside the block releases the lock."""
        lock = MemoryKeyedLock()

        with pytest.raises(RuntimeError):
            async with lock.hold("a"):
                raise RuntimeError("boom")

        async with lock.hold("a"):
            pass
        assert len(lock) == 0


class TestRedisKeyedLock:
    """Test suite for RedisKeyedLock."""

    async def test_same_key_is_serialized(self, fake_redis_client):
        """Test holders of one key never overlap."""
        lock = RedisKeyedLock(fake_redis_client, poll_interval=0.005)
        events = []

        await asyncio.gather(*[record_overlap(lock, "a", events) for _ in range(3)])

        assert events == [("enter", "a"), ("exit", "a")] * 3
        assert await fake_redis_client.exists("atoauth:lock:a") == 0

    async def test_lease_has_expiry(self, fake_redis_client):
        """Test the lease is written with an expiry."""
        lock = RedisKeyedLock(fake_redis_client, expires_in=10)

        async with lock.hold("a"):
            ttl = await fake_redis_client.ttl("atoauth:lock:a")

        assert 0 < ttl <= 10

    async def test_wait_timeout(self, fake_redis_client):
        """Test waiting past the timeout raises LockTimeoutError."""
        lock = RedisKeyedLock(fake_redis_client, wait_timeout=0.05, poll_interval=0.01)
        await fake_redis_client.set("atoauth:lock:a", "someone-else", ex=30)

        with pytest.raises(LockTimeoutError):
            async with lock.hold("a"):
                pass

    async def test_release_keeps_foreign_lease(self, fake_redis_client):
        """Test a holder whose lease expired does not delete another holder's lease."""
        lock = RedisKeyedLock(fake_redis_client)

        async with lock.hold("a"):
            await fake_redis_client.set("atoauth:lock:a", "someone-else")

        assert await fake_redis_client.get("atoauth:lock:a") == b"someone-else"

    async def test_release_is_a_single_compare_and_delete(self, fake_redis_client):
        """Test release never reads the lease in a separate round trip before deleting it."""
        lock = RedisKeyedLock(fake_redis_client)
        original_get = fake_redis_client.get

        async def get_then_take_over(name):
            value = await original_get(name)
            await fake_redis_client.set(name, "someone-else")
            return value

        with patch.object(
            fake_redis_client, "get", side_effect=get_then_take_over
        ) as mock_get:
            async with lock.hold("a"):
                pass

        mock_get.assert_not_called()
        assert await fake_redis_client.exists("atoauth:lock:a") == 0
