"""
In-process stores.

Records are kept serialized so that callers never share a mutable object with
the store. Nothing survives a restart.
"""

import time
from typing import Callable, Dict, Optional, Tuple

from social.graze.atoauth.atproto.models import AuthorizationState, Session
from social.graze.atoauth.stores.base import RecordCodec, SessionStore, StateStore


class MemoryStateStore(StateStore):
    """Authorization state evicted `ttl` seconds after it was written."""

    def __init__(
        self, ttl: int = 600, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._ttl = ttl
        self._clock = clock
        self._codec = RecordCodec(AuthorizationState)
        self._entries: Dict[str, Tuple[float, str]] = {}

    def __len__(self) -> int:
        self._evict()
        return len(self._entries)

    def _evict(self) -> None:
        now = self._clock()
        expired = [key for key, (deadline, _) in self._entries.items() if deadline <= now]
        for key in expired:
            del self._entries[key]

    async def set(self, key: str, state: AuthorizationState) -> None:
        self._evict()
        self._entries[key] = (self._clock() + self._ttl, self._codec.encode(state))

    async def get(self, key: str) -> Optional[AuthorizationState]:
        self._evict()
        entry = self._entries.get(key)
        if entry is None:
            return None
        return self._codec.decode(entry[1])

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def take(self, key: str) -> Optional[AuthorizationState]:
        self._evict()
        entry = self._entries.pop(key, None)
        if entry is None:
            return None
        return self._codec.decode(entry[1])


class MemorySessionStore(SessionStore):
    def __init__(self) -> None:
        self._codec = RecordCodec(Session)
        self._entries: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def set(self, sub: str, session: Session) -> None:
        self._entries[sub] = self._codec.encode(session)

    async def get(self, sub: str) -> Optional[Session]:
        payload = self._entries.get(sub)
        if payload is None:
            return None
        return self._codec.decode(payload)

    async def delete(self, sub: str) -> None:
        self._entries.pop(sub, None)
