"""
PostgreSQL stores.

Writes are upserts of the whole serialized record. Expired authorization
state is invisible to `get` and removed by `delete_expired`, which the server
runs periodically.
"""

from datetime import datetime, timezone
import logging
from typing import Optional

from cryptography.fernet import Fernet
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from social.graze.atoauth.atproto.models import AuthorizationState, Session
from social.graze.atoauth.model.oauth import (
    OAuthSessionRecord,
    OAuthStateRecord,
    upsert_session_stmt,
    upsert_state_stmt,
)
from social.graze.atoauth.stores.base import RecordCodec, SessionStore, StateStore

logger = logging.getLogger(__name__)


class DatabaseStateStore(StateStore):
    def __init__(
        self,
        database_session_maker: async_sessionmaker[AsyncSession],
        fernet: Optional[Fernet] = None,
    ) -> None:
        self._database_session_maker = database_session_maker
        self._codec = RecordCodec(AuthorizationState, fernet)

    async def set(self, key: str, state: AuthorizationState) -> None:
        stmt = upsert_state_stmt(
            key, self._codec.encode(state), state.created_at, state.expires_at
        )
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                await database_session.execute(stmt)

    async def get(self, key: str) -> Optional[AuthorizationState]:
        now = datetime.now(timezone.utc)
        stmt = select(OAuthStateRecord.payload).where(
            OAuthStateRecord.key == key,
            OAuthStateRecord.expires_at > now,
        )
        async with self._database_session_maker() as database_session:
            payload: Optional[str] = (await database_session.scalars(stmt)).first()

        if payload is None:
            return None
        return self._codec.decode(payload)

    async def delete(self, key: str) -> None:
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                await database_session.execute(
                    delete(OAuthStateRecord).where(OAuthStateRecord.key == key)
                )

    async def take(self, key: str) -> Optional[AuthorizationState]:
        now = datetime.now(timezone.utc)
        stmt = (
            delete(OAuthStateRecord)
            .where(
                OAuthStateRecord.key == key,
                OAuthStateRecord.expires_at > now,
            )
            .returning(OAuthStateRecord.payload)
        )
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                result = await database_session.execute(stmt)
                payload: Optional[str] = result.scalar_one_or_none()

        if payload is None:
            return None
        return self._codec.decode(payload)

    async def delete_expired(self, now: Optional[datetime] = None) -> int:
        if now is None:
            now = datetime.now(timezone.utc)
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                result = await database_session.execute(
                    delete(OAuthStateRecord).where(OAuthStateRecord.expires_at <= now)
                )
        count = result.rowcount or 0
        if count > 0:
            logger.info("Deleted %d expired authorization state(s)", count)
        return count


class DatabaseSessionStore(SessionStore):
    def __init__(
        self,
        database_session_maker: async_sessionmaker[AsyncSession],
        fernet: Optional[Fernet] = None,
    ) -> None:
        self._database_session_maker = database_session_maker
        self._codec = RecordCodec(Session, fernet)

    async def set(self, sub: str, session: Session) -> None:
        stmt = upsert_session_stmt(
            sub,
            session.issuer,
            self._codec.encode(session),
            session.token_expires_at,
            session.updated_at,
        )
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                await database_session.execute(stmt)

    async def get(self, sub: str) -> Optional[Session]:
        stmt = select(OAuthSessionRecord.payload).where(OAuthSessionRecord.sub == sub)
        async with self._database_session_maker() as database_session:
            payload: Optional[str] = (await database_session.scalars(stmt)).first()

        if payload is None:
            return None
        return self._codec.decode(payload)

    async def delete(self, sub: str) -> None:
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                await database_session.execute(
                    delete(OAuthSessionRecord).where(OAuthSessionRecord.sub == sub)
                )
