"""OAuth record tables for the database-backed stores.

Each row holds one serialized record (optionally Fernet encrypted) so that a
write always replaces the whole record.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Mapped, mapped_column

from social.graze.atoauth.model.base import Base, keypk, str512


class OAuthStateRecord(Base):
    """Authorization attempt state keyed by the attempt key."""

    __tablename__ = "oauth_states"

    key: Mapped[keypk]
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )


class OAuthSessionRecord(Base):
    """Session keyed by the subject DID."""

    __tablename__ = "oauth_sessions"

    sub: Mapped[keypk]
    issuer: Mapped[str512]
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    token_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )


def upsert_state_stmt(key: str, payload: str, created_at: datetime, expires_at: datetime):
    return (
        insert(OAuthStateRecord)
        .values(
            [
                {
                    "key": key,
                    "payload": payload,
                    "created_at": created_at,
                    "expires_at": expires_at,
                }
            ]
        )
        .on_conflict_do_update(
            index_elements=["key"],
            set_={
                "payload": payload,
                "created_at": created_at,
                "expires_at": expires_at,
            },
        )
    )


def upsert_session_stmt(
    sub: str,
    issuer: str,
    payload: str,
    token_expires_at: Optional[datetime],
    updated_at: datetime,
):
    return (
        insert(OAuthSessionRecord)
        .values(
            [
                {
                    "sub": sub,
                    "issuer": issuer,
                    "payload": payload,
                    "token_expires_at": token_expires_at,
                    "updated_at": updated_at,
                }
            ]
        )
        .on_conflict_do_update(
            index_elements=["sub"],
            set_={
                "issuer": issuer,
                "payload": payload,
                "token_expires_at": token_expires_at,
                "updated_at": updated_at,
            },
        )
    )
