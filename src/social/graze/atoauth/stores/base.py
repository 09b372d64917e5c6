"""
Store interfaces.

`StateStore` holds in-flight authorization attempts keyed by the attempt key.
`SessionStore` holds completed sessions keyed by the subject DID. Both are
plain key/value contracts: the engine never caches what it reads and every
access goes through `get`, `set` or `delete`. Authorization state is also
consumed with `take`, which must be atomic across every process sharing the
store.
"""

from abc import ABC, abstractmethod
from typing import Generic, Optional, Type, TypeVar

from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel, ValidationError

from social.graze.atoauth.atproto.models import AuthorizationState, Session

RecordT = TypeVar("RecordT", bound=BaseModel)


class RecordCodecError(ValueError):
    """A stored record could not be decrypted or parsed."""


class RecordCodec(Generic[RecordT]):
    """
    Serializes a record to a JSON string, Fernet encrypted when a key is set.
    """

    def __init__(self, record_type: Type[RecordT], fernet: Optional[Fernet] = None) -> None:
        self._record_type = record_type
        self._fernet = fernet

    def encode(self, record: RecordT) -> str:
        payload = record.model_dump_json()
        if self._fernet is None:
            return payload
        return self._fernet.encrypt(payload.encode("utf-8")).decode("utf-8")

    def decode(self, value: str | bytes) -> RecordT:
        if isinstance(value, str):
            value = value.encode("utf-8")
        try:
            if self._fernet is not None:
                value = self._fernet.decrypt(value)
            return self._record_type.model_validate_json(value)
        except (InvalidToken, ValidationError) as e:
            raise RecordCodecError(
                f"Unable to decode stored {self._record_type.__name__}"
            ) from e


class StateStore(ABC):
    """Authorization attempt state, keyed by the engine-generated attempt key."""

    @abstractmethod
    async def set(self, key: str, state: AuthorizationState) -> None:
        pass

    @abstractmethod
    async def get(self, key: str) -> Optional[AuthorizationState]:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    @abstractmethod
    async def take(self, key: str) -> Optional[AuthorizationState]:
        """
        Remove and return the state for `key` in one step.

        When several callers take the same key concurrently, at most one
        receives the state.
        """
        pass


class SessionStore(ABC):
    """
    Sessions, keyed by subject DID.

    `set` replaces any prior record for the subject as a whole.
    """

    @abstractmethod
    async def set(self, sub: str, session: Session) -> None:
        pass

    @abstractmethod
    async def get(self, sub: str) -> Optional[Session]:
        pass

    @abstractmethod
    async def delete(self, sub: str) -> None:
        pass
