from __future__ import annotations

from typing import Protocol

from argon2 import PasswordHasher as _Argon2Hasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from latchkey.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher(Protocol):
    def hash(self, plaintext: str) -> str: ...

    def verify(self, plaintext: str, password_hash: str) -> bool: ...


class Argon2PasswordHasher:
    """Argon2id hashing; ``verify`` never raises for a mismatch."""

    def __init__(self, *, time_cost: int | None = None, memory_cost: int | None = None) -> None:
        kwargs = {}
        if time_cost is not None:
            kwargs["time_cost"] = time_cost
        if memory_cost is not None:
            kwargs["memory_cost"] = memory_cost
        self._hasher = _Argon2Hasher(type=Type.ID, **kwargs)

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, password_hash: str) -> bool:
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerificationError:
            return False
        except InvalidHashError:
            logger.warning("password_hash_invalid")
            return False
