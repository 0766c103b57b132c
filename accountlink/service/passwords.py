from __future__ import annotations

from typing import Protocol

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from accountlink.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher(Protocol):
    def hash(self, password: str) -> str: ...

    def verify(self, password_hash: str, password: str) -> bool: ...


class Argon2PasswordHasher:
    """argon2id hashing with argon2-cffi's default cost parameters."""

    algo = "argon2id"

    def __init__(self, **params) -> None:
        self._hasher = _Argon2Hasher(type=Type.ID, **params)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False
