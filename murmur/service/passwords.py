from __future__ import annotations

from typing import Tuple

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import HashingError, InvalidHash, VerificationError, VerifyMismatchError

from murmur.logging import get_logger
from murmur.service.errors import ServerError

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"

# Fixed cost: roughly 50ms per hash on a current server core.
_TIME_COST = 3
_MEMORY_COST_KIB = 64 * 1024
_PARALLELISM = 2


class PasswordHasher:
    """Salted one-way password hashing with argon2id."""

    def __init__(
        self,
        *,
        time_cost: int = _TIME_COST,
        memory_cost: int = _MEMORY_COST_KIB,
        parallelism: int = _PARALLELISM,
    ) -> None:
        self._hasher = _Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, plaintext: str) -> Tuple[str, str]:
        """Return ``(digest, algorithm)``; raises ``ServerError`` if hashing fails.

        Callers hash before writing anything, so a failure here leaves no
        partially created account behind.
        """
        try:
            return self._hasher.hash(plaintext), PASSWORD_ALGO
        except HashingError as exc:
            logger.error("password_hash_failed", error=str(exc))
            raise ServerError("unable to process password") from exc

    def verify(self, plaintext: str, digest: str, algo: str = PASSWORD_ALGO) -> bool:
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_digest_unreadable")
            return False
