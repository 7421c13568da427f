from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from murmur.config import Settings
from murmur.logging import get_logger
from murmur.service.errors import AuthenticationError, ValidationError
from murmur.storage.models import User

logger = get_logger(__name__)

TWO_FACTOR_DIGITS = 6
_TWO_FACTOR_LOW = 10 ** (TWO_FACTOR_DIGITS - 1)
_TWO_FACTOR_SPAN = 10 ** TWO_FACTOR_DIGITS - _TWO_FACTOR_LOW

INVALID_EMAIL_TOKEN = "verification token is invalid or expired"
INVALID_TWO_FACTOR_CODE = "verification code is invalid or expired"


class VerificationStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def consume_email_verification(self, token_hash: str, now: datetime) -> Optional[User]: ...

    def clear_two_factor_code(
        self, user_id: str, expected_hash: Optional[str] = None
    ) -> bool: ...


@dataclass(frozen=True)
class VerificationArtifact:
    """A one-time secret: ``plaintext`` goes to the user, the rest is stored."""

    plaintext: str
    digest: str
    expires_at: datetime

    def __repr__(self) -> str:
        return f"VerificationArtifact(digest={self.digest[:8]}..., expires_at={self.expires_at.isoformat()})"


def digest_secret(plaintext: str) -> str:
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


def constant_time_equals(presented: str, expected: str) -> bool:
    """Compare two secrets without leaking how many leading characters match.

    Inputs of different length are rejected before any content comparison.
    """
    a = presented.encode("utf-8")
    b = expected.encode("utf-8")
    if len(a) != len(b):
        return False
    return hmac.compare_digest(a, b)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VerificationCodes:
    """Creates and consumes email verification tokens and 2FA codes.

    Plaintexts are returned once for delivery and never stored. Consumption is
    single-use: the store clears the digest in the same operation that accepts
    it. Wrong, expired and already-used secrets all fail with one message.
    """

    def __init__(
        self,
        settings: Settings,
        store: VerificationStore,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self._email_ttl = timedelta(minutes=settings.email_verification_ttl_minutes)
        self._two_factor_ttl = timedelta(minutes=settings.two_factor_ttl_minutes)
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    @property
    def two_factor_window_seconds(self) -> int:
        return int(self._two_factor_ttl.total_seconds())

    def create_email_verification_token(self) -> VerificationArtifact:
        plaintext = secrets.token_hex(32)
        return VerificationArtifact(
            plaintext=plaintext,
            digest=digest_secret(plaintext),
            expires_at=self._clock() + self._email_ttl,
        )

    def consume_email_verification_token(self, plaintext: str) -> User:
        user = self.store.consume_email_verification(digest_secret(plaintext), self._clock())
        if user is None:
            raise ValidationError(INVALID_EMAIL_TOKEN)
        logger.info("email_verified", user_id=user.id)
        return user

    def create_two_factor_code(self) -> VerificationArtifact:
        # randbelow draws from the exact range, so every code is equally likely
        plaintext = str(_TWO_FACTOR_LOW + secrets.randbelow(_TWO_FACTOR_SPAN))
        return VerificationArtifact(
            plaintext=plaintext,
            digest=digest_secret(plaintext),
            expires_at=self._clock() + self._two_factor_ttl,
        )

    def two_factor_code_matches(
        self,
        presented: str,
        stored_digest: Optional[str],
        expires_at: Optional[datetime],
    ) -> bool:
        if not stored_digest or expires_at is None:
            return False
        if expires_at <= self._clock():
            return False
        return constant_time_equals(digest_secret(presented), stored_digest)

    def consume_two_factor_code(self, user_id: str, plaintext: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise AuthenticationError(INVALID_TWO_FACTOR_CODE)
        if not self.two_factor_code_matches(
            plaintext, user.two_factor_code_hash, user.two_factor_code_expires
        ):
            raise AuthenticationError(INVALID_TWO_FACTOR_CODE)
        # A concurrent consumer that cleared it first wins; this one fails
        if not self.store.clear_two_factor_code(user_id, expected_hash=user.two_factor_code_hash):
            raise AuthenticationError(INVALID_TWO_FACTOR_CODE)
        user.two_factor_code_hash = None
        user.two_factor_code_expires = None
        return user
