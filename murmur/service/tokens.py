from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

from murmur.config import Settings
from murmur.logging import get_logger
from murmur.service.errors import (
    AccessTokenExpiredError,
    AuthenticationError,
    ForbiddenError,
    InfrastructureError,
)
from murmur.storage.errors import StorageUnavailable

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class TokenCache(Protocol):
    async def set_refresh_token(self, user_id: str, token: str, ttl_seconds: int) -> None: ...

    async def get_refresh_token(self, user_id: str) -> Optional[str]: ...

    async def delete_refresh_token(self, user_id: str) -> None: ...

    async def record_two_factor_failure(self, user_id: str, window_seconds: int) -> int: ...

    async def clear_two_factor_failures(self, user_id: str) -> None: ...


class _TokenExpired(Exception):
    """Signature and claims verified, but the token is past its expiry."""


@dataclass
class SessionTokens:
    access_token: str
    refresh_token: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer:
    """Issues and validates HS256 access and refresh tokens.

    Access tokens are stateless. Each user has at most one live refresh token,
    held in the token cache; issuing a new one overwrites the old, and a
    presented refresh token must match the cached value byte for byte.
    """

    def __init__(
        self,
        settings: Settings,
        cache: TokenCache,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self._clock = clock
        self._secrets = {
            ACCESS: settings.access_token_secret.encode(),
            REFRESH: settings.refresh_token_secret.encode(),
        }
        self._leeway = timedelta(seconds=settings.clock_skew_seconds)

    # -- issuance -----------------------------------------------------------------

    def issue_access_token(self, user_id: str) -> str:
        return self._sign(ACCESS, user_id, timedelta(seconds=self.settings.access_token_ttl_seconds))

    async def issue_refresh_token(self, user_id: str) -> str:
        ttl = self.settings.refresh_token_ttl_seconds
        token = self._sign(REFRESH, user_id, timedelta(seconds=ttl))
        try:
            await self.cache.set_refresh_token(user_id, token, ttl)
        except StorageUnavailable as exc:
            raise InfrastructureError("session store unavailable") from exc
        return token

    async def issue_session(self, user_id: str) -> SessionTokens:
        refresh_token = await self.issue_refresh_token(user_id)
        logger.info("session_issued", user_id=user_id)
        return SessionTokens(
            access_token=self.issue_access_token(user_id),
            refresh_token=refresh_token,
        )

    # -- validation ---------------------------------------------------------------

    def decode_access(self, token: str) -> dict[str, Any]:
        """Return verified access-token claims.

        Raises ``AccessTokenExpiredError`` for a genuine token past its expiry and
        ``AuthenticationError`` for anything else that fails verification.
        """
        try:
            return self._decode(ACCESS, token)
        except _TokenExpired:
            raise AccessTokenExpiredError("access token expired")

    def decode_refresh(self, token: str) -> dict[str, Any]:
        try:
            return self._decode(REFRESH, token)
        except _TokenExpired:
            raise AuthenticationError("refresh token is invalid or expired")

    async def _current_refresh_owner(self, presented: str) -> str:
        """Return the user id of a refresh token that is still the cached one.

        Raises ``AuthenticationError`` when the token fails verification and
        ``ForbiddenError`` when it is valid but no longer the cached value.
        """
        claims = self.decode_refresh(presented)
        user_id = claims["sub"]
        try:
            cached = await self.cache.get_refresh_token(user_id)
        except StorageUnavailable as exc:
            raise InfrastructureError("session store unavailable") from exc
        if cached is None or not hmac.compare_digest(cached.encode(), presented.encode()):
            logger.warning("refresh_token_superseded", user_id=user_id)
            raise ForbiddenError("refresh token is no longer valid")
        return user_id

    async def refresh(self, presented: str) -> str:
        """Exchange a refresh token for a new access token; the refresh token is kept."""
        user_id = await self._current_refresh_owner(presented)
        return self.issue_access_token(user_id)

    async def revoke_presented(self, presented: str) -> str:
        """End the session only if ``presented`` is the live refresh token."""
        user_id = await self._current_refresh_owner(presented)
        await self.revoke(user_id)
        return user_id

    async def revoke(self, user_id: str) -> None:
        try:
            await self.cache.delete_refresh_token(user_id)
        except StorageUnavailable as exc:
            raise InfrastructureError("session store unavailable") from exc
        logger.info("session_revoked", user_id=user_id)

    # -- JWT encoding ---------------------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, token_type: str, signing_input: str) -> str:
        digest = hmac.new(
            self._secrets[token_type], signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _sign(self, token_type: str, user_id: str, ttl: timedelta) -> str:
        now = self._clock()
        payload = {
            "sub": user_id,
            "token_type": token_type,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            "jti": str(uuid.uuid4()),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(token_type, signing_input)}"

    def _decode(self, token_type: str, token: str) -> dict[str, Any]:
        invalid = AuthenticationError(f"{token_type} token is invalid")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise invalid

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed", token_type=token_type)
            raise invalid
        # Only HS256 is accepted; "none" and asymmetric algorithms are rejected outright
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", token_type=token_type)
            raise invalid

        expected_sig = self._signature(token_type, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise invalid
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise invalid
        if not isinstance(payload, dict):
            raise invalid
        if payload.get("token_type") != token_type or not payload.get("sub"):
            raise invalid
        if payload.get("iss") != self.settings.jwt_issuer:
            raise invalid
        if payload.get("aud") != self.settings.jwt_audience:
            raise invalid
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise invalid
        if exp_ts <= (self._clock() - self._leeway).timestamp():
            raise _TokenExpired()
        return payload
