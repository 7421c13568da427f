from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol

from murmur.config import Settings
from murmur.logging import get_logger
from murmur.service.email import EmailService
from murmur.service.errors import (
    AuthenticationError,
    ConflictError,
    InfrastructureError,
    NotFoundError,
    ValidationError,
)
from murmur.service.passwords import PasswordHasher
from murmur.service.tokens import SessionTokens, TokenCache, TokenIssuer
from murmur.service.verification import VerificationCodes
from murmur.storage.errors import ConstraintViolation, StorageUnavailable
from murmur.storage.models import User

logger = get_logger(__name__)

ROLES = ("user", "admin")


class AuthStore(Protocol):
    def create_user(
        self,
        *,
        name: str,
        username: str,
        email: str,
        password_hash: str,
        password_algo: str,
        role: str = "user",
        email_verification_hash: Optional[str] = None,
        email_verification_expires: Optional[datetime] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def update_profile(self, user_id: str, **fields) -> Optional[User]: ...

    def set_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def set_email_verification(
        self, user_id: str, token_hash: Optional[str], expires_at: Optional[datetime]
    ) -> None: ...

    def set_two_factor_code(self, user_id: str, code_hash: str, expires_at: datetime) -> None: ...

    def clear_two_factor_code(
        self, user_id: str, expected_hash: Optional[str] = None
    ) -> bool: ...

    def set_two_factor_enabled(self, user_id: str, enabled: bool) -> Optional[User]: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    is_email_verified: bool
    user: User


@dataclass
class SignupResult:
    user: User
    verification_email_sent: bool


@dataclass
class LoginResult:
    user: User
    tokens: Optional[SessionTokens] = None

    @property
    def two_factor_required(self) -> bool:
        return self.tokens is None


class AuthService:
    """Account lifecycle and session issuance.

    Store and SMTP calls are synchronous and run through ``asyncio.to_thread``;
    token cache calls are awaited directly.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: TokenCache,
        settings: Settings,
        *,
        tokens: TokenIssuer,
        codes: VerificationCodes,
        email: EmailService,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.tokens = tokens
        self.codes = codes
        self.email = email
        self.hasher = hasher or PasswordHasher()

    # -- signup & verification ------------------------------------------------------

    async def signup(self, *, name: str, username: str, email: str, password: str) -> SignupResult:
        # Hash first: a hashing failure must leave nothing behind
        password_hash, algo = await asyncio.to_thread(self.hasher.hash, password)
        artifact = self.codes.create_email_verification_token()
        try:
            user = await asyncio.to_thread(
                self.store.create_user,
                name=name,
                username=username,
                email=email,
                password_hash=password_hash,
                password_algo=algo,
                email_verification_hash=artifact.digest,
                email_verification_expires=artifact.expires_at,
            )
        except ConstraintViolation as exc:
            field = exc.detail.get("field", "account")
            logger.info("signup_duplicate", field=field)
            raise ConflictError(
                f"{field} is already in use", status_code=400, detail={"field": field}
            ) from exc
        logger.info("user_signed_up", user_id=user.id)

        sent = await asyncio.to_thread(
            self.email.send_email_verification,
            user.email,
            artifact.plaintext,
            ttl_minutes=self.settings.email_verification_ttl_minutes,
        )
        if not sent:
            # Leave the account in the "must re-request verification" state
            await asyncio.to_thread(self.store.set_email_verification, user.id, None, None)
            user.email_verification_hash = None
            user.email_verification_expires = None
            logger.error("signup_verification_email_failed", user_id=user.id)
        return SignupResult(user=user, verification_email_sent=sent)

    async def verify_email(self, token: str) -> User:
        return await asyncio.to_thread(self.codes.consume_email_verification_token, token)

    async def request_email_verification(self, user: User) -> None:
        if user.is_email_verified:
            raise ValidationError("email is already verified")
        artifact = self.codes.create_email_verification_token()
        await asyncio.to_thread(
            self.store.set_email_verification, user.id, artifact.digest, artifact.expires_at
        )
        sent = await asyncio.to_thread(
            self.email.send_email_verification,
            user.email,
            artifact.plaintext,
            ttl_minutes=self.settings.email_verification_ttl_minutes,
        )
        if not sent:
            await asyncio.to_thread(self.store.set_email_verification, user.id, None, None)
            raise InfrastructureError("unable to send verification email")

    # -- login & two-factor -----------------------------------------------------------

    async def _check_password(self, user_id: str, password: str) -> bool:
        record = await asyncio.to_thread(self.store.get_password_record, user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        digest, algo = record
        return await asyncio.to_thread(self.hasher.verify, password, digest, algo)

    async def login(self, *, email: str, password: str) -> LoginResult:
        user = await asyncio.to_thread(self.store.get_user_by_email, email)
        if not user:
            raise NotFoundError("user not found")
        if not await self._check_password(user.id, password):
            logger.info("login_failed", user_id=user.id)
            raise ValidationError("invalid email or password")

        if user.is_two_factor_enabled:
            await self._send_two_factor_code(user)
            logger.info("login_two_factor_challenge", user_id=user.id)
            return LoginResult(user=user, tokens=None)

        tokens = await self.tokens.issue_session(user.id)
        logger.info("login_succeeded", user_id=user.id)
        return LoginResult(user=user, tokens=tokens)

    async def _send_two_factor_code(self, user: User) -> None:
        artifact = self.codes.create_two_factor_code()
        await asyncio.to_thread(
            self.store.set_two_factor_code, user.id, artifact.digest, artifact.expires_at
        )
        await self._cache_call(self.cache.clear_two_factor_failures, user.id)
        sent = await asyncio.to_thread(
            self.email.send_two_factor_code,
            user.email,
            artifact.plaintext,
            ttl_minutes=self.settings.two_factor_ttl_minutes,
        )
        if not sent:
            await asyncio.to_thread(self.store.clear_two_factor_code, user.id)
            raise InfrastructureError("unable to send verification code")

    async def verify_two_factor(self, *, user_id: str, code: str) -> LoginResult:
        try:
            user = await asyncio.to_thread(self.codes.consume_two_factor_code, user_id, code)
        except AuthenticationError:
            await self._record_two_factor_failure(user_id)
            raise
        await self._cache_call(self.cache.clear_two_factor_failures, user.id)
        tokens = await self.tokens.issue_session(user.id)
        logger.info("login_two_factor_succeeded", user_id=user.id)
        return LoginResult(user=user, tokens=tokens)

    async def _record_two_factor_failure(self, user_id: str) -> None:
        failures = await self._cache_call(
            self.cache.record_two_factor_failure, user_id, self.codes.two_factor_window_seconds
        )
        logger.info("two_factor_failed", user_id=user_id, failures=failures)
        if failures >= self.settings.two_factor_max_attempts:
            # Too many guesses: burn the pending code so a fresh login is required
            await asyncio.to_thread(self.store.clear_two_factor_code, user_id)
            await self._cache_call(self.cache.clear_two_factor_failures, user_id)
            logger.warning("two_factor_code_burned", user_id=user_id)

    async def enable_two_factor(self, user_id: str) -> User:
        user = await asyncio.to_thread(self.store.set_two_factor_enabled, user_id, True)
        if not user:
            raise NotFoundError("user not found")
        sent = await asyncio.to_thread(self.email.send_two_factor_enabled, user.email)
        if not sent:
            logger.warning("two_factor_confirmation_email_failed", user_id=user.id)
        logger.info("two_factor_enabled", user_id=user.id)
        return user

    async def disable_two_factor(self, user: User, password: str) -> User:
        if not await self._check_password(user.id, password):
            raise ValidationError("invalid password")
        updated = await asyncio.to_thread(self.store.set_two_factor_enabled, user.id, False)
        if not updated:
            raise NotFoundError("user not found")
        logger.info("two_factor_disabled", user_id=user.id)
        return updated

    # -- sessions -----------------------------------------------------------------------

    async def refresh(self, refresh_token: Optional[str]) -> str:
        if not refresh_token:
            raise ValidationError("no refresh token provided")
        return await self.tokens.refresh(refresh_token)

    async def logout(self, refresh_token: Optional[str]) -> None:
        if not refresh_token:
            raise ValidationError("no refresh token provided")
        await self.tokens.revoke_presented(refresh_token)

    async def authenticate(self, access_token: Optional[str]) -> AuthContext:
        if not access_token:
            raise AuthenticationError("not authenticated")
        claims = self.tokens.decode_access(access_token)
        user = await asyncio.to_thread(self.store.get_user, claims["sub"])
        if not user:
            raise NotFoundError("user not found")
        return AuthContext(
            user_id=user.id,
            role=user.role,
            is_email_verified=user.is_email_verified,
            user=user,
        )

    async def change_password(
        self, user: User, *, current_password: str, new_password: str
    ) -> SessionTokens:
        if not await self._check_password(user.id, current_password):
            raise ValidationError("current password is incorrect")
        if current_password == new_password:
            raise ValidationError("new password must differ from the current password")
        password_hash, algo = await asyncio.to_thread(self.hasher.hash, new_password)
        await asyncio.to_thread(self.store.save_password, user.id, password_hash, algo)
        logger.info("password_changed", user_id=user.id)
        # A new refresh token supersedes every other session of this user
        return await self.tokens.issue_session(user.id)

    # -- profile & admin --------------------------------------------------------------

    async def update_profile(self, user: User, **fields) -> User:
        try:
            updated = await asyncio.to_thread(self.store.update_profile, user.id, **fields)
        except ConstraintViolation as exc:
            raise ConflictError(
                "username is already in use", status_code=400, detail={"field": "username"}
            ) from exc
        if not updated:
            raise NotFoundError("user not found")
        return updated

    async def list_users(self, limit: int = 100) -> List[User]:
        return await asyncio.to_thread(self.store.list_users, limit)

    async def set_user_role(self, user_id: str, role: str) -> User:
        if role not in ROLES:
            raise ValidationError("unknown role", detail={"allowed": list(ROLES)})
        user = await asyncio.to_thread(self.store.set_user_role, user_id, role)
        if not user:
            raise NotFoundError("user not found")
        logger.info("user_role_changed", user_id=user_id, role=role)
        return user

    @staticmethod
    def role_allows(role: str, required: str) -> bool:
        if role == required:
            return True
        return role == "admin" and required in ROLES

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    async def _cache_call(self, func, *args):
        try:
            return await func(*args)
        except StorageUnavailable as exc:
            raise InfrastructureError("session store unavailable") from exc
