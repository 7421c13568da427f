from __future__ import annotations

from typing import Any, Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from murmur.config import Settings
from murmur.logging import get_logger
from murmur.service.auth import AuthService
from murmur.service.content import ContentService
from murmur.service.email import EmailService
from murmur.service.passwords import PasswordHasher
from murmur.service.relationships import RelationshipService
from murmur.service.tokens import TokenIssuer
from murmur.service.verification import VerificationCodes
from murmur.storage.memory import MemoryStore
from murmur.storage.memory_cache import MemoryCache
from murmur.storage.postgres import PostgresStore
from murmur.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Owns the store, token cache, mail sender and the services built on them.

    Built once per process (or per test) and handed to ``create_app``; request
    handlers reach it through ``request.app.state.runtime``. Collaborators that
    are passed in are used as-is, the rest are built from ``settings``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: Any = None,
        cache: Any = None,
        email: Optional[EmailService] = None,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.settings = settings
        self.store = store if store is not None else self._build_store()
        self.cache = cache if cache is not None else self._build_cache()
        self.email = email or EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            log_previews=not settings.is_production,
        )
        self.tokens = TokenIssuer(settings, self.cache)
        self.codes = VerificationCodes(settings, self.store)
        self.auth = AuthService(
            self.store,
            self.cache,
            settings,
            tokens=self.tokens,
            codes=self.codes,
            email=self.email,
            hasher=hasher,
        )
        self.relationships = RelationshipService(self.store)
        self.content = ContentService(self.store)
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            cache_type=type(self.cache).__name__,
            email_configured=self.email.is_configured,
        )

    def _build_store(self):
        if self.settings.use_memory_store:
            return MemoryStore(fs_root=self.settings.shared_fs_root)
        try:
            return PostgresStore(
                self.settings.database_url, pool_timeout=self.settings.database_pool_timeout
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

    def _build_cache(self):
        prefix = self.settings.cache_key_prefix
        if self.settings.use_memory_cache:
            return MemoryCache(key_prefix=prefix)
        cache = RedisCache(
            self.settings.redis_url,
            key_prefix=prefix,
            socket_timeout=self.settings.redis_socket_timeout,
        )
        try:
            cache.verify_connection()
            return cache
        except (RedisError, OSError) as exc:
            if self.settings.is_production or not self.settings.allow_cache_fallback_dev:
                raise RuntimeError(
                    "Redis is required for refresh tokens; start Redis or set "
                    "ALLOW_CACHE_FALLBACK_DEV=true for a local in-process cache."
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
            )
            return MemoryCache(key_prefix=prefix)

    async def close(self) -> None:
        await self.cache.close()
        self.store.close()
        logger.info("runtime_closed")
