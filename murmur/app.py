from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request

from murmur.api import content_routes, routes
from murmur.api.error_handling import register_exception_handlers
from murmur.config import Settings
from murmur.logging import get_logger, set_correlation_id
from murmur.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build a runtime from the environment unless one was injected."""
    owns_runtime = getattr(app.state, "runtime", None) is None
    if owns_runtime:
        app.state.runtime = Runtime(Settings.from_env())
    logger.info("app_started", environment=app.state.runtime.settings.environment.value)

    yield

    if owns_runtime:
        try:
            await app.state.runtime.close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))
        app.state.runtime = None


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    app = FastAPI(title="Murmur", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag the request with a correlation id from X-Request-ID or a fresh uuid.

        The id is bound for structured logging and echoed back in the
        X-Request-ID response header.
        """
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        # API responses carry account data and session cookies
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        response.headers.setdefault(
            "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
        )
        response.headers.setdefault(
            "Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"
        )
        return response

    register_exception_handlers(app)
    app.include_router(routes.router)
    app.include_router(content_routes.router)

    @app.get("/healthz")
    async def health(request: Request) -> Dict[str, Any]:
        """Report store and cache reachability."""
        runtime: Runtime = request.app.state.runtime

        async def _run_bounded(label: str, func) -> bool:
            try:
                await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        checks: Dict[str, Dict[str, Any]] = {}
        verify_store = getattr(runtime.store, "verify_connection", None)
        if verify_store is None:
            store_ok = True
            checks["store"] = {"status": "healthy", "type": type(runtime.store).__name__}
        else:
            store_ok = await _run_bounded("store", verify_store)
            checks["store"] = {"status": "healthy" if store_ok else "unhealthy"}
        cache_ok = await _run_bounded("cache", runtime.cache.verify_connection)
        checks["cache"] = {"status": "healthy" if cache_ok else "unhealthy"}

        return {
            "status": "healthy" if store_ok and cache_ok else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()
