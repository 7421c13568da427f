from __future__ import annotations

from typing import Optional

from fastapi import Cookie, Depends, Header, Request

from murmur.service.auth import AuthContext, AuthService
from murmur.service.errors import EmailNotVerifiedError, ForbiddenError
from murmur.service.runtime import Runtime

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def protect(
    request: Request,
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    """Resolve the caller from the access cookie, falling back to a bearer header."""
    runtime = get_runtime(request)
    token = access_cookie or AuthService.extract_bearer(authorization)
    return await runtime.auth.authenticate(token)


def require_role(role: str):
    async def _check(principal: AuthContext = Depends(protect)) -> AuthContext:
        if not AuthService.role_allows(principal.role, role):
            raise ForbiddenError("you do not have permission to perform this action")
        return principal

    return _check


async def require_email_verified(principal: AuthContext = Depends(protect)) -> AuthContext:
    if not principal.is_email_verified:
        raise EmailNotVerifiedError("please verify your email address first")
    return principal
