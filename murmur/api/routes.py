from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Path, Query, Request, Response

from murmur.api.deps import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    get_runtime,
    protect,
    require_email_verified,
    require_role,
)
from murmur.api.error_handling import error_response
from murmur.api.schemas import (
    AuthUserResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    PasswordChangeRequest,
    PasswordConfirmRequest,
    ProfileUpdateRequest,
    RoleUpdateRequest,
    SignupRequest,
    SignupResponse,
    UserResponse,
    VerifyTwoFactorRequest,
)
from murmur.config import Settings
from murmur.logging import get_logger
from murmur.service.auth import AuthContext
from murmur.service.errors import ServiceError
from murmur.service.tokens import SessionTokens
from murmur.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _auth_user(user: User) -> AuthUserResponse:
    return AuthUserResponse(
        id=user.id,
        name=user.name,
        username=user.username,
        email=user.email,
        role=user.role,
        bio=user.bio,
        profile_picture=user.profile_picture,
        is_email_verified=user.is_email_verified,
        is_two_factor_enabled=user.is_two_factor_enabled,
        followers_count=len(user.followers),
        following_count=len(user.following),
        created_at=user.created_at,
    )


def _public_user(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        name=user.name,
        username=user.username,
        bio=user.bio,
        profile_picture=user.profile_picture,
        followers_count=len(user.followers),
        following_count=len(user.following),
        created_at=user.created_at,
    )


def _set_access_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        ACCESS_COOKIE,
        token,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
        max_age=settings.access_token_ttl_seconds,
        path="/",
    )


def _apply_session_cookies(
    response: Response, tokens: SessionTokens, settings: Settings
) -> None:
    _set_access_cookie(response, tokens.access_token, settings)
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
        max_age=settings.refresh_token_ttl_seconds,
        path="/",
    )


def _clear_session_cookies(response: Response, settings: Settings) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name, path="/", secure=settings.is_production, httponly=True, samesite="strict"
        )


def _message(text: str) -> Envelope:
    return Envelope(status="ok", data={"message": text})


# -- auth ---------------------------------------------------------------------------


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request):
    """Create an account and send the email verification link.

    No session is issued; the client logs in separately. When the
    verification email cannot be sent the account still exists and
    ``verification_email_sent`` is false.

    Raises:
        400: If the username or email is already taken or the body is invalid
    """
    runtime = get_runtime(request)
    result = await runtime.auth.signup(
        name=body.name,
        username=body.username,
        email=body.email,
        password=body.password,
    )
    return Envelope(
        status="ok",
        data=SignupResponse(
            user=_auth_user(result.user),
            verification_email_sent=result.verification_email_sent,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Users with two-factor enabled get ``status="2fa_required"`` and no
    cookies; the emailed code is exchanged at ``/auth/verify-2fa``.

    Raises:
        400: If the password is wrong
        404: If no account uses the email
        500: If the two-factor code email cannot be sent
    """
    runtime = get_runtime(request)
    result = await runtime.auth.login(email=body.email, password=body.password)
    if result.two_factor_required:
        return Envelope(
            status="ok",
            data=LoginResponse(status="2fa_required", user_id=result.user.id),
        )
    _apply_session_cookies(response, result.tokens, runtime.settings)
    return Envelope(
        status="ok",
        data=LoginResponse(
            status="authenticated", user_id=result.user.id, user=_auth_user(result.user)
        ),
    )


@router.post("/auth/verify-2fa", response_model=Envelope, tags=["auth"])
async def verify_two_factor(body: VerifyTwoFactorRequest, request: Request, response: Response):
    runtime = get_runtime(request)
    result = await runtime.auth.verify_two_factor(user_id=body.user_id, code=body.code)
    _apply_session_cookies(response, result.tokens, runtime.settings)
    return Envelope(
        status="ok",
        data=LoginResponse(
            status="authenticated", user_id=result.user.id, user=_auth_user(result.user)
        ),
    )


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(
    request: Request,
    response: Response,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Mint a new access token from the refresh cookie.

    The refresh token itself is not rotated.

    Raises:
        400: If no refresh cookie was sent
        401: If the refresh token is invalid or expired
        403: If the refresh token is not the one on record
    """
    runtime = get_runtime(request)
    access_token = await runtime.auth.refresh(refresh_cookie)
    _set_access_cookie(response, access_token, runtime.settings)
    return _message("access token refreshed")


@router.get("/auth/verify-email/{token}", response_model=Envelope, tags=["auth"])
async def verify_email(request: Request, token: str = Path(..., min_length=1, max_length=256)):
    runtime = get_runtime(request)
    user = await runtime.auth.verify_email(token)
    logger.info("email_verified", user_id=user.id)
    return _message("email verified")


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """End the session named by the refresh cookie.

    Cookies are cleared on every outcome, including a missing or invalid
    refresh token.
    """
    runtime = get_runtime(request)
    try:
        await runtime.auth.logout(refresh_cookie)
    except ServiceError as exc:
        failed = error_response(exc.status_code, exc.message, exc.detail or None, code=exc.error_code)
        _clear_session_cookies(failed, runtime.settings)
        logger.info("logout_rejected", status_code=exc.status_code, error_code=exc.error_code)
        return failed
    _clear_session_cookies(response, runtime.settings)
    return _message("logged out")


@router.post("/auth/enable-2fa", response_model=Envelope, tags=["auth"])
async def enable_two_factor(request: Request, principal: AuthContext = Depends(protect)):
    runtime = get_runtime(request)
    user = await runtime.auth.enable_two_factor(principal.user_id)
    return Envelope(status="ok", data=_auth_user(user))


@router.post("/auth/disable-2fa", response_model=Envelope, tags=["auth"])
async def disable_two_factor(
    body: PasswordConfirmRequest, request: Request, principal: AuthContext = Depends(protect)
):
    runtime = get_runtime(request)
    user = await runtime.auth.disable_two_factor(principal.user, body.password)
    return Envelope(status="ok", data=_auth_user(user))


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(require_email_verified),
):
    """Change the password and rotate the session.

    The new refresh token replaces the cached one, so sessions on other
    devices stop refreshing.
    """
    runtime = get_runtime(request)
    tokens = await runtime.auth.change_password(
        principal.user,
        current_password=body.current_password,
        new_password=body.new_password,
    )
    _apply_session_cookies(response, tokens, runtime.settings)
    return _message("password changed")


@router.post("/auth/request-email-verification", response_model=Envelope, tags=["auth"])
async def request_email_verification(request: Request, principal: AuthContext = Depends(protect)):
    runtime = get_runtime(request)
    await runtime.auth.request_email_verification(principal.user)
    return _message("verification email sent")


# -- users --------------------------------------------------------------------------


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_me(principal: AuthContext = Depends(protect)):
    return Envelope(status="ok", data=_auth_user(principal.user))


@router.patch("/users/me", response_model=Envelope, tags=["users"])
async def update_me(
    body: ProfileUpdateRequest, request: Request, principal: AuthContext = Depends(protect)
):
    runtime = get_runtime(request)
    fields = body.model_dump(exclude_none=True)
    if not fields:
        return Envelope(status="ok", data=_auth_user(principal.user))
    user = await runtime.auth.update_profile(principal.user, **fields)
    return Envelope(status="ok", data=_auth_user(user))


@router.get("/users/search", response_model=Envelope, tags=["users"])
async def search_users(
    request: Request,
    q: str = Query(..., max_length=64, description="Name or username fragment"),
    principal: AuthContext = Depends(protect),
):
    runtime = get_runtime(request)
    users = await runtime.relationships.search(principal.user, q)
    return Envelope(status="ok", data={"users": [_public_user(u) for u in users]})


@router.get("/users/me/blocked", response_model=Envelope, tags=["users"])
async def list_blocked(request: Request, principal: AuthContext = Depends(protect)):
    runtime = get_runtime(request)
    users = await runtime.relationships.blocked_users(principal.user)
    return Envelope(status="ok", data={"users": [_public_user(u) for u in users]})


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user_profile(
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(protect),
):
    runtime = get_runtime(request)
    user = await runtime.relationships.view_profile(principal.user, user_id)
    return Envelope(status="ok", data=_public_user(user))


@router.post("/users/{user_id}/follow", response_model=Envelope, tags=["users"])
async def follow_user(
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(protect),
):
    runtime = get_runtime(request)
    target = await runtime.relationships.follow(principal.user, user_id)
    return _message(f"you are now following {target.username}")


@router.post("/users/{user_id}/unfollow", response_model=Envelope, tags=["users"])
async def unfollow_user(
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(protect),
):
    runtime = get_runtime(request)
    target = await runtime.relationships.unfollow(principal.user, user_id)
    return _message(f"you unfollowed {target.username}")


@router.post("/users/{user_id}/block", response_model=Envelope, tags=["users"])
async def block_user(
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(protect),
):
    runtime = get_runtime(request)
    target = await runtime.relationships.block(principal.user, user_id)
    return _message(f"you blocked {target.username}")


@router.post("/users/{user_id}/unblock", response_model=Envelope, tags=["users"])
async def unblock_user(
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(protect),
):
    runtime = get_runtime(request)
    target = await runtime.relationships.unblock(principal.user, user_id)
    return _message(f"you unblocked {target.username}")


# -- admin --------------------------------------------------------------------------


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    request: Request,
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(require_role("admin")),
):
    runtime = get_runtime(request)
    users = await runtime.auth.list_users(limit)
    return Envelope(status="ok", data={"users": [_auth_user(u) for u in users]})


@router.post("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    body: RoleUpdateRequest,
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_role("admin")),
):
    runtime = get_runtime(request)
    user = await runtime.auth.set_user_role(user_id, body.role)
    logger.info("admin_role_update", actor_id=principal.user_id, target_id=user.id, role=body.role)
    return Envelope(status="ok", data=_auth_user(user))
