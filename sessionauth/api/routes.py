from __future__ import annotations

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Response

from sessionauth.api.schemas import (
    BlockUserRequest,
    CreateUserRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    LogoutResponse,
    RefreshResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    UserListResponse,
    UserResponse,
)
from sessionauth.logging import get_logger
from sessionauth.service.auth import AuthContext, extract_bearer
from sessionauth.service.errors import LOGIN_FAILURES
from sessionauth.service.runtime import check_rate_limit, get_runtime
from sessionauth.service.tokens import TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce a rate limit and optionally apply headers to the response.

    Raises:
        HTTPException with 429 if the limit is exceeded
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after": reset_seconds},
        )
    return info


def _token_response(tokens: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=tokens.expires_in,
        token_type=tokens.token_type,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Request guard: resolve the bearer token to a live identity or reject.

    A token is accepted only if it verifies and is still the access token
    persisted for its user.
    """
    token = extract_bearer(authorization)
    if token is None:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    runtime = get_runtime()
    ctx = await runtime.auth.validate_access_token(token)
    if not ctx:
        raise _http_error("unauthorized", "authentication failed", status_code=401)
    structlog.contextvars.bind_contextvars(user_id=ctx.user_id)
    return ctx


# -- auth ---------------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate user with email and password.

    Returns the user profile and a freshly persisted token pair; any pair
    issued earlier for this user stops working.

    Raises:
        400: If the email is malformed or the password empty
        401: If the user is unknown, blocked or the password is wrong
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email.strip().lower()}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    try:
        result = await runtime.auth.login(body.email, body.password)
    except LOGIN_FAILURES as exc:
        raise _http_error("unauthorized", "authentication failed", status_code=401) from exc
    return Envelope(
        status="ok",
        data=LoginResponse(
            user=UserResponse.from_record(result.user),
            tokens=_token_response(result.tokens),
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, authorization: Optional[str] = Header(None)):
    """Clear the persisted token pair of ``user_id``.

    Works without a token so clients holding only expired credentials can
    still log out. A live token belonging to someone else is refused.

    Raises:
        403: If the presented bearer token belongs to a different user
    """
    runtime = get_runtime()
    token = extract_bearer(authorization)
    if token is not None:
        ctx = await runtime.auth.validate_access_token(token)
        if ctx is not None and ctx.user_id != body.user_id:
            raise _http_error(
                "forbidden", "cannot log out another user", status_code=403
            )
    await runtime.auth.logout(body.user_id)
    return Envelope(status="ok", data=LogoutResponse(success=True))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    """Issue a new access token for a still-current refresh token.

    Raises:
        401: With ``details.must_logout`` when the refresh token is invalid,
            superseded or belongs to another user; all tokens of the user
            have been revoked and the client must log in again
    """
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token, body.user_id)
    if result.must_logout or result.tokens is None:
        raise _http_error(
            "unauthorized",
            "authentication failed",
            status_code=401,
            details={"must_logout": True},
        )
    return Envelope(status="ok", data=RefreshResponse(tokens=_token_response(result.tokens)))


# -- users --------------------------------------------------------------------


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def create_user(body: CreateUserRequest):
    """Register a new account.

    Raises:
        400: If a field is missing or malformed
        409: If the email is already registered
    """
    runtime = get_runtime()
    user = await runtime.users.create_user(
        email=body.email,
        display_name=body.display_name,
        password=body.password,
        phone=body.phone,
        extension=body.extension,
        mobile=body.mobile,
        must_change_password=body.must_change_password == "S",
    )
    return Envelope(status="ok", data=UserResponse.from_record(user))


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    page: int = Query(1),
    limit: Optional[int] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    result = await runtime.users.list_users(page=page, limit=limit, search=search)
    return Envelope(
        status="ok",
        data=UserListResponse(
            items=[UserResponse.from_record(user) for user in result.items],
            total=result.total,
            page=result.page,
            limit=result.limit,
        ),
    )


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.users.get_user(principal.user_id)
    return Envelope(status="ok", data=UserResponse.from_record(user))


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user_by_id(
    user_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_user),
):
    """Fetch one user profile.

    Raises:
        404: If no user has this id
    """
    runtime = get_runtime()
    user = await runtime.users.get_user(user_id)
    return Envelope(status="ok", data=UserResponse.from_record(user))


@router.post("/users/block", response_model=Envelope, tags=["users"])
async def block_user(body: BlockUserRequest, principal: AuthContext = Depends(get_user)):
    """Block a user from logging in.

    The target keeps any session that is already open until its access
    token expires; the block is enforced at the next login.

    Raises:
        400: If a user tries to block themselves
        404: If the target user does not exist
    """
    runtime = get_runtime()
    user = await runtime.users.block_user(principal.user_id, body.user_id)
    return Envelope(status="ok", data=UserResponse.from_record(user))
