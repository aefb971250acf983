from __future__ import annotations

from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from sessionauth.logging import get_correlation_id
from sessionauth.storage.models import UserRecord

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    """API envelope wrapping every response body."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


# -- auth ---------------------------------------------------------------------


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=1024)


class LogoutRequest(BaseModel):
    user_id: int


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)
    user_id: int


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


class UserResponse(BaseModel):
    id: int
    email: str
    display_name: str
    phone: Optional[str] = None
    extension: Optional[str] = None
    mobile: Optional[str] = None
    must_change_password: bool = False
    blocked_since: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_record(cls, user: UserRecord) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            display_name=user.display_name,
            phone=user.phone,
            extension=user.extension,
            mobile=user.mobile,
            must_change_password=user.must_change_password,
            blocked_since=user.blocked_since,
            created_at=user.created_at,
        )


class LoginResponse(BaseModel):
    user: UserResponse
    tokens: TokenPairResponse


class RefreshResponse(BaseModel):
    tokens: TokenPairResponse


class LogoutResponse(BaseModel):
    success: bool = True


# -- users --------------------------------------------------------------------


class CreateUserRequest(BaseModel):
    email: str = Field(..., max_length=254)
    display_name: str = Field(..., max_length=200)
    password: str = Field(..., max_length=1024)
    phone: Optional[str] = Field(default=None, max_length=64)
    extension: Optional[str] = Field(default=None, max_length=64)
    mobile: Optional[str] = Field(default=None, max_length=64)
    # Legacy clients send the flag as "S"/"N"
    must_change_password: Literal["S", "N"] = "N"

    @field_validator("must_change_password", mode="before")
    @classmethod
    def _normalize_flag(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return "S" if value else "N"
        if isinstance(value, str):
            return value.strip().upper()
        return value


class BlockUserRequest(BaseModel):
    user_id: int


class UserListResponse(BaseModel):
    items: List[UserResponse]
    total: int
    page: int
    limit: int
