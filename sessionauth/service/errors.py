from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that the API envelope exposes to clients:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"

    def __init__(self, message: str, *, field: Optional[str] = None, **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {}
        if field:
            detail = {**detail, "field": field}
        super().__init__(message, detail=detail, **kwargs)
        self.field = field


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# Login outcomes. Kept distinct for logs and tests; the HTTP layer flattens
# them into a single "authentication failed" response.


class UserNotFoundError(AuthenticationError):
    """No user is registered under the presented email."""


class UserBlockedError(AuthenticationError):
    """The user exists but is barred from receiving tokens."""


class InvalidCredentialsError(AuthenticationError):
    """The store rejected the email/password combination."""


class TokenInvalidError(AuthenticationError):
    """Signature, expiry or token-class verification failed."""


class TokenMismatchError(TokenInvalidError):
    """Token verified but differs from the value persisted for the user."""


class StoreUnavailableError(ServiceError):
    """The credential store failed or did not answer in time (503)."""
    status_code = 503
    error_code = "service_unavailable"


class InternalError(ServerError):
    """Unclassified failure during an authentication flow (500)."""


LOGIN_FAILURES = (UserNotFoundError, UserBlockedError, InvalidCredentialsError)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "UserNotFoundError",
    "UserBlockedError",
    "InvalidCredentialsError",
    "TokenInvalidError",
    "TokenMismatchError",
    "StoreUnavailableError",
    "InternalError",
    "LOGIN_FAILURES",
]
