from __future__ import annotations

import hmac
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Protocol, TypeVar

from sessionauth.config import Settings
from sessionauth.logging import get_logger
from sessionauth.service.errors import (
    LOGIN_FAILURES,
    InternalError,
    InvalidCredentialsError,
    StoreUnavailableError,
    TokenInvalidError,
    TokenMismatchError,
    UserBlockedError,
    UserNotFoundError,
    ValidationError,
)
from sessionauth.service.sessions import SessionBridge, bounded_call
from sessionauth.service.tokens import TokenCodec, TokenPair
from sessionauth.service.validation import normalize_email, require_password
from sessionauth.storage.models import TokenSlots, UserRecord

logger = get_logger(__name__)

T = TypeVar("T")


class UserDirectory(Protocol):
    def find_user_by_email(self, email: str) -> Optional[UserRecord]: ...

    def get_block_status(self, user_id: int) -> Optional[datetime]: ...

    def check_credentials(self, email: str, password: str) -> Optional[UserRecord]: ...

    def get_user_by_id(self, user_id: int) -> Optional[UserRecord]: ...

    def persist_token_pair(
        self, user_id: int, access_token: Optional[str], refresh_token: Optional[str]
    ) -> bool: ...

    def get_token_slots(self, user_id: int) -> Optional[TokenSlots]: ...

    def rotate_access_token(
        self, user_id: int, refresh_token: str, access_token: str
    ) -> bool: ...


@dataclass
class AuthContext:
    user_id: int
    email: str
    display_name: str


@dataclass
class LoginResult:
    user: UserRecord
    tokens: TokenPair


@dataclass
class RefreshResult:
    must_logout: bool
    tokens: Optional[TokenPair] = None
    user: Optional[UserRecord] = None


def extract_bearer(header: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer <token>`` header, if well formed."""
    if not header:
        return None
    parts = header.strip().split()
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
        return None
    return parts[1]


def _slot_matches(persisted: Optional[str], presented: str) -> bool:
    if persisted is None:
        return False
    return hmac.compare_digest(persisted.encode(), presented.encode())


class AuthService:
    """Login, refresh, logout and access-token validation.

    The persisted token slots are the source of truth: a token is only
    accepted when its signature verifies AND it equals the value stored for
    its user. Login checks run in a fixed order (existence, block status,
    credentials) and refresh fails closed, clearing both slots on any doubt.
    """

    def __init__(
        self,
        store: UserDirectory,
        settings: Settings,
        *,
        codec: Optional[TokenCodec] = None,
        sessions: Optional[SessionBridge] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.timeout = settings.store_timeout_seconds
        self.codec = codec or TokenCodec(settings)
        self.sessions = sessions or SessionBridge(store, timeout=self.timeout)

    async def _call(self, label: str, func: Callable[..., T], *args: Any) -> T:
        return await bounded_call(label, func, *args, timeout=self.timeout)

    # -- login -------------------------------------------------------------

    async def login(self, email: str, password: str) -> LoginResult:
        """Authenticate ``email``/``password`` and persist a fresh token pair.

        Raises:
            ValidationError: malformed email or empty password.
            UserNotFoundError: no user has this email.
            UserBlockedError: the user is blocked; credentials are not checked.
            InvalidCredentialsError: the store rejected the password.
            InternalError: anything else, including store failures.
        """
        normalized = normalize_email(email)
        require_password(password)

        try:
            user = await self._call("find_user_by_email", self.store.find_user_by_email, normalized)
            if user is None:
                logger.warning("login_failed", reason="not_found", email=normalized)
                raise UserNotFoundError("user not found")

            blocked_since = await self._call(
                "get_block_status", self.store.get_block_status, user.id
            )
            if blocked_since is not None:
                logger.warning(
                    "login_failed",
                    reason="blocked",
                    user_id=user.id,
                    blocked_since=blocked_since.isoformat(),
                )
                raise UserBlockedError("user is blocked")

            verified = await self._call(
                "check_credentials", self.store.check_credentials, normalized, password
            )
            if not verified:
                logger.warning("login_failed", reason="invalid_credentials", user_id=user.id)
                raise InvalidCredentialsError("invalid credentials")

            tokens = self.codec.issue_pair(
                verified.id, verified.email.strip(), verified.display_name.strip()
            )
            persisted = await self.sessions.persist_pair(
                verified.id, tokens.access_token, tokens.refresh_token
            )
            if not persisted:
                logger.error("login_persist_failed", user_id=verified.id)
                raise InternalError("session could not be established")
        except (ValidationError, InternalError, *LOGIN_FAILURES):
            raise
        except StoreUnavailableError as exc:
            logger.error("login_store_unavailable", email=normalized, error=exc.message)
            raise InternalError("session could not be established") from exc
        except Exception as exc:
            logger.error(
                "login_internal_error",
                email=normalized,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise InternalError("session could not be established") from exc

        logger.info("login_succeeded", user_id=verified.id)
        return LoginResult(user=verified.trimmed(), tokens=tokens)

    # -- refresh -----------------------------------------------------------

    async def refresh(self, refresh_token: str, claimed_user_id: int) -> RefreshResult:
        """Rotate the access token while keeping the presented refresh token.

        Never raises for token or store problems: every failure clears the
        claimed user's slots and returns ``must_logout=True``.
        """
        try:
            tokens, user = await self._rotate(refresh_token, claimed_user_id)
        except TokenInvalidError as exc:
            logger.warning(
                "refresh_rejected",
                reason=type(exc).__name__,
                detail=exc.message,
                user_id=claimed_user_id,
            )
        except StoreUnavailableError as exc:
            logger.error("refresh_store_unavailable", user_id=claimed_user_id, error=exc.message)
        except Exception as exc:
            logger.error(
                "refresh_internal_error",
                user_id=claimed_user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        else:
            logger.info("refresh_succeeded", user_id=user.id)
            return RefreshResult(must_logout=False, tokens=tokens, user=user)

        await self._clear_after_failure(claimed_user_id)
        return RefreshResult(must_logout=True)

    async def _rotate(self, refresh_token: str, claimed_user_id: int) -> tuple[TokenPair, UserRecord]:
        claims = self.codec.verify_refresh_token(refresh_token)
        if claims is None:
            raise TokenInvalidError("refresh token invalid")
        if claims.user_id != claimed_user_id:
            raise TokenMismatchError(
                f"refresh token belongs to user {claims.user_id}"
            )

        slots = await self.sessions.lookup_slots(claimed_user_id)
        if slots is None or not _slot_matches(slots.refresh_token, refresh_token):
            raise TokenMismatchError("refresh token is not the persisted one")

        user = await self._call("get_user_by_id", self.store.get_user_by_id, claimed_user_id)
        if user is None:
            raise TokenInvalidError("user no longer exists")
        user = user.trimmed()

        access_token = self.codec.issue_access_token(user.id, user.email, user.display_name)
        # Conditional on the refresh slot so a concurrent logout is not undone
        rotated = await self.sessions.rotate_access(user.id, access_token, refresh_token)
        if not rotated:
            raise TokenMismatchError("refresh token revoked during rotation")
        tokens = TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.codec.access_ttl_seconds,
        )
        return tokens, user

    async def _clear_after_failure(self, user_id: int) -> None:
        try:
            await self.revoke(user_id)
        except StoreUnavailableError as exc:
            # Slots stay as they were; the caller is still told to log out
            logger.error("refresh_clear_failed", user_id=user_id, error=exc.message)
        except Exception as exc:
            logger.error(
                "refresh_clear_error",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    # -- logout / revoke ---------------------------------------------------

    async def logout(self, user_id: int) -> None:
        """Clear both slots for ``user_id``. Idempotent."""
        await self.revoke(user_id)
        logger.info("logout", user_id=user_id)

    async def revoke(self, user_id: int) -> None:
        await self.sessions.clear_slots(user_id)

    # -- request guard -----------------------------------------------------

    async def validate_access_token(self, token: str) -> Optional[AuthContext]:
        """Resolve the identity behind ``token`` or ``None``.

        The signature is verified before the store is consulted, so garbage
        tokens never trigger a persisted-value lookup.
        """
        claims = self.codec.verify_access_token(token)
        if claims is None:
            return None
        try:
            slots = await self.sessions.lookup_slots(claims.user_id)
        except StoreUnavailableError:
            logger.warning("access_validation_store_unavailable", user_id=claims.user_id)
            return None
        except Exception as exc:
            logger.error(
                "access_validation_error",
                user_id=claims.user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        if slots is None or not _slot_matches(slots.access_token, token):
            logger.debug("access_token_not_current", user_id=claims.user_id)
            return None
        return AuthContext(
            user_id=claims.user_id, email=claims.email, display_name=claims.display_name
        )
