from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sessionauth.config import Settings
from sessionauth.logging import get_logger

logger = get_logger(__name__)

ACCESS_CLASS = "access"
REFRESH_CLASS = "refresh"


@dataclass(frozen=True)
class AccessClaims:
    user_id: int
    email: str
    display_name: str
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class RefreshClaims:
    user_id: int
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


@dataclass(frozen=True)
class _SigningContext:
    token_class: str
    secret: bytes
    ttl: timedelta


class TokenCodec:
    """Signs and verifies the access/refresh JWTs.

    The two token classes use independent secrets and lifetimes, and each
    token carries a ``tokenClass`` claim so one class can never be accepted
    in place of the other. Verification failures of any kind (malformed,
    wrong algorithm, bad signature, expired, wrong class, wrong issuer)
    collapse to ``None``; the specific reason is only logged at debug level.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        leeway: timedelta = timedelta(0),
    ) -> None:
        self.issuer = settings.jwt_issuer
        self._access = _SigningContext(
            ACCESS_CLASS,
            settings.access_token_secret.encode(),
            timedelta(minutes=settings.access_token_ttl_minutes),
        )
        self._refresh = _SigningContext(
            REFRESH_CLASS,
            settings.refresh_token_secret.encode(),
            timedelta(minutes=settings.refresh_token_ttl_minutes),
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._leeway = leeway

    @property
    def access_ttl_seconds(self) -> int:
        return int(self._access.ttl.total_seconds())

    # -- issuing -----------------------------------------------------------

    def issue_access_token(self, user_id: int, email: str, display_name: str) -> str:
        return self._sign(
            self._access,
            {"userId": user_id, "email": email, "displayName": display_name},
        )

    def issue_refresh_token(self, user_id: int) -> str:
        return self._sign(self._refresh, {"userId": user_id})

    def issue_pair(self, user_id: int, email: str, display_name: str) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access_token(user_id, email, display_name),
            refresh_token=self.issue_refresh_token(user_id),
            expires_in=self.access_ttl_seconds,
        )

    # -- verification ------------------------------------------------------

    def verify_access_token(self, token: str) -> Optional[AccessClaims]:
        payload = self._verify(self._access, token)
        if payload is None:
            return None
        email = payload.get("email")
        display_name = payload.get("displayName")
        if not isinstance(email, str) or not isinstance(display_name, str):
            logger.debug("token_rejected", reason="claims", token_class=ACCESS_CLASS)
            return None
        return AccessClaims(
            user_id=payload["userId"],
            email=email,
            display_name=display_name,
            issued_at=payload["iat"],
            expires_at=payload["exp"],
        )

    def verify_refresh_token(self, token: str) -> Optional[RefreshClaims]:
        payload = self._verify(self._refresh, token)
        if payload is None:
            return None
        return RefreshClaims(
            user_id=payload["userId"],
            issued_at=payload["iat"],
            expires_at=payload["exp"],
        )

    # -- JWT primitives ----------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, context: _SigningContext, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(context.secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _sign(self, context: _SigningContext, claims: dict[str, Any]) -> str:
        now = self._clock()
        payload = {
            **claims,
            "tokenClass": context.token_class,
            "iss": self.issuer,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + context.ttl).timestamp()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(context, signing_input)}"

    def _verify(self, context: _SigningContext, token: str) -> Optional[dict[str, Any]]:
        if not isinstance(token, str):
            return None
        # Signed tokens are base64url text; anything else cannot match a signature
        if not token.isascii():
            logger.debug("token_rejected", reason="format", token_class=context.token_class)
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            logger.debug("token_rejected", reason="format", token_class=context.token_class)
            return None

        # Pin the algorithm so a forged "none"/RS256 header is never honoured
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.debug("token_rejected", reason="header", token_class=context.token_class)
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.debug("token_rejected", reason="algorithm", token_class=context.token_class)
            return None

        expected_sig = self._signature(context, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            logger.debug("token_rejected", reason="signature", token_class=context.token_class)
            return None

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            logger.debug("token_rejected", reason="payload", token_class=context.token_class)
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("tokenClass") != context.token_class:
            logger.debug("token_rejected", reason="class", token_class=context.token_class)
            return None
        if payload.get("iss") != self.issuer:
            logger.debug("token_rejected", reason="issuer", token_class=context.token_class)
            return None
        user_id = payload.get("userId")
        if not isinstance(user_id, int) or isinstance(user_id, bool):
            logger.debug("token_rejected", reason="subject", token_class=context.token_class)
            return None
        exp = payload.get("exp")
        iat = payload.get("iat")
        if not isinstance(exp, int) or not isinstance(iat, int):
            logger.debug("token_rejected", reason="timestamps", token_class=context.token_class)
            return None
        now_ts = self._clock().timestamp()
        if exp <= now_ts - self._leeway.total_seconds():
            logger.debug("token_rejected", reason="expired", token_class=context.token_class)
            return None
        return payload
