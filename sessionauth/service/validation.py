from __future__ import annotations

import re
import unicodedata
from typing import Optional

from sessionauth.service.errors import ValidationError

EMAIL_MAX_LENGTH = 50
PASSWORD_MIN_LENGTH = 6
PASSWORD_MAX_LENGTH = 128
DISPLAY_NAME_MIN_LENGTH = 2
DISPLAY_NAME_MAX_LENGTH = 100
PHONE_MAX_LENGTH = 20
EXTENSION_MAX_LENGTH = 10

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_PATTERN = re.compile(r"^[\d\s\-\(\)\+]+$")


def normalize_email(value: object) -> str:
    """Trim, NFKC-normalize and lowercase an email, rejecting malformed input."""
    if not isinstance(value, str):
        raise ValidationError("email must be a string", field="email")
    normalized = unicodedata.normalize("NFKC", value.strip()).lower()
    if not normalized:
        raise ValidationError("email is required", field="email")
    if len(normalized) > EMAIL_MAX_LENGTH:
        raise ValidationError(
            f"email must be at most {EMAIL_MAX_LENGTH} characters", field="email"
        )
    if not _EMAIL_PATTERN.match(normalized):
        raise ValidationError("email must be a valid address", field="email")
    return normalized


def require_password(value: object) -> str:
    """Login-side check: present, non-blank and bounded. Strength is not re-checked."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("password is required", field="password")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValidationError(
            f"password must be at most {PASSWORD_MAX_LENGTH} characters", field="password"
        )
    return value


def validate_new_password(value: object) -> str:
    password = require_password(value)
    if len(password) < PASSWORD_MIN_LENGTH:
        raise ValidationError(
            f"password must be at least {PASSWORD_MIN_LENGTH} characters", field="password"
        )
    return password


def validate_display_name(value: object) -> str:
    if not isinstance(value, str):
        raise ValidationError("display_name must be a string", field="display_name")
    name = value.strip()
    if len(name) < DISPLAY_NAME_MIN_LENGTH or len(name) > DISPLAY_NAME_MAX_LENGTH:
        raise ValidationError(
            f"display_name must be between {DISPLAY_NAME_MIN_LENGTH} and "
            f"{DISPLAY_NAME_MAX_LENGTH} characters",
            field="display_name",
        )
    return name


def validate_phone(value: Optional[str], field: str) -> Optional[str]:
    if value is None:
        return None
    phone = value.strip()
    if not phone:
        return None
    if len(phone) > PHONE_MAX_LENGTH:
        raise ValidationError(
            f"{field} must be at most {PHONE_MAX_LENGTH} characters", field=field
        )
    if not _PHONE_PATTERN.match(phone):
        raise ValidationError(
            f"{field} may only contain digits, spaces and + - ( )", field=field
        )
    return phone


def validate_extension(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    extension = value.strip()
    if len(extension) > EXTENSION_MAX_LENGTH:
        raise ValidationError(
            f"extension must be at most {EXTENSION_MAX_LENGTH} characters", field="extension"
        )
    return extension or None
