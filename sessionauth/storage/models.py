from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UserRecord:
    id: int
    email: str
    display_name: str
    phone: Optional[str] = None
    extension: Optional[str] = None
    mobile: Optional[str] = None
    must_change_password: bool = False
    blocked_since: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @property
    def is_blocked(self) -> bool:
        return self.blocked_since is not None

    def trimmed(self) -> "UserRecord":
        """Copy with surrounding whitespace removed from the text columns.

        Fixed-width columns in legacy directories come back space padded.
        """
        def _strip(value: Optional[str]) -> Optional[str]:
            return value.strip() if isinstance(value, str) else value

        return replace(
            self,
            email=self.email.strip(),
            display_name=self.display_name.strip(),
            phone=_strip(self.phone),
            extension=_strip(self.extension),
            mobile=_strip(self.mobile),
        )


@dataclass(frozen=True)
class TokenSlots:
    """The access/refresh values currently persisted for one user."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None

    @property
    def empty(self) -> bool:
        return self.access_token is None and self.refresh_token is None


@dataclass
class UserPage:
    items: List[UserRecord]
    total: int
    page: int
    limit: int
