from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, List, Optional, Protocol, Tuple, TypeVar

from sessionauth.config import Settings
from sessionauth.logging import get_logger
from sessionauth.service.errors import ConflictError, NotFoundError, ValidationError
from sessionauth.service.identifiers import IdentifierAllocator
from sessionauth.service.sessions import bounded_call
from sessionauth.service.validation import (
    normalize_email,
    validate_display_name,
    validate_extension,
    validate_new_password,
    validate_phone,
)
from sessionauth.storage.errors import ConstraintViolation
from sessionauth.storage.models import UserPage, UserRecord, utcnow

logger = get_logger(__name__)

T = TypeVar("T")


class UserStore(Protocol):
    def create_user(
        self,
        user_id: int,
        email: str,
        display_name: str,
        password: str,
        *,
        phone: Optional[str] = None,
        extension: Optional[str] = None,
        mobile: Optional[str] = None,
        must_change_password: bool = False,
    ) -> UserRecord: ...

    def user_id_exists(self, user_id: int) -> bool: ...

    def count_users(self) -> int: ...

    def find_user_by_email(self, email: str) -> Optional[UserRecord]: ...

    def get_user_by_id(self, user_id: int) -> Optional[UserRecord]: ...

    def set_block_status(
        self, user_id: int, blocked_since: Optional[datetime]
    ) -> Optional[UserRecord]: ...

    def list_users(
        self, *, offset: int = 0, limit: int = 30, search: Optional[str] = None
    ) -> Tuple[List[UserRecord], int]: ...


class UserService:
    """User directory operations that sit next to authentication.

    Accounts have to exist before anyone can log in, so creation, lookup,
    listing and blocking live here rather than in ``AuthService``.
    """

    def __init__(
        self,
        store: UserStore,
        settings: Settings,
        *,
        allocator: Optional[IdentifierAllocator] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.timeout = settings.store_timeout_seconds
        self.allocator = allocator or IdentifierAllocator(
            store.user_id_exists, store.count_users
        )

    async def _call(self, label: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await bounded_call(label, func, *args, timeout=self.timeout, **kwargs)

    async def create_user(
        self,
        *,
        email: str,
        display_name: str,
        password: str,
        phone: Optional[str] = None,
        extension: Optional[str] = None,
        mobile: Optional[str] = None,
        must_change_password: bool = False,
    ) -> UserRecord:
        """Validate and register a new account.

        Raises:
            ValidationError: a field is missing or malformed.
            ConflictError: the email is already registered.
        """
        name = validate_display_name(display_name)
        normalized = normalize_email(email)
        validate_new_password(password)
        phone = validate_phone(phone, "phone")
        mobile = validate_phone(mobile, "mobile")
        extension = validate_extension(extension)

        existing = await self._call("find_user_by_email", self.store.find_user_by_email, normalized)
        if existing is not None:
            raise ConflictError("email already registered", detail={"field": "email"})

        user_id = await self._call("allocate_user_id", self.allocator.allocate)
        try:
            user = await self._call(
                "create_user",
                self.store.create_user,
                user_id,
                normalized,
                name,
                password,
                phone=phone,
                extension=extension,
                mobile=mobile,
                must_change_password=must_change_password,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info("user_created", user_id=user.id)
        return user.trimmed()

    async def get_user(self, user_id: int) -> UserRecord:
        user = await self._call("get_user_by_id", self.store.get_user_by_id, user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user.trimmed()

    async def list_users(
        self, *, page: int = 1, limit: Optional[int] = None, search: Optional[str] = None
    ) -> UserPage:
        limit = self.settings.default_page_size if limit is None else limit
        if page < 1:
            raise ValidationError("page must be at least 1", field="page")
        if limit < 1 or limit > self.settings.max_page_size:
            raise ValidationError(
                f"limit must be between 1 and {self.settings.max_page_size}", field="limit"
            )
        term = search.strip() if search else None
        items, total = await self._call(
            "list_users",
            self.store.list_users,
            offset=(page - 1) * limit,
            limit=limit,
            search=term or None,
        )
        return UserPage(
            items=[user.trimmed() for user in items], total=total, page=page, limit=limit
        )

    async def block_user(self, actor_id: int, target_id: int) -> UserRecord:
        """Mark ``target_id`` as blocked from now on.

        Existing sessions are left alone; the block takes effect at the
        user's next login.
        """
        if actor_id == target_id:
            raise ValidationError("users cannot block themselves", field="user_id")
        user = await self._call(
            "set_block_status", self.store.set_block_status, target_id, utcnow()
        )
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": target_id})
        logger.info("user_blocked", user_id=target_id, actor_id=actor_id)
        return user.trimmed()
