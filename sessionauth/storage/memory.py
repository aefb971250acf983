from __future__ import annotations

import json
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sessionauth.logging import get_logger
from sessionauth.storage.errors import ConstraintViolation
from sessionauth.storage.models import TokenSlots, UserRecord, utcnow


class MemoryStore:
    """In-process credential store implementing the user directory contract.

    Password comparison happens here, inside the store, exactly as the
    database adapter delegates it to Postgres. When ``fs_root`` is given the
    state is snapshotted to ``<fs_root>/state/memory_store.json`` after every
    write and reloaded on start.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, UserRecord] = {}
        self.credentials: Dict[int, str] = {}
        self.token_slots: Dict[int, TokenSlots] = {}
        self._hasher = PasswordHasher(type=Type.ID)
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- directory ---------------------------------------------------------

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
    ) -> UserRecord:
        normalized_email = email.strip().lower()
        with self._data_lock:
            if user_id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            if any(u.email == normalized_email for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = UserRecord(
                id=user_id,
                email=normalized_email,
                display_name=display_name,
                phone=phone,
                extension=extension,
                mobile=mobile,
                must_change_password=must_change_password,
            )
            self.users[user_id] = user
            self.credentials[user_id] = self._hasher.hash(password)
            self._persist_state()
            return user

    def user_id_exists(self, user_id: int) -> bool:
        with self._data_lock:
            return user_id in self.users

    def count_users(self) -> int:
        with self._data_lock:
            return len(self.users)

    def find_user_by_email(self, email: str) -> Optional[UserRecord]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def get_user_by_id(self, user_id: int) -> Optional[UserRecord]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_block_status(self, user_id: int) -> Optional[datetime]:
        with self._data_lock:
            user = self.users.get(user_id)
            return user.blocked_since if user else None

    def set_block_status(
        self, user_id: int, blocked_since: Optional[datetime]
    ) -> Optional[UserRecord]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.blocked_since = blocked_since
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def list_users(
        self, *, offset: int = 0, limit: int = 30, search: Optional[str] = None
    ) -> Tuple[List[UserRecord], int]:
        term = (search or "").strip().lower()
        with self._data_lock:
            matches = [
                u
                for u in self.users.values()
                if not term
                or term in str(u.id)
                or term in u.display_name.lower()
                or term in u.email
            ]
        matches.sort(key=lambda u: (u.display_name.lower(), u.id))
        return matches[offset : offset + limit], len(matches)

    def check_credentials(self, email: str, password: str) -> Optional[UserRecord]:
        user = self.find_user_by_email(email)
        if not user:
            return None
        with self._data_lock:
            stored = self.credentials.get(user.id)
        if not stored:
            return None
        try:
            self._hasher.verify(stored, password)
        except VerifyMismatchError:
            return None
        except (InvalidHash, VerificationError) as exc:
            self.logger.warning("password_hash_unusable", user_id=user.id, error=str(exc))
            return None
        return user

    # -- token slots -------------------------------------------------------

    def persist_token_pair(
        self, user_id: int, access_token: Optional[str], refresh_token: Optional[str]
    ) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.token_slots[user_id] = TokenSlots(
                access_token=access_token, refresh_token=refresh_token
            )
            self._persist_state()
            return True

    def get_token_slots(self, user_id: int) -> Optional[TokenSlots]:
        with self._data_lock:
            if user_id not in self.users:
                return None
            return self.token_slots.get(user_id, TokenSlots())

    def rotate_access_token(self, user_id: int, refresh_token: str, access_token: str) -> bool:
        """Swap in a new access token only while ``refresh_token`` is still persisted."""
        with self._data_lock:
            slots = self.token_slots.get(user_id)
            if user_id not in self.users or slots is None or slots.refresh_token != refresh_token:
                return False
            self.token_slots[user_id] = TokenSlots(
                access_token=access_token, refresh_token=refresh_token
            )
            self._persist_state()
            return True

    # -- persistence -------------------------------------------------------

    def _state_path(self) -> Optional[Path]:
        if self.fs_root is None:
            return None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_user(user: UserRecord) -> Dict[str, Any]:
        return {
            "id": user.id,
            "email": user.email,
            "display_name": user.display_name,
            "phone": user.phone,
            "extension": user.extension,
            "mobile": user.mobile,
            "must_change_password": user.must_change_password,
            "blocked_since": user.blocked_since.isoformat() if user.blocked_since else None,
            "created_at": user.created_at.isoformat(),
            "updated_at": user.updated_at.isoformat() if user.updated_at else None,
        }

    @staticmethod
    def _deserialize_user(data: Dict[str, Any]) -> UserRecord:
        def _dt(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        return UserRecord(
            id=int(data["id"]),
            email=data["email"],
            display_name=data.get("display_name", ""),
            phone=data.get("phone"),
            extension=data.get("extension"),
            mobile=data.get("mobile"),
            must_change_password=bool(data.get("must_change_password", False)),
            blocked_since=_dt(data.get("blocked_since")),
            created_at=_dt(data.get("created_at")) or utcnow(),
            updated_at=_dt(data.get("updated_at")),
        )

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": pwd_hash}
                for user_id, pwd_hash in self.credentials.items()
            ],
            "token_slots": [
                {
                    "user_id": user_id,
                    "access_token": slots.access_token,
                    "refresh_token": slots.refresh_token,
                }
                for user_id, slots in self.token_slots.items()
            ],
        }
        # Write to a temp file then rename so readers never see a torn snapshot
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".memory_store_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle)
            os.replace(tmp_path, path)
        except Exception:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            int(u["id"]): self._deserialize_user(u) for u in data.get("users", [])
        }
        self.credentials = {
            int(entry["user_id"]): entry["password_hash"]
            for entry in data.get("credentials", [])
        }
        self.token_slots = {
            int(entry["user_id"]): TokenSlots(
                access_token=entry.get("access_token"),
                refresh_token=entry.get("refresh_token"),
            )
            for entry in data.get("token_slots", [])
        }
        self.logger.info("memory_store_state_loaded", users=len(self.users), path=str(path))
        return True
