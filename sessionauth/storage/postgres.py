from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from sessionauth.logging import get_logger
from sessionauth.storage.errors import ConstraintViolation, StoreTimeout
from sessionauth.storage.models import TokenSlots, UserRecord, utcnow

_USER_COLUMNS = (
    "id, email, display_name, phone, extension, mobile, must_change_password, "
    "blocked_since, created_at, updated_at"
)


class PostgresStore:
    """Postgres-backed user directory and token slot storage.

    Passwords are stored as pgcrypto ``crypt()`` hashes and compared inside
    the database, so plaintext never leaves the credential check statement
    other than as a bound parameter. Each slot write is one ``UPDATE`` so
    readers observe either the old pair or the new pair.
    """

    def __init__(
        self,
        dsn: str,
        *,
        timeout_seconds: float = 10.0,
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
            open=True,
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        """Borrow a pooled connection, translating timeouts to ``StoreTimeout``."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            raise StoreTimeout(f"no database connection within {self.timeout_seconds}s") from exc
        except errors.QueryCanceled as exc:
            raise StoreTimeout("database statement timed out") from exc

    def _ensure_schema(self) -> None:
        """Create the ``app_user`` table and the pgcrypto extension if missing."""

        with self._connect() as conn:
            conn.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id INTEGER PRIMARY KEY,
                    email VARCHAR(50) NOT NULL UNIQUE,
                    display_name VARCHAR(100) NOT NULL,
                    phone VARCHAR(20),
                    extension VARCHAR(10),
                    mobile VARCHAR(20),
                    must_change_password BOOLEAN NOT NULL DEFAULT FALSE,
                    password_hash TEXT NOT NULL,
                    blocked_since TIMESTAMPTZ,
                    access_token TEXT,
                    refresh_token TEXT,
                    token_updated_at TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ
                )
                """
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> UserRecord:
        return UserRecord(
            id=int(row["id"]),
            email=row["email"],
            display_name=row.get("display_name") or "",
            phone=row.get("phone"),
            extension=row.get("extension"),
            mobile=row.get("mobile"),
            must_change_password=bool(row.get("must_change_password", False)),
            blocked_since=row.get("blocked_since"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at"),
        )

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user
                        (id, email, display_name, phone, extension, mobile,
                         must_change_password, password_hash)
                    VALUES (%s, lower(%s), %s, %s, %s, %s, %s, crypt(%s, gen_salt('bf')))
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        user_id,
                        email.strip(),
                        display_name,
                        phone,
                        extension,
                        mobile,
                        must_change_password,
                        password,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "email" if "email" in str(exc) else "id"
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return self._user_from_row(row)

    def user_id_exists(self, user_id: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS present FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return bool(row)

    def count_users(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM app_user").fetchone()
        return int(row["total"]) if row else 0

    def find_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE email = lower(%s)",
                (email.strip(),),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_user_by_id(self, user_id: int) -> Optional[UserRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_block_status(self, user_id: int) -> Optional[datetime]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT blocked_since FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return row.get("blocked_since")

    def set_block_status(
        self, user_id: int, blocked_since: Optional[datetime]
    ) -> Optional[UserRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_user SET blocked_since = %s, updated_at = now()
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (blocked_since, user_id),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def list_users(
        self, *, offset: int = 0, limit: int = 30, search: Optional[str] = None
    ) -> Tuple[List[UserRecord], int]:
        where = ""
        params: List[Any] = []
        term = (search or "").strip()
        if term:
            where = "WHERE (id::text ILIKE %s OR display_name ILIKE %s OR email ILIKE %s)"
            pattern = f"%{term}%"
            params.extend([pattern, pattern, pattern])
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user {where} "
                "ORDER BY display_name ASC, id ASC OFFSET %s LIMIT %s",
                (*params, offset, limit),
            ).fetchall()
            count_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM app_user {where}", tuple(params)
            ).fetchone()
        total = int(count_row["total"]) if count_row else 0
        return [self._user_from_row(row) for row in rows], total

    def check_credentials(self, email: str, password: str) -> Optional[UserRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_USER_COLUMNS} FROM app_user
                WHERE email = lower(%s) AND password_hash = crypt(%s, password_hash)
                """,
                (email.strip(), password),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def persist_token_pair(
        self, user_id: int, access_token: Optional[str], refresh_token: Optional[str]
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user
                SET access_token = %s, refresh_token = %s, token_updated_at = now()
                WHERE id = %s
                """,
                (access_token, refresh_token, user_id),
            )
            updated = cur.rowcount
        return bool(updated)

    def rotate_access_token(self, user_id: int, refresh_token: str, access_token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user
                SET access_token = %s, token_updated_at = now()
                WHERE id = %s AND refresh_token = %s
                """,
                (access_token, user_id, refresh_token),
            )
            updated = cur.rowcount
        return bool(updated)

    def get_token_slots(self, user_id: int) -> Optional[TokenSlots]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT access_token, refresh_token FROM app_user WHERE id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return TokenSlots(
            access_token=row.get("access_token"),
            refresh_token=row.get("refresh_token"),
        )
