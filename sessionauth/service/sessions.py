from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, Protocol, TypeVar

from psycopg import OperationalError
from psycopg_pool import PoolTimeout

from sessionauth.logging import get_logger
from sessionauth.service.errors import StoreUnavailableError
from sessionauth.storage.errors import StoreTimeout
from sessionauth.storage.models import TokenSlots

logger = get_logger(__name__)

T = TypeVar("T")


class TokenSlotStore(Protocol):
    def persist_token_pair(
        self, user_id: int, access_token: Optional[str], refresh_token: Optional[str]
    ) -> bool: ...

    def get_token_slots(self, user_id: int) -> Optional[TokenSlots]: ...

    def rotate_access_token(
        self, user_id: int, refresh_token: str, access_token: str
    ) -> bool: ...


async def bounded_call(
    label: str, func: Callable[..., T], *args: Any, timeout: float, **kwargs: Any
) -> T:
    """Run a blocking store call in a worker thread under a deadline.

    Timeouts and driver failures surface as ``StoreUnavailableError`` so
    callers only ever deal with one I/O failure type.
    """
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs), timeout
        )
    except asyncio.TimeoutError as exc:
        logger.error("store_call_timeout", operation=label, timeout=timeout)
        raise StoreUnavailableError("credential store timed out") from exc
    except StoreUnavailableError:
        raise
    except Exception as exc:
        if _is_store_failure(exc):
            logger.error(
                "store_call_failed",
                operation=label,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailableError("credential store unavailable") from exc
        raise


def _is_store_failure(exc: Exception) -> bool:
    return isinstance(exc, (StoreTimeout, OperationalError, PoolTimeout, OSError))


class SessionBridge:
    """Reads and writes the single persisted token pair of a user.

    This is the only component that makes a token globally valid (by
    persisting it) or revoked (by clearing it). Every operation is one store
    call, so no half-written pair is ever observable.
    """

    def __init__(self, store: TokenSlotStore, *, timeout: float) -> None:
        self.store = store
        self.timeout = timeout

    async def persist_pair(
        self, user_id: int, access_token: str, refresh_token: Optional[str]
    ) -> bool:
        return await bounded_call(
            "persist_token_pair",
            self.store.persist_token_pair,
            user_id,
            access_token,
            refresh_token,
            timeout=self.timeout,
        )

    async def rotate_access(self, user_id: int, access_token: str, refresh_token: str) -> bool:
        """Replace the access slot only if ``refresh_token`` is still the persisted one."""
        return await bounded_call(
            "rotate_access_token",
            self.store.rotate_access_token,
            user_id,
            refresh_token,
            access_token,
            timeout=self.timeout,
        )

    async def lookup_slots(self, user_id: int) -> Optional[TokenSlots]:
        return await bounded_call(
            "get_token_slots", self.store.get_token_slots, user_id, timeout=self.timeout
        )

    async def clear_slots(self, user_id: int) -> None:
        cleared = await bounded_call(
            "clear_token_slots",
            self.store.persist_token_pair,
            user_id,
            None,
            None,
            timeout=self.timeout,
        )
        logger.info("token_slots_cleared", user_id=user_id, user_found=cleared)
