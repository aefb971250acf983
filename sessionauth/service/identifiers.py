from __future__ import annotations

import random
import time
from typing import Callable, Optional

from sessionauth.logging import get_logger

logger = get_logger(__name__)

MAX_USER_ID = 2147483647


class IdentifierExhausted(RuntimeError):
    """No free user id was found within the attempt budget."""


class IdentifierAllocator:
    """Produces integer user ids that fit a signed 32-bit column.

    The first attempts derive a six digit id from the current millisecond
    clock. When those collide and a ``count_fn`` is available the id is
    offset from the current population size; remaining attempts fall back
    to a random six digit value. Every candidate is checked with
    ``exists_fn`` before being returned.
    """

    def __init__(
        self,
        exists_fn: Callable[[int], bool],
        count_fn: Optional[Callable[[], int]] = None,
        *,
        max_attempts: int = 10,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.exists_fn = exists_fn
        self.count_fn = count_fn
        self.max_attempts = max_attempts
        self._rng = rng or random.SystemRandom()
        self._clock = clock

    def _candidate(self, attempt: int) -> int:
        if attempt < 3:
            value = int(self._clock() * 1000) % 1_000_000
        elif attempt < 6 and self.count_fn is not None:
            value = self.count_fn() + 1000 + self._rng.randint(0, 999) + attempt
        else:
            value = self._rng.randint(100_000, 999_999)
        value = abs(value)
        if value > MAX_USER_ID:
            value %= 1_000_000
        return value

    def allocate(self) -> int:
        for attempt in range(self.max_attempts):
            candidate = self._candidate(attempt)
            if candidate == 0:
                continue
            if not self.exists_fn(candidate):
                return candidate
            logger.debug("user_id_collision", candidate=candidate, attempt=attempt)
        logger.error("user_id_exhausted", attempts=self.max_attempts)
        raise IdentifierExhausted(
            f"could not allocate a free user id after {self.max_attempts} attempts"
        )
