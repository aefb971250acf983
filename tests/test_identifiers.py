import random

import pytest

from sessionauth.service.identifiers import (
    MAX_USER_ID,
    IdentifierAllocator,
    IdentifierExhausted,
)


def test_first_attempt_uses_clock_digits():
    allocator = IdentifierAllocator(lambda _: False, clock=lambda: 1700000123.5)
    assert allocator.allocate() == 123500


def test_collisions_fall_through_to_population_offset():
    taken = {123500}
    allocator = IdentifierAllocator(
        lambda candidate: candidate in taken,
        lambda: 50,
        rng=random.Random(1),
        clock=lambda: 1700000123.5,
    )

    user_id = allocator.allocate()

    # Attempts 0-2 all produce the taken clock id; attempt 3 uses the count
    assert 50 + 1000 + 3 <= user_id <= 50 + 1000 + 999 + 3


def test_without_count_fn_uses_random_range():
    seen = []

    def exists(candidate):
        seen.append(candidate)
        return len(seen) <= 3

    allocator = IdentifierAllocator(exists, rng=random.Random(7), clock=lambda: 1.0)
    user_id = allocator.allocate()

    assert 100_000 <= user_id <= 999_999


def test_exhaustion_raises():
    allocator = IdentifierAllocator(lambda _: True, lambda: 0, max_attempts=4)
    with pytest.raises(IdentifierExhausted):
        allocator.allocate()


def test_ids_fit_signed_int32():
    candidates = []

    def exists(candidate):
        candidates.append(candidate)
        return len(candidates) < 4

    allocator = IdentifierAllocator(
        exists, lambda: MAX_USER_ID, rng=random.Random(3), clock=lambda: 1700000123.5
    )
    user_id = allocator.allocate()

    # Population offset overflows int32 and is folded back under a million
    assert user_id < 1_000_000
    assert all(0 < candidate <= MAX_USER_ID for candidate in candidates)
