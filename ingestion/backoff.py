"""
Exponential backoff delay calculation.
"""

import random
from typing import Optional


def calculate_backoff_ms(
    attempt: int,
    base_ms: int,
    max_ms: int,
    jitter: bool = False,
    rng: Optional[random.Random] = None
) -> int:
    """
    Delay before retry number ``attempt``.

    Computes ``min(max_ms, base_ms * 2 ** (attempt - 1))``. With jitter the
    result is a uniform integer in ``[0, computed]`` so that clients failing
    together do not retry together.

    Args:
        attempt: 1-based attempt number (values below 1 count as 1)
        base_ms: Delay for the first retry
        max_ms: Upper bound for any delay
        jitter: Randomize within ``[0, computed]``
        rng: Random source, for reproducible jitter

    Returns:
        Delay in milliseconds
    """
    attempt = max(attempt, 1)
    base_ms = max(base_ms, 0)
    max_ms = max(max_ms, 0)

    # Stop doubling once the cap is reached to keep the integers small
    computed = base_ms
    for _ in range(attempt - 1):
        if computed == 0 or computed >= max_ms:
            break
        computed *= 2
    computed = min(max_ms, computed)

    if jitter and computed > 0:
        return (rng or random).randint(0, computed)
    return computed
