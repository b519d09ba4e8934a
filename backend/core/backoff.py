"""Deterministic exponential backoff for database connection retries."""

from __future__ import annotations

MAX_ATTEMPTS = 7
BASE_DELAY = 2.0
MAX_DELAY = 15.0


def delay_for(attempt: int) -> float:
    """Seconds to wait after failed attempt number ``attempt`` (1-based).

    2s, 4s, 8s, then capped at 15s. No jitter.
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    return min(BASE_DELAY * 2 ** (attempt - 1), MAX_DELAY)


def total_wait(attempts: int = MAX_ATTEMPTS) -> float:
    """Total backoff slept across ``attempts`` consecutive failures.

    No sleep follows the final attempt, so only ``attempts - 1`` delays count.
    """
    return sum(delay_for(n) for n in range(1, attempts))
