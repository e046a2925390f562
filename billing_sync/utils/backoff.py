"""Retry schedule for queued reconciliation attempts.

Attempt 1 is the synchronous write made by the webhook ingress. Every later
attempt waits ``base * factor ** (attempt - 2)`` seconds after the previous
failure, which with the default settings yields 1s, 3s and 9s for attempts
2, 3 and 4. No jitter: a task's ``next_attempt_at`` must always be
reproducible from its last failure time and attempt count.
"""
from __future__ import annotations

from typing import Optional

from billing_sync.config import RETRY_QUEUE_SETTINGS


def delay_for(attempt: int, *, base: Optional[float] = None, factor: Optional[float] = None, max_attempts: Optional[int] = None) -> float:
    """Seconds to wait after the previous failure before making ``attempt``."""
    base = float(base if base is not None else RETRY_QUEUE_SETTINGS["backoff_base_seconds"])
    factor = float(factor if factor is not None else RETRY_QUEUE_SETTINGS["backoff_factor"])
    max_attempts = int(max_attempts if max_attempts is not None else RETRY_QUEUE_SETTINGS["max_attempts"])
    if attempt < 2 or attempt > max_attempts:
        raise ValueError(f"No retry delay defined for attempt {attempt} (valid: 2..{max_attempts})")
    return base * (factor ** (attempt - 2))


def retry_schedule(max_attempts: Optional[int] = None) -> list[float]:
    """Full list of delays, e.g. ``[1.0, 3.0, 9.0]``."""
    max_attempts = int(max_attempts if max_attempts is not None else RETRY_QUEUE_SETTINGS["max_attempts"])
    return [delay_for(n, max_attempts=max_attempts) for n in range(2, max_attempts + 1)]


__all__ = ["delay_for", "retry_schedule"]
