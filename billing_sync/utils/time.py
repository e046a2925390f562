"""Epoch timestamp helpers for queue statistics and dead-letter records."""
from __future__ import annotations
from datetime import datetime, timezone

def epoch_to_iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()

def elapsed_ms(start_ts: float, end_ts: float) -> int:
    """Whole milliseconds from ``start_ts`` to ``end_ts``, clamped at zero.

    Used both for ages (start in the past) and for time-until (end in the
    future); an overdue retry reports 0 rather than a negative wait.
    """
    return max(0, int(round((end_ts - start_ts) * 1000)))

__all__ = ["epoch_to_iso", "elapsed_ms"]
