"""In-memory retry queue store (single-process).

Features:
- Idempotent enqueue: one pending task per target, found by subscription,
  customer or user id.
- Due-time scheduling per task (``next_attempt_at``).
- Oldest-failure-first iteration of due tasks.
- Thread-safe: every structural mutation runs under one re-entrant lock, so
  request handlers may enqueue while the processor thread drains.

The store holds no policy. Deciding whether a failed task is rescheduled or
dead-lettered is the processor's job; the store only records the decision.
Nothing here survives a process restart and there is no capacity limit; a
warning is logged once depth passes ``warn_depth``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional
import threading
import time

from billing_sync.config import RETRY_QUEUE_SETTINGS
from billing_sync.jobs.reconciliation_task import ReconciliationPayload, ReconciliationTask
from billing_sync.utils import get_logger
from billing_sync.utils.backoff import delay_for

logger = get_logger(__name__)


@dataclass(slots=True)
class QueueSnapshot:
    total: int
    oldest_enqueued_at: float | None
    next_attempt_at: float | None
    by_attempt_count: dict[int, int]


class RetryQueueStore:
    def __init__(self) -> None:
        self._warn_depth = int(RETRY_QUEUE_SETTINGS.get("warn_depth", 1000))
        self._lock = threading.RLock()
        self._tasks: dict[str, ReconciliationTask] = {}  # insertion order == enqueue order
        self._seq: dict[str, int] = {}
        self._key_index: dict[str, str] = {}  # identity key -> task id
        self._task_keys: dict[str, set[str]] = {}  # task id -> identity keys
        self._seq_counter = 0

    # ----------------------------- internal helpers ----------------------------- #
    def _next_seq(self) -> int:
        self._seq_counter += 1
        return self._seq_counter

    def _drop(self, task_id: str) -> ReconciliationTask | None:
        task = self._tasks.pop(task_id, None)
        if task is None:
            return None
        self._seq.pop(task_id, None)
        for key in self._task_keys.pop(task_id, set()):
            if self._key_index.get(key) == task_id:
                del self._key_index[key]
        return task

    def _index(self, task: ReconciliationTask) -> None:
        keys = self._task_keys.setdefault(task.id, set())
        for key in task.identity_keys():
            self._key_index[key] = task.id
            keys.add(key)

    def _pending_for(self, keys: list[str]) -> ReconciliationTask | None:
        """Oldest pending task matching any of ``keys``.

        A payload carrying both identifiers can bridge two pending tasks (one
        known by subscription, one by customer); the younger ones are folded
        into the oldest so a target never has more than one pending task.
        """
        ids = sorted({self._key_index[k] for k in keys if k in self._key_index}, key=self._seq.__getitem__)
        if not ids:
            return None
        primary = self._tasks[ids[0]]
        for other_id in ids[1:]:
            other = self._drop(other_id)
            primary.payload = primary.payload.merged_with(other.payload)
            primary.last_failure_at = max(primary.last_failure_at, other.last_failure_at)
            logger.info("Folded duplicate retry task", task_id=primary.id, folded_task_id=other_id)
        return primary

    # ----------------------------- public API ----------------------------- #
    def enqueue_or_update(self, task: ReconciliationTask) -> tuple[ReconciliationTask, bool]:
        """Insert ``task`` or merge it into the pending task for the same target.

        Returns ``(stored_task_copy, created)``. On merge the existing task keeps
        its id, ``enqueued_at`` and ``attempt_count``; its payload (event kind
        included), error and failure time are refreshed and ``next_attempt_at``
        is recomputed from the new failure time.
        """
        with self._lock:
            existing = self._pending_for(task.identity_keys())
            if existing is not None:
                existing.payload = existing.payload.merged_with(task.payload)
                existing.last_error = task.last_error
                existing.last_failure_at = max(existing.last_failure_at, task.last_failure_at)
                existing.next_attempt_at = existing.last_failure_at + delay_for(existing.attempt_count + 1)
                existing.revision += 1
                self._index(existing)
                logger.info(
                    "Merged failure into pending retry task",
                    task_id=existing.id,
                    event_kind=existing.payload.event_kind,
                    attempt_count=existing.attempt_count,
                    error=task.last_error,
                )
                return existing.copy(), False

            self._tasks[task.id] = task
            self._seq[task.id] = self._next_seq()
            self._index(task)
            depth = len(self._tasks)
            if depth >= self._warn_depth:
                logger.warning("Retry queue depth warning", depth=depth)
            return task.copy(), True

    def fold_applied(self, payload: ReconciliationPayload) -> ReconciliationTask | None:
        """Make a directly applied payload the newest state of any pending task for its target.

        Without this the pending task's next write would put older state back.
        The revision bump also keeps an attempt already in flight with the old
        state from resolving the task. Schedule and attempt count are unchanged.
        Returns the updated task, or None when nothing is pending.
        """
        with self._lock:
            existing = self._pending_for(payload.identity_keys())
            if existing is None:
                return None
            existing.payload = existing.payload.merged_with(payload)
            existing.revision += 1
            self._index(existing)
            logger.info(
                "Directly applied state folded into pending retry task",
                task_id=existing.id,
                event_kind=payload.event_kind,
            )
            return existing.copy()

    def due_tasks(self, now: Optional[float] = None) -> Iterator[ReconciliationTask]:
        """Lazily yield copies of tasks whose ``next_attempt_at <= now``, oldest failure first."""
        now_ts = time.time() if now is None else now
        with self._lock:
            due = [t for t in self._tasks.values() if t.next_attempt_at <= now_ts]
            due.sort(key=lambda t: (t.enqueued_at, self._seq[t.id]))
            copies = [t.copy() for t in due]
        yield from copies

    def get(self, task_id: str) -> ReconciliationTask | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.copy() if task is not None else None

    def remove(self, task_id: str) -> bool:
        with self._lock:
            return self._drop(task_id) is not None

    def resolve(self, task_id: str, revision: int) -> bool:
        """Remove a task after a successful attempt made against ``revision``.

        If a newer failure was merged into the task while the attempt was in
        flight the merged state has not been written yet, so the task stays.
        """
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.revision != revision:
                return False
            self._drop(task_id)
            return True

    def reschedule(self, task_id: str, *, attempt_count: int, next_attempt_at: float, last_error: str, failed_at: float) -> ReconciliationTask | None:
        """Record a failed attempt. Returns None if the task is gone (e.g. cleared)."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return None
            if attempt_count < task.attempt_count:
                raise ValueError("attempt_count may not decrease")
            task.attempt_count = attempt_count
            task.next_attempt_at = next_attempt_at
            task.last_error = last_error
            task.last_failure_at = failed_at
            return task.copy()

    def clear(self) -> int:
        with self._lock:
            count = len(self._tasks)
            self._tasks.clear()
            self._seq.clear()
            self._key_index.clear()
            self._task_keys.clear()
            return count

    # ----------------------------- inspection ----------------------------- #
    def depth(self) -> int:
        return len(self._tasks)

    def __len__(self) -> int:  # pragma: no cover
        return self.depth()

    def snapshot(self) -> QueueSnapshot:
        with self._lock:
            by_attempt: dict[int, int] = {}
            for t in self._tasks.values():
                by_attempt[t.attempt_count] = by_attempt.get(t.attempt_count, 0) + 1
            tasks = list(self._tasks.values())
            return QueueSnapshot(
                total=len(tasks),
                oldest_enqueued_at=min((t.enqueued_at for t in tasks), default=None),
                next_attempt_at=min((t.next_attempt_at for t in tasks), default=None),
                by_attempt_count=dict(sorted(by_attempt.items())),
            )


__all__ = ["RetryQueueStore", "QueueSnapshot"]
