"""Process-scoped reconciliation retry queue: store + executor + processor.

Constructed once in the application lifespan and handed to the webhook
ingress and the admin endpoints through ``app.state.retry_queue``. Exposes the
operator surface: ``status()`` (read-only statistics) and ``clear()``
(destructive wipe, authorization is the caller's responsibility).
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from billing_sync.integrations.identity_store import ClerkIdentityStore, IdentityStore
from billing_sync.jobs.executor import TaskExecutor
from billing_sync.jobs.queue import RetryQueueStore
from billing_sync.jobs.reconciliation_task import ReconciliationPayload, ReconciliationTask
from billing_sync.jobs.worker_retry import RetryQueueProcessor
from billing_sync.utils import get_logger, log_business_event
from billing_sync.utils.time import elapsed_ms, epoch_to_iso

logger = get_logger(__name__)


@dataclass(slots=True)
class QueueStatus:
    total_items: int
    oldest_item_age_ms: int | None
    items_by_attempt_count: dict[str, int]
    next_retry_in_ms: int | None
    in_flight_items: int
    dead_lettered_total: int
    resolved_total: int
    started_at: str
    durability: str = "memory"

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalItems": self.total_items,
            "oldestItemAgeMs": self.oldest_item_age_ms,
            "itemsByAttemptCount": self.items_by_attempt_count,
            "nextRetryInMs": self.next_retry_in_ms,
            "inFlightItems": self.in_flight_items,
            "deadLetteredTotal": self.dead_lettered_total,
            "resolvedTotal": self.resolved_total,
            "startedAt": self.started_at,
            "durability": self.durability,
        }


class RetryQueue:
    def __init__(
        self,
        identity_store: Optional[IdentityStore] = None,
        *,
        store: Optional[RetryQueueStore] = None,
        executor: Optional[TaskExecutor] = None,
        clock: Callable[[], float] = time.time,
        poll_interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ):
        self.store = store or RetryQueueStore()
        self.executor = executor or TaskExecutor(identity_store or ClerkIdentityStore())
        self.processor = RetryQueueProcessor(
            self.store,
            self.executor,
            poll_interval=poll_interval,
            max_attempts=max_attempts,
            clock=clock,
        )
        self._clock = clock
        self.started_at = clock()

    def start(self) -> None:
        self.processor.start()

    def stop(self) -> None:
        self.processor.stop()

    def submit(self, payload: ReconciliationPayload, error: str = "Unknown error", *, request_id: str | None = None) -> tuple[ReconciliationTask, bool]:
        """Queue a payload whose direct write just failed. Returns ``(task, created)``."""
        task = ReconciliationTask.from_failure(payload, error, self._clock())
        stored, created = self.store.enqueue_or_update(task)
        log_business_event(
            event_type="retry_task_enqueued" if created else "retry_task_merged",
            details={
                "task_id": stored.id,
                "attempt_count": stored.attempt_count,
                "next_attempt_at": epoch_to_iso(stored.next_attempt_at),
                "error": error,
                "queue_depth": self.store.depth(),
                **payload.describe(),
            },
            request_id=request_id,
        )
        return stored, created

    def status(self) -> QueueStatus:
        now = self._clock()
        snap = self.store.snapshot()
        return QueueStatus(
            total_items=snap.total,
            oldest_item_age_ms=elapsed_ms(snap.oldest_enqueued_at, now) if snap.oldest_enqueued_at is not None else None,
            items_by_attempt_count={str(k): v for k, v in snap.by_attempt_count.items()},
            next_retry_in_ms=elapsed_ms(now, snap.next_attempt_at) if snap.next_attempt_at is not None else None,
            in_flight_items=self.processor.in_flight_count(),
            dead_lettered_total=self.processor.dead_lettered_total,
            resolved_total=self.processor.resolved_total,
            started_at=epoch_to_iso(self.started_at),
        )

    def clear(self, *, cleared_by: str | None = None) -> int:
        count = self.store.clear()
        logger.warning("Retry queue cleared", items_cleared=count, cleared_by=cleared_by)
        log_business_event(
            event_type="retry_queue_cleared",
            details={"items_cleared": count, "cleared_by": cleared_by},
        )
        return count

    def dead_letters(self) -> list[dict[str, Any]]:
        return self.processor.dead_letters()


__all__ = ["RetryQueue", "QueueStatus"]
