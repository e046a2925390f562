"""Background processor draining the reconciliation retry queue.

Per-task states: PENDING -> IN_FLIGHT -> RESOLVED | RETRY_SCHEDULED | DEAD_LETTERED.

The processor owns a daemon thread running its own asyncio event loop. Every
polling cycle it dispatches each due task as a separate asyncio task, so a
slow identity-store call never holds back the next due task, and it tracks
in-flight ids so a task is never attempted twice concurrently. Stopping sets a
threading.Event checked each cycle; pending and in-flight work is dropped and
the dropped counts are logged.
"""
from __future__ import annotations

import asyncio
import enum
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional

from billing_sync.config import RETRY_QUEUE_SETTINGS
from billing_sync.jobs.executor import AttemptOutcome, OutcomeKind, TaskExecutor
from billing_sync.jobs.queue import RetryQueueStore
from billing_sync.jobs.reconciliation_task import ReconciliationTask
from billing_sync.utils import get_logger, log_business_event
from billing_sync.utils.backoff import delay_for
from billing_sync.utils.time import epoch_to_iso

logger = get_logger(__name__)


class TaskState(str, enum.Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    RESOLVED = "resolved"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    DISCARDED = "discarded"  # removed by clear() while in flight


@dataclass(slots=True)
class DeadLetterRecord:
    task_id: str
    event_kind: str
    subscription_id: str | None
    customer_id: str | None
    user_id: str | None
    target_state: dict[str, Any]
    attempts: int
    final_error: str | None
    reason: str  # "permanent_failure" | "attempts_exhausted"
    enqueued_at: str
    dead_lettered_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class RetryQueueProcessor:
    def __init__(
        self,
        store: RetryQueueStore,
        executor: TaskExecutor,
        *,
        poll_interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.executor = executor
        self.poll_interval = float(poll_interval if poll_interval is not None else RETRY_QUEUE_SETTINGS["poll_interval_seconds"])
        self.max_attempts = int(max_attempts if max_attempts is not None else RETRY_QUEUE_SETTINGS["max_attempts"])
        self._clock = clock
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._in_flight: set[str] = set()
        self._pending_futures: set[asyncio.Task] = set()
        self.dead_lettered_total = 0
        self.resolved_total = 0
        self.recent_dead_letters: deque[DeadLetterRecord] = deque(
            maxlen=int(RETRY_QUEUE_SETTINGS.get("dead_letter_history", 100))
        )

    # ----------------------------- lifecycle ----------------------------- #
    def start(self) -> None:
        if self._thread and self._thread.is_alive():  # pragma: no cover
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._thread_main, name="retry-queue-processor", daemon=True)
        self._thread.start()
        logger.info("Retry queue processor started", poll_interval=self.poll_interval, max_attempts=self.max_attempts)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        logger.info("Retry queue processor stop requested")
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def _thread_main(self) -> None:
        asyncio.run(self._run())

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.dispatch_due()
            except Exception as e:  # pragma: no cover - defensive
                logger.error("Retry processor cycle error", error=str(e), exc_info=True)
            await asyncio.sleep(self.poll_interval)
        # asyncio.run cancels whatever is still in flight once we return.
        logger.warning(
            "Retry queue processor stopped; queued work is not persisted",
            pending_dropped=self.store.depth(),
            in_flight_dropped=self.in_flight_count(),
        )

    # ----------------------------- scheduling ----------------------------- #
    def dispatch_due(self, now: Optional[float] = None) -> list[asyncio.Task]:
        """Start an attempt for every due task not already in flight.

        Must be called from a running event loop. Returns the started tasks.
        """
        now_ts = self._clock() if now is None else now
        launched: list[asyncio.Task] = []
        for task in self.store.due_tasks(now_ts):
            with self._lock:
                if task.id in self._in_flight:
                    continue
                self._in_flight.add(task.id)
            fut = asyncio.create_task(self._attempt(task), name=f"retry-{task.id}")
            self._pending_futures.add(fut)
            fut.add_done_callback(self._pending_futures.discard)
            launched.append(fut)
        if launched:
            logger.info("Dispatched due retry tasks", count=len(launched), queue_depth=self.store.depth())
        return launched

    async def run_once(self, now: Optional[float] = None) -> list[TaskState]:
        """Dispatch due tasks and wait for all of them to settle."""
        launched = self.dispatch_due(now)
        if not launched:
            return []
        return list(await asyncio.gather(*launched))

    async def _attempt(self, task: ReconciliationTask) -> TaskState:
        try:
            try:
                outcome = await self.executor.attempt(task)
            except Exception as e:
                logger.error("Executor raised instead of classifying", task_id=task.id, error=str(e), exc_info=True)
                outcome = AttemptOutcome.transient(f"{type(e).__name__}: {e}")
            return self._handle_outcome(task, outcome)
        except Exception as e:
            # One task's bookkeeping failure never stops the others.
            logger.error("Failed to record retry outcome", task_id=task.id, error=str(e), exc_info=True)
            return TaskState.PENDING
        finally:
            with self._lock:
                self._in_flight.discard(task.id)

    def _handle_outcome(self, task: ReconciliationTask, outcome: AttemptOutcome) -> TaskState:
        now = self._clock()
        attempt_number = task.attempt_count + 1

        if outcome.succeeded:
            if not self.store.resolve(task.id, task.revision):
                if self.store.get(task.id) is None:
                    return TaskState.DISCARDED
                logger.info("Newer state merged during attempt; task stays queued", task_id=task.id)
                return TaskState.PENDING
            with self._lock:
                self.resolved_total += 1
            log_business_event(
                event_type="retry_task_resolved",
                details={
                    "task_id": task.id,
                    "attempts": attempt_number,
                    "time_in_queue_ms": int((now - task.enqueued_at) * 1000),
                    "resolved_user_id": outcome.user_id,
                    **task.payload.describe(),
                },
            )
            return TaskState.RESOLVED

        if outcome.kind is OutcomeKind.PERMANENT_FAILURE or attempt_number >= self.max_attempts:
            return self._dead_letter(task, outcome, attempt_number, now)

        next_attempt_at = now + delay_for(attempt_number + 1, max_attempts=self.max_attempts)
        updated = self.store.reschedule(
            task.id,
            attempt_count=attempt_number,
            next_attempt_at=next_attempt_at,
            last_error=outcome.reason or "Unknown error",
            failed_at=now,
        )
        if updated is None:
            logger.warning("Retry task removed while in flight", task_id=task.id)
            return TaskState.DISCARDED
        logger.warning(
            "Retry attempt failed, rescheduled",
            task_id=task.id,
            attempt=attempt_number,
            max_attempts=self.max_attempts,
            next_retry_in_ms=int((next_attempt_at - now) * 1000),
            error=outcome.reason,
            **task.payload.describe(),
        )
        return TaskState.RETRY_SCHEDULED

    def _dead_letter(self, task: ReconciliationTask, outcome: AttemptOutcome, attempts: int, now: float) -> TaskState:
        if not self.store.remove(task.id):
            logger.warning("Retry task removed while in flight", task_id=task.id)
            return TaskState.DISCARDED
        reason = "permanent_failure" if outcome.kind is OutcomeKind.PERMANENT_FAILURE else "attempts_exhausted"
        record = DeadLetterRecord(
            task_id=task.id,
            event_kind=task.payload.event_kind,
            subscription_id=task.payload.subscription_id,
            customer_id=task.payload.customer_id,
            user_id=task.payload.user_id,
            target_state=dict(task.payload.target_state),
            attempts=attempts,
            final_error=outcome.reason,
            reason=reason,
            enqueued_at=epoch_to_iso(task.enqueued_at),
            dead_lettered_at=epoch_to_iso(now),
        )
        with self._lock:
            self.dead_lettered_total += 1
            self.recent_dead_letters.append(record)
        logger.error(
            "DEAD LETTER - reconciliation task abandoned; manual sync required",
            task_id=task.id,
            reason=reason,
            attempts=attempts,
            final_error=outcome.reason,
            time_in_queue_ms=int((now - task.enqueued_at) * 1000),
            **task.payload.describe(),
        )
        log_business_event(event_type="retry_task_dead_lettered", details=record.to_dict())
        return TaskState.DEAD_LETTERED

    def dead_letters(self) -> list[dict[str, Any]]:
        with self._lock:
            return [r.to_dict() for r in self.recent_dead_letters]


__all__ = ["RetryQueueProcessor", "TaskState", "DeadLetterRecord"]
