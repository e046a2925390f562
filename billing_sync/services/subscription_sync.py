"""Direct subscription-state sync with retry-queue fallback.

Entry point for the webhook ingress: one synchronous identity-store write,
handing the payload to the retry queue if that write fails transiently.
Permanent failures are not queued (retrying cannot fix them); they are
reported back with full context instead.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass

from billing_sync.jobs.executor import OutcomeKind
from billing_sync.jobs.reconciliation_task import ReconciliationPayload
from billing_sync.jobs.retry_queue import RetryQueue
from billing_sync.utils import get_logger, log_business_event

logger = get_logger(__name__)


class SyncStatus(str, enum.Enum):
    APPLIED = "applied"
    QUEUED = "queued"
    REJECTED = "rejected"


@dataclass(slots=True)
class SyncResult:
    status: SyncStatus
    user_id: str | None = None
    task_id: str | None = None
    merged: bool = False
    error: str | None = None


async def sync_subscription_state(
    payload: ReconciliationPayload,
    retry_queue: RetryQueue,
    *,
    request_id: str | None = None,
) -> SyncResult:
    outcome = await retry_queue.executor.apply(payload)

    if outcome.succeeded:
        # An older failure for this target may still be queued; its retry must write this state, not its own.
        pending = retry_queue.store.fold_applied(payload)
        log_business_event(
            event_type="subscription_state_applied",
            details={
                "resolved_user_id": outcome.user_id,
                "pending_task_id": pending.id if pending else None,
                **payload.describe(),
            },
            request_id=request_id,
        )
        return SyncResult(status=SyncStatus.APPLIED, user_id=outcome.user_id, task_id=pending.id if pending else None)

    if outcome.kind is OutcomeKind.PERMANENT_FAILURE:
        logger.error(
            "Subscription state rejected; not queued",
            error=outcome.reason,
            request_id=request_id,
            target_state=payload.target_state,
            **payload.describe(),
        )
        return SyncResult(status=SyncStatus.REJECTED, error=outcome.reason)

    logger.warning(
        "Direct identity-store write failed; handing to retry queue",
        error=outcome.reason,
        request_id=request_id,
        **payload.describe(),
    )
    task, created = retry_queue.submit(payload, outcome.reason or "Unknown error", request_id=request_id)
    return SyncResult(status=SyncStatus.QUEUED, task_id=task.id, merged=not created, error=outcome.reason)


__all__ = ["sync_subscription_state", "SyncResult", "SyncStatus"]
