"""
Retry queue admin endpoints (status, destructive clear, dead-letter history).
"""
from fastapi import APIRouter, Depends, Query, Request
from billing_sync.api.deps import get_retry_queue, require_admin
from billing_sync.jobs.retry_queue import RetryQueue
from billing_sync.models.schemas.retry_queue import DeadLetterList, RetryQueueCleared, RetryQueueStatus
from billing_sync.utils import get_logger

router = APIRouter()
logger = get_logger(__name__)

@router.get(
    "",
    response_model=RetryQueueStatus,
    summary="Get retry queue statistics"
)
async def get_retry_queue_status(
    request: Request,
    admin: str = Depends(require_admin),
    queue: RetryQueue = Depends(get_retry_queue),
) -> RetryQueueStatus:
    """Pending count, oldest item age, histogram by attempt count and time to next retry.

    The queue lives in process memory only: ``startedAt`` tells operators how
    far back the counters (and the pending items) go.
    """
    snapshot = queue.status()
    logger.info(
        "Retry queue status requested",
        requested_by=admin,
        total_items=snapshot.total_items,
        oldest_item_age_ms=snapshot.oldest_item_age_ms,
        next_retry_in_ms=snapshot.next_retry_in_ms,
        request_id=getattr(request.state, "request_id", None),
    )
    return RetryQueueStatus(**snapshot.to_dict())

@router.delete(
    "",
    response_model=RetryQueueCleared,
    summary="Clear the retry queue"
)
async def clear_retry_queue(
    request: Request,
    admin: str = Depends(require_admin),
    queue: RetryQueue = Depends(get_retry_queue),
) -> RetryQueueCleared:
    """Remove every pending retry. Operator recovery only: cleared items are not dead-lettered."""
    items_cleared = queue.clear(cleared_by=admin)
    logger.warning(
        "Retry queue cleared by admin",
        requested_by=admin,
        items_cleared=items_cleared,
        request_id=getattr(request.state, "request_id", None),
    )
    return RetryQueueCleared(
        success=True,
        items_cleared=items_cleared,
        message=f"Successfully cleared {items_cleared} items from retry queue",
    )

@router.get(
    "/dead-letters",
    response_model=DeadLetterList,
    summary="List recent dead-lettered reconciliation tasks"
)
async def list_dead_letters(
    limit: int = Query(50, ge=1, le=1000, description="Most recent records to return"),
    admin: str = Depends(require_admin),
    queue: RetryQueue = Depends(get_retry_queue),
) -> DeadLetterList:
    """Recent dead letters with everything needed for a manual replay."""
    records = queue.dead_letters()[-limit:]
    return DeadLetterList(
        dead_lettered_total=queue.processor.dead_lettered_total,
        items=records,
    )
