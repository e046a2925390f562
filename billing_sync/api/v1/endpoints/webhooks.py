"""
Billing webhook ingress.

Receives reconciliation requests from the upstream webhook verifier (signature
already checked, target state already computed) and applies them to the
identity store, falling back to the retry queue on transient failure.
"""
import time
from fastapi import APIRouter, Depends, Request, Response, status
from billing_sync.api.deps import get_retry_queue, require_internal_token
from billing_sync.jobs.retry_queue import RetryQueue
from billing_sync.models.schemas.base import ResponseBase
from billing_sync.models.schemas.retry_queue import ReconciliationRequest
from billing_sync.services.subscription_sync import SyncStatus, sync_subscription_state
from billing_sync.utils import get_logger, log_performance

router = APIRouter()
logger = get_logger(__name__)

_STATUS_CODES = {
    SyncStatus.APPLIED: status.HTTP_200_OK,
    SyncStatus.QUEUED: status.HTTP_202_ACCEPTED,
    SyncStatus.REJECTED: status.HTTP_422_UNPROCESSABLE_ENTITY,
}

@router.post(
    "/billing",
    response_model=ResponseBase,
    summary="Apply a billing state change to the identity store",
    dependencies=[Depends(require_internal_token)],
)
async def receive_billing_event(
    body: ReconciliationRequest,
    request: Request,
    response: Response,
    queue: RetryQueue = Depends(get_retry_queue),
) -> ResponseBase:
    """
    One direct write, then:
      - 200 applied: identity store updated
      - 202 queued: write failed transiently, retry queue owns it now
      - 422 rejected: write can never succeed (malformed / unknown user)
    """
    start_time = time.time()
    request_id = getattr(request.state, "request_id", None)

    logger.info(
        "Billing reconciliation request received",
        event_kind=body.event_kind,
        subscription_id=body.subscription_id,
        customer_id=body.customer_id,
        request_id=request_id,
    )

    result = await sync_subscription_state(body.to_payload(), queue, request_id=request_id)
    response.status_code = _STATUS_CODES[result.status]

    log_performance(
        operation="receive_billing_event",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"status": result.status.value, "event_kind": body.event_kind},
    )
    return ResponseBase(
        success=result.status is not SyncStatus.REJECTED,
        message=f"Billing event {result.status.value}",
        data={
            "status": result.status.value,
            "user_id": result.user_id,
            "task_id": result.task_id,
            "merged": result.merged,
            "error": result.error,
        },
    )
