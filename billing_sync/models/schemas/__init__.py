from .base import ResponseBase
from .retry_queue import (
    ReconciliationRequest,
    RetryQueueStatus,
    RetryQueueCleared,
    DeadLetterRead,
    DeadLetterList,
)

__all__ = [
    "ResponseBase",
    "ReconciliationRequest",
    "RetryQueueStatus",
    "RetryQueueCleared",
    "DeadLetterRead",
    "DeadLetterList",
]
