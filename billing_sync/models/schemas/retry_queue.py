"""
Schemas for the reconciliation ingress and the retry-queue admin surface.

Admin responses are serialized in camelCase to match what the dashboard
consumes (``totalItems``, ``oldestItemAgeMs`` ...).
"""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from billing_sync.jobs.reconciliation_task import ReconciliationPayload


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReconciliationRequest(BaseModel):
    """Verified billing event reduced to the identity-store write it implies."""
    event_kind: str = Field(min_length=1, description="Billing event type, e.g. customer.subscription.updated")
    subscription_id: Optional[str] = Field(None, description="Payment-provider subscription id")
    customer_id: Optional[str] = Field(None, description="Payment-provider customer id")
    user_id: Optional[str] = Field(None, description="Identity-store user id when already known")
    target_state: Dict[str, Any] = Field(description="Public metadata to apply to the user")

    @model_validator(mode="after")
    def _require_identifier(self) -> "ReconciliationRequest":
        if not (self.subscription_id or self.customer_id or self.user_id):
            raise ValueError("One of subscription_id, customer_id or user_id is required")
        if not self.target_state:
            raise ValueError("target_state must not be empty")
        return self

    def to_payload(self) -> ReconciliationPayload:
        return ReconciliationPayload(
            event_kind=self.event_kind,
            target_state=dict(self.target_state),
            subscription_id=self.subscription_id,
            customer_id=self.customer_id,
            user_id=self.user_id,
        )


class RetryQueueStatus(_CamelModel):
    total_items: int
    oldest_item_age_ms: Optional[int] = None
    items_by_attempt_count: Dict[str, int] = Field(default_factory=dict)
    next_retry_in_ms: Optional[int] = None
    in_flight_items: int = 0
    dead_lettered_total: int = 0
    resolved_total: int = 0
    started_at: Optional[str] = None
    durability: str = "memory"


class RetryQueueCleared(_CamelModel):
    success: bool = True
    items_cleared: int
    message: str


class DeadLetterRead(_CamelModel):
    task_id: str
    event_kind: str
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    user_id: Optional[str] = None
    target_state: Dict[str, Any] = Field(default_factory=dict)
    attempts: int
    final_error: Optional[str] = None
    reason: str
    enqueued_at: str
    dead_lettered_at: str


class DeadLetterList(_CamelModel):
    dead_lettered_total: int
    items: List[DeadLetterRead]
