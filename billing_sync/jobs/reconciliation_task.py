"""Reconciliation task payload structure."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from billing_sync.utils.backoff import delay_for


@dataclass(slots=True)
class ReconciliationPayload:
    """Billing event descriptor needed to rebuild the identity-store write."""

    event_kind: str
    target_state: dict[str, Any]
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    user_id: Optional[str] = None

    def identity_keys(self) -> list[str]:
        """Index keys for every identifier the payload carries.

        Keys name the target only, never the event kind, so either the
        subscription id or the customer id finds a pending task. A payload
        with no identifier has no keys and is never merged.
        """
        keys = []
        if self.subscription_id:
            keys.append(f"sub:{self.subscription_id}")
        if self.customer_id:
            keys.append(f"cus:{self.customer_id}")
        if self.user_id:
            keys.append(f"user:{self.user_id}")
        return keys

    def merged_with(self, newer: "ReconciliationPayload") -> "ReconciliationPayload":
        """Newer event kind and target-state values win; identifiers are only filled in, never erased."""
        return ReconciliationPayload(
            event_kind=newer.event_kind or self.event_kind,
            target_state={**self.target_state, **newer.target_state},
            subscription_id=self.subscription_id or newer.subscription_id,
            customer_id=self.customer_id or newer.customer_id,
            user_id=self.user_id or newer.user_id,
        )

    def describe(self) -> dict[str, Any]:
        return {
            "event_kind": self.event_kind,
            "subscription_id": self.subscription_id,
            "customer_id": self.customer_id,
            "user_id": self.user_id,
        }


@dataclass(slots=True)
class ReconciliationTask:
    payload: ReconciliationPayload
    enqueued_at: float  # epoch seconds of the first failure
    last_failure_at: float
    next_attempt_at: float
    attempt_count: int = 1
    last_error: str = "Unknown error"
    revision: int = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def from_failure(cls, payload: ReconciliationPayload, error: str, now: float) -> "ReconciliationTask":
        """Task for a payload whose synchronous first attempt just failed."""
        return cls(
            payload=payload,
            enqueued_at=now,
            last_failure_at=now,
            next_attempt_at=now + delay_for(2),
            attempt_count=1,
            last_error=error,
        )

    def identity_keys(self) -> list[str]:
        return self.payload.identity_keys()

    def copy(self) -> "ReconciliationTask":
        return replace(self, payload=replace(self.payload, target_state=dict(self.payload.target_state)))


__all__ = ["ReconciliationPayload", "ReconciliationTask"]
