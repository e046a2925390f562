"""Single reconciliation attempt against the identity store.

``TaskExecutor.attempt`` performs exactly one metadata write per call (after
the user lookup chain) and never raises: every failure is classified into a
transient or permanent outcome that the processor schedules on.
"""
from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass

import aiohttp

from billing_sync.integrations.identity_store import (
    IdentityStore,
    PermanentIdentityStoreError,
    TransientIdentityStoreError,
    resolve_user_id,
)
from billing_sync.jobs.reconciliation_task import ReconciliationPayload, ReconciliationTask
from billing_sync.utils import get_logger

logger = get_logger(__name__)


class OutcomeKind(str, enum.Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass(slots=True)
class AttemptOutcome:
    kind: OutcomeKind
    reason: str | None = None
    user_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @classmethod
    def success(cls, user_id: str) -> "AttemptOutcome":
        return cls(OutcomeKind.SUCCESS, user_id=user_id)

    @classmethod
    def transient(cls, reason: str) -> "AttemptOutcome":
        return cls(OutcomeKind.TRANSIENT_FAILURE, reason=reason)

    @classmethod
    def permanent(cls, reason: str) -> "AttemptOutcome":
        return cls(OutcomeKind.PERMANENT_FAILURE, reason=reason)


def validate_payload(payload: ReconciliationPayload) -> str | None:
    """Return a reason string if the payload can never be applied."""
    if not payload.event_kind:
        return "Malformed payload: missing event kind"
    if not isinstance(payload.target_state, dict) or not payload.target_state:
        return "Malformed payload: empty target state"
    if not (payload.subscription_id or payload.customer_id or payload.user_id):
        return "Malformed payload: no subscription, customer or user identifier"
    return None


class TaskExecutor:
    def __init__(self, identity_store: IdentityStore):
        self.identity_store = identity_store

    async def apply(self, payload: ReconciliationPayload) -> AttemptOutcome:
        invalid = validate_payload(payload)
        if invalid:
            return AttemptOutcome.permanent(invalid)
        try:
            user_id = await resolve_user_id(self.identity_store, payload)
            await self.identity_store.update_public_metadata(user_id, payload.target_state)
            return AttemptOutcome.success(user_id)
        except TransientIdentityStoreError as e:
            return AttemptOutcome.transient(str(e))
        except PermanentIdentityStoreError as e:
            return AttemptOutcome.permanent(str(e))
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            return AttemptOutcome.transient(f"{type(e).__name__}: {e}")
        except Exception as e:
            # Unknown failures stay retry-eligible; the attempt ceiling still bounds them.
            logger.error(
                "Unexpected error during identity-store write",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
                **payload.describe(),
            )
            return AttemptOutcome.transient(f"{type(e).__name__}: {e}")

    async def attempt(self, task: ReconciliationTask) -> AttemptOutcome:
        outcome = await self.apply(task.payload)
        logger.debug(
            "Reconciliation attempt finished",
            task_id=task.id,
            attempt=task.attempt_count + 1,
            outcome=outcome.kind.value,
            reason=outcome.reason,
        )
        return outcome


__all__ = ["TaskExecutor", "AttemptOutcome", "OutcomeKind", "validate_payload"]
