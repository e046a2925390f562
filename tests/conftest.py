import sys
from pathlib import Path
from typing import Any, Dict, List, Optional
import pytest
from fastapi.testclient import TestClient

# Ensure project root on sys.path so 'billing_sync' resolves without an install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from billing_sync.main import app  # type: ignore
from billing_sync.jobs.reconciliation_task import ReconciliationPayload  # type: ignore
from billing_sync.jobs.retry_queue import RetryQueue  # type: ignore
from billing_sync.integrations.identity_store import (  # type: ignore
    TransientIdentityStoreError,
)

ADMIN_TOKEN = "test_admin_token"
INTERNAL_TOKEN = "test_internal_token"


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeIdentityStore:
    """In-memory stand-in for the Clerk client.

    ``users_by_subscription`` / ``users_by_customer`` drive the lookup chain.
    ``fail_writes[user_id]`` is a list of exceptions raised by successive
    metadata writes for that user before writes start succeeding.
    """

    def __init__(self):
        self.users_by_subscription: Dict[str, str] = {}
        self.users_by_customer: Dict[str, str] = {}
        self.fail_writes: Dict[str, List[Exception]] = {}
        self.metadata: Dict[str, Dict[str, Any]] = {}
        self.writes: List[tuple[str, Dict[str, Any]]] = []
        self.lookups: List[tuple[str, str]] = []

    async def find_user_by_subscription(self, subscription_id: str) -> Optional[str]:
        self.lookups.append(("subscription", subscription_id))
        return self.users_by_subscription.get(subscription_id)

    async def find_user_by_customer(self, customer_id: str) -> Optional[str]:
        self.lookups.append(("customer", customer_id))
        return self.users_by_customer.get(customer_id)

    async def update_public_metadata(self, user_id: str, metadata: Dict[str, Any]) -> None:
        self.writes.append((user_id, dict(metadata)))
        pending = self.fail_writes.get(user_id)
        if pending:
            raise pending.pop(0)
        self.metadata.setdefault(user_id, {}).update(metadata)

    def fail_next(self, user_id: str, times: int, message: str = "Clerk API PATCH returned 503") -> None:
        self.fail_writes[user_id] = [TransientIdentityStoreError(message) for _ in range(times)]

    def writes_for(self, user_id: str) -> int:
        return sum(1 for uid, _ in self.writes if uid == user_id)


def make_payload(
    subscription_id: Optional[str] = "sub_123",
    *,
    event_kind: str = "customer.subscription.updated",
    customer_id: Optional[str] = "cus_123",
    user_id: Optional[str] = None,
    **target_state: Any,
) -> ReconciliationPayload:
    state = target_state or {"premiumUser": True, "subscriptionStatus": "active"}
    return ReconciliationPayload(
        event_kind=event_kind,
        target_state=state,
        subscription_id=subscription_id,
        customer_id=customer_id,
        user_id=user_id,
    )


@pytest.fixture()
def payload_factory():
    return make_payload


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def identity_store():
    store = FakeIdentityStore()
    store.users_by_subscription["sub_123"] = "user_1"
    store.users_by_customer["cus_123"] = "user_1"
    return store


@pytest.fixture()
def retry_queue(identity_store, clock):
    """Queue wired to the fake identity store; processor thread not started."""
    return RetryQueue(identity_store=identity_store, clock=clock, poll_interval=0.01)


@pytest.fixture(autouse=True)
def _set_tokens(monkeypatch):
    """Patch the module-level tokens (config is imported before tests run)."""
    import billing_sync.config as config
    monkeypatch.setattr(config, "ADMIN_API_TOKENS", [ADMIN_TOKEN])
    monkeypatch.setattr(config, "WEBHOOK_INTERNAL_TOKEN", INTERNAL_TOKEN)
    yield


@pytest.fixture()
def client(retry_queue):
    """TestClient without lifespan; the queue is injected on app.state like the lifespan does."""
    app.state.retry_queue = retry_queue  # type: ignore[attr-defined]
    yield TestClient(app)
    app.state.retry_queue = None  # type: ignore[attr-defined]


@pytest.fixture()
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest.fixture()
def internal_headers():
    return {"X-Internal-Token": INTERNAL_TOKEN}
