"""
Clerk identity-store client.

Writes derived subscription state into a user's ``public_metadata`` and
resolves which user a billing event belongs to. Every call carries its own
``aiohttp`` timeout so an attempt always ends in a result or an exception,
never a hang.

Errors are mapped onto a small hierarchy the executor classifies:
    TransientIdentityStoreError  - network failure, timeout, 408/429/5xx
    PermanentIdentityStoreError  - 400/401/403/404/422, malformed payloads
    UserNotFoundError            - no user matched the lookup chain
"""
import asyncio
import json
from typing import Any, Dict, Optional, Protocol

import aiohttp

from billing_sync.config import IDENTITY_STORE_SETTINGS
from billing_sync.jobs.reconciliation_task import ReconciliationPayload
from billing_sync.utils import get_logger

logger = get_logger(__name__)

TRANSIENT_STATUSES = {408, 425, 429, 500, 502, 503, 504}


class IdentityStoreError(Exception):
    """Base error for identity-store operations."""


class TransientIdentityStoreError(IdentityStoreError):
    """Retry-eligible failure (network, timeout, rate limit, server error)."""


class PermanentIdentityStoreError(IdentityStoreError):
    """Failure that retrying cannot fix."""


class UserNotFoundError(PermanentIdentityStoreError):
    """No identity-store user matches the payload's identifiers."""


class IdentityStore(Protocol):
    async def find_user_by_subscription(self, subscription_id: str) -> Optional[str]: ...
    async def find_user_by_customer(self, customer_id: str) -> Optional[str]: ...
    async def update_public_metadata(self, user_id: str, metadata: Dict[str, Any]) -> None: ...


async def resolve_user_id(store: IdentityStore, payload: ReconciliationPayload) -> str:
    """
    Resolve the identity-store user for a payload.

    Chain: explicit ``user_id`` -> lookup by subscription id -> lookup by
    customer id (the subscription id on file may be stale).

    Raises:
        PermanentIdentityStoreError: payload carries no identifier at all
        UserNotFoundError: every lookup in the chain came back empty
    """
    if payload.user_id:
        return payload.user_id
    if not payload.subscription_id and not payload.customer_id:
        raise PermanentIdentityStoreError("Payload has no subscription, customer or user identifier")

    if payload.subscription_id:
        user_id = await store.find_user_by_subscription(payload.subscription_id)
        if user_id:
            return user_id
        logger.info(
            "No user for subscription id, falling back to customer id",
            subscription_id=payload.subscription_id,
            customer_id=payload.customer_id,
        )
    if payload.customer_id:
        user_id = await store.find_user_by_customer(payload.customer_id)
        if user_id:
            return user_id

    raise UserNotFoundError(
        f"No user found for subscription={payload.subscription_id} customer={payload.customer_id}"
    )


class ClerkIdentityStore:
    """Clerk Backend API adapter (``/users`` search + metadata merge)."""

    def __init__(
        self,
        api_base_url: Optional[str] = None,
        secret_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.api_base_url = str(api_base_url or IDENTITY_STORE_SETTINGS["api_base_url"]).rstrip("/")
        self.secret_key = secret_key if secret_key is not None else IDENTITY_STORE_SETTINGS["secret_key"]
        self.timeout = aiohttp.ClientTimeout(
            total=float(timeout_seconds or IDENTITY_STORE_SETTINGS["timeout_seconds"])  # type: ignore[arg-type]
        )
        self.logger = get_logger("integration.clerk")

    def _headers(self) -> Dict[str, str]:
        if not self.secret_key:
            raise PermanentIdentityStoreError("CLERK_SECRET_KEY is not configured")
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = f"{self.api_base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, headers=self._headers(), params=params, json=body) as response:
                    if response.status in TRANSIENT_STATUSES:
                        text = await response.text()
                        raise TransientIdentityStoreError(f"Clerk API {method} {path} returned {response.status}: {text[:200]}")
                    if response.status >= 400:
                        text = await response.text()
                        raise PermanentIdentityStoreError(f"Clerk API {method} {path} returned {response.status}: {text[:200]}")
                    return await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise TransientIdentityStoreError(f"Clerk API {method} {path} timed out") from e
        except aiohttp.ClientError as e:
            raise TransientIdentityStoreError(f"Clerk API {method} {path} failed: {e}") from e

    async def _find_user_by_metadata(self, field: str, value: str) -> Optional[str]:
        query = json.dumps({"publicMetadata": {field: value}})
        data = await self._request("GET", "/users", params={"query": query, "limit": "1"})
        users = data.get("data", data) if isinstance(data, dict) else data
        if not users:
            self.logger.warning("No user found by metadata", field=field, value=value)
            return None
        return users[0].get("id")

    async def find_user_by_subscription(self, subscription_id: str) -> Optional[str]:
        return await self._find_user_by_metadata("subscriptionId", subscription_id)

    async def find_user_by_customer(self, customer_id: str) -> Optional[str]:
        return await self._find_user_by_metadata("customerId", customer_id)

    async def update_public_metadata(self, user_id: str, metadata: Dict[str, Any]) -> None:
        """Merge ``metadata`` into the user's public metadata (idempotent)."""
        await self._request("PATCH", f"/users/{user_id}/metadata", body={"public_metadata": metadata})
        self.logger.info("Identity-store metadata updated", user_id=user_id, keys=sorted(metadata))


__all__ = [
    "IdentityStore",
    "ClerkIdentityStore",
    "resolve_user_id",
    "IdentityStoreError",
    "TransientIdentityStoreError",
    "PermanentIdentityStoreError",
    "UserNotFoundError",
]
