"""Core service configuration & tunable retry rules.

Retry schedule, polling cadence, identity-store connection details and the
tokens guarding the admin / ingress routes are centralized here so they can be
adjusted without touching service logic. Values are read from environment
variables at import time and kept as module constants (mutable dicts allowed so
tests can monkeypatch them).
"""
from __future__ import annotations

import os


def _float_env(name: str, default: str) -> float:
	raw = os.getenv(name, default)
	return float(raw) if raw and raw.strip() else float(default)


def _split_tokens(raw: str) -> list[str]:
	return [t.strip() for t in raw.split(",") if t.strip()]


# ------------------------------ Retry Queue ------------------------------- #
# Attempt 1 happens synchronously in the webhook ingress. Attempts 2..max run
# from the queue, each delayed by base * factor ** (attempt - 2) seconds after
# the previous failure: 1s, 3s, 9s.
RETRY_QUEUE_SETTINGS: dict[str, int | float] = {
	"max_attempts": 4,
	"backoff_base_seconds": 1,
	"backoff_factor": 3,
	"poll_interval_seconds": _float_env("RETRY_QUEUE_POLL_INTERVAL", "1.0"),
	# Queue is unbounded; past this depth every enqueue logs a warning.
	"warn_depth": 1000,
	# Recent dead-letter records kept for operator replay.
	"dead_letter_history": 100,
}

# ----------------------------- Identity Store ----------------------------- #
IDENTITY_STORE_SETTINGS: dict[str, str | float | None] = {
	"api_base_url": os.getenv("CLERK_API_URL", "https://api.clerk.com/v1").rstrip("/"),
	"secret_key": os.getenv("CLERK_SECRET_KEY") or None,
	"timeout_seconds": _float_env("CLERK_TIMEOUT_SECONDS", "10"),
}

# ------------------------------ Access Tokens ----------------------------- #
# Bearer tokens accepted by the admin retry-queue endpoints. Empty list means
# the admin surface rejects every request.
ADMIN_API_TOKENS: list[str] = _split_tokens(os.getenv("ADMIN_API_TOKENS", ""))

# Shared secret presented by the upstream webhook verifier when it forwards a
# reconciliation request (header X-Internal-Token).
WEBHOOK_INTERNAL_TOKEN: str | None = os.getenv("WEBHOOK_INTERNAL_TOKEN") or None

__all__ = [
	"RETRY_QUEUE_SETTINGS",
	"IDENTITY_STORE_SETTINGS",
	"ADMIN_API_TOKENS",
	"WEBHOOK_INTERNAL_TOKEN",
]
