"""
Integrations package initialization.
Exports the identity-store client and its error types.
"""
from .identity_store import (
    ClerkIdentityStore,
    IdentityStore,
    IdentityStoreError,
    PermanentIdentityStoreError,
    TransientIdentityStoreError,
    UserNotFoundError,
    resolve_user_id,
)

__all__ = [
    "ClerkIdentityStore",
    "IdentityStore",
    "IdentityStoreError",
    "PermanentIdentityStoreError",
    "TransientIdentityStoreError",
    "UserNotFoundError",
    "resolve_user_id",
]
