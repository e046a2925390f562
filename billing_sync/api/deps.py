"""
Dependencies for authentication and access to the process-scoped retry queue.
"""
import secrets
from typing import Optional
from fastapi import Depends, HTTPException, status, Header, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from billing_sync.jobs.retry_queue import RetryQueue
from billing_sync.utils import get_logger
from billing_sync.utils.observability import token_prefix

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)

def get_retry_queue(request: Request) -> RetryQueue:
    """
    Retry queue dependency.
    The queue is created once in the application lifespan and stored on app.state.

    Raises:
        HTTPException: 503 if the queue has not been initialized
    """
    queue = getattr(request.app.state, "retry_queue", None)
    if queue is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Retry queue not available"
        )
    return queue

def require_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """
    Validate an admin bearer token against ADMIN_API_TOKENS.

    Returns:
        str: Token prefix, used to attribute admin actions in logs

    Raises:
        HTTPException: 401 if the token is missing or unknown
    """
    from billing_sync import config

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = credentials.credentials
    if not any(secrets.compare_digest(token, allowed) for allowed in config.ADMIN_API_TOKENS):
        logger.warning(
            "Admin authentication failed: invalid token",
            token_prefix=token_prefix(token)
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    logger.info("Admin authenticated", token_prefix=token_prefix(token))
    return token_prefix(token)

def require_internal_token(
    x_internal_token: Optional[str] = Header(None, alias="X-Internal-Token"),
) -> None:
    """
    Validate the shared secret the upstream webhook verifier sends.

    Raises:
        HTTPException: 401 if the token is missing, unknown, or not configured
    """
    from billing_sync import config

    expected = config.WEBHOOK_INTERNAL_TOKEN
    if not expected or not x_internal_token or not secrets.compare_digest(x_internal_token, expected):
        logger.warning(
            "Webhook ingress authentication failed",
            token_prefix=token_prefix(x_internal_token),
            configured=bool(expected),
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal token"
        )
