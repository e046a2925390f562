"""
FastAPI application for billing identity sync.

Owns the single reconciliation retry queue for this process: the lifespan
builds and starts it, the webhook ingress feeds it and the admin routes
inspect or clear it.
"""
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from billing_sync.api.v1 import api_router
from billing_sync.jobs.retry_queue import RetryQueue
from billing_sync.utils import get_logger, setup_logging
from billing_sync.utils.observability import REQUEST_ID_HEADER, ensure_request_id

SERVICE_NAME = "billing-identity-sync"
SERVICE_VERSION = "1.0.0"

setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE") or None,
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the retry processor with the app; stop it on shutdown.

    Pending retries live in memory only, so whatever is still queued at
    shutdown is logged and lost.
    """
    retry_queue = RetryQueue()
    app.state.retry_queue = retry_queue  # type: ignore[attr-defined]
    retry_queue.start()
    logger.info("Retry queue processor running", started_at=retry_queue.status().started_at)
    try:
        yield
    finally:
        pending = retry_queue.status()
        retry_queue.stop()
        if pending.total_items:
            logger.warning(
                "Shutting down with pending reconciliation retries; they will be lost",
                pending=pending.total_items,
                in_flight=pending.in_flight_items,
            )
        logger.info("Retry queue processor stopped")


app = FastAPI(
    title="Billing Identity Sync",
    description=(
        "Applies verified billing state changes to identity-store user metadata. "
        "Transient write failures are retried in memory after 1s, 3s and 9s; "
        "exhausted or unfixable updates are dead-lettered for manual replay."
    ),
    version=SERVICE_VERSION,
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Attach a correlation id and log each request with its duration."""
    request_id = ensure_request_id(request.headers)
    request.state.request_id = request_id
    started = time.time()

    response = await call_next(request)

    elapsed_ms = round((time.time() - started) * 1000, 2)
    response.headers[REQUEST_ID_HEADER] = request_id
    response.headers["X-Process-Time"] = str(elapsed_ms)
    logger.info(
        "Request handled",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        process_time_ms=elapsed_ms,
        request_id=request_id,
    )
    return response


def _error_response(
    request: Request,
    status_code: int,
    message: Any,
    *,
    extra: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    content: Dict[str, Any] = {
        "success": False,
        "message": message,
        "request_id": getattr(request.state, "request_id", "unknown"),
    }
    if extra:
        content.update(extra)
    return JSONResponse(status_code=status_code, content=content, headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    logger.warning("Request validation failed", path=request.url.path, errors=details)
    return _error_response(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Request validation failed",
        extra={"details": details},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning("HTTP exception", path=request.url.path, status_code=exc.status_code, detail=exc.detail)
    return _error_response(request, exc.status_code, exc.detail, headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )
    return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


@app.get("/health", tags=["health"], summary="Liveness check")
async def health_check():
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
    }


@app.get("/health/detailed", tags=["health"], summary="Retry processor and queue health")
async def detailed_health_check():
    """Degraded when the queue is missing or its processor thread is not alive."""
    queue = getattr(app.state, "retry_queue", None)  # type: ignore[attr-defined]
    if queue is None:
        return {"status": "degraded", "service": SERVICE_NAME, "checks": {"retry_queue": "unavailable"}}

    snap = queue.status()
    return {
        "status": "healthy" if queue.processor.running else "degraded",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "checks": {
            "retry_queue": {
                "processor_running": queue.processor.running,
                "total_items": snap.total_items,
                "in_flight_items": snap.in_flight_items,
                "dead_lettered_total": snap.dead_lettered_total,
                "durability": snap.durability,
            }
        },
    }


app.include_router(api_router, prefix="/api/v1")

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("billing_sync.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
