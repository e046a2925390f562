"""
Structured logging for the sync service.

Console output is human readable; the optional log file gets one JSON object
per line. Every call site passes context as keyword fields
(``logger.warning("Retry attempt failed", task_id=..., attempt=2)``), which
end up as top-level keys of the JSON record.
"""
import json
import logging
import logging.config
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

# Loggers configured by setup_logging; retry traffic from aiohttp is noisy below WARNING.
_MANAGED_LOGGERS = {
    "billing_sync": None,
    "uvicorn": "INFO",
    "aiohttp.client": "WARNING",
}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, structured fields flattened in."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
        }
        entry.update(getattr(record, "extra_data", None) or {})
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class StructuredLogger:
    """Thin wrapper turning keyword arguments into record fields (``None`` dropped)."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _log(self, level: int, message: str, exc_info: bool = False, **fields: Any) -> None:
        extra_data = {k: v for k, v in fields.items() if v is not None}
        self.logger.log(level, message, exc_info=exc_info, extra={"extra_data": extra_data})

    def debug(self, message: str, **fields: Any) -> None:
        self._log(logging.DEBUG, message, **fields)

    def info(self, message: str, **fields: Any) -> None:
        self._log(logging.INFO, message, **fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._log(logging.WARNING, message, **fields)

    def error(self, message: str, **fields: Any) -> None:
        self._log(logging.ERROR, message, **fields)


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure console logging and, when ``log_file`` is set, a rotating JSON file."""
    handlers: Dict[str, Dict[str, Any]] = {
        "console": {
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stdout",
            "formatter": "standard",
        }
    }
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "formatter": "json",
        }

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JSONFormatter},
            "standard": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": {
            name: {"level": level or log_level, "handlers": list(handlers), "propagate": False}
            for name, level in _MANAGED_LOGGERS.items()
        },
        "root": {"level": log_level, "handlers": list(handlers)},
    })


def get_logger(name: str) -> StructuredLogger:
    """Structured logger namespaced under ``billing_sync``."""
    if not name.startswith("billing_sync"):
        name = f"billing_sync.{name}"
    return StructuredLogger(name)


def log_business_event(event_type: str, details: Dict[str, Any], request_id: Optional[str] = None) -> None:
    """Audit record for queue lifecycle events (enqueued, merged, resolved, dead-lettered, cleared)."""
    get_logger("audit").info(f"Business event: {event_type}", event_type=event_type, request_id=request_id, **details)


def log_performance(operation: str, duration_ms: float, additional_data: Optional[Dict[str, Any]] = None) -> None:
    get_logger("performance").info(
        f"Performance: {operation}",
        operation=operation,
        duration_ms=round(duration_ms, 2),
        **(additional_data or {}),
    )
