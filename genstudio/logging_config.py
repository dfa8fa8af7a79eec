"""
GenStudio Logging

Structured, keyword-context logging for the generation lifecycle.
- Every call takes an event name plus context fields
- ``bind()`` pins job context (task_id, generation_id, request_id) so each
  line from a poller, a download or a request names what it belongs to
- Provider credentials are masked before a record is formatted

GENSTUDIO_LOG_LEVEL sets the level, GENSTUDIO_LOG_FORMAT picks ``json``
(one object per line, for log shippers) or ``text`` (local runs).
"""
import json
import logging
import os
import sys
import time
import traceback
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Dict, Optional

LOG_LEVEL = os.environ.get("GENSTUDIO_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.environ.get("GENSTUDIO_LOG_FORMAT", "text")

SECRET_FIELDS = frozenset({"api_key", "authorization", "x_api_key", "token"})
QUIET_PATHS = ("/api/health",)


def _mask(context: Dict[str, Any]) -> Dict[str, Any]:
    return {key: "***" if key.lower() in SECRET_FIELDS else value for key, value in context.items()}


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


class LifecycleFormatter(logging.Formatter):
    """One line per event; JSON or ``HH:MM:SS LEVEL logger event [k=v ...]``."""

    def __init__(self, as_json: bool = False):
        super().__init__()
        self.as_json = as_json

    def format(self, record: logging.LogRecord) -> str:
        context = dict(getattr(record, "context", {}))
        now = datetime.now(timezone.utc)

        if self.as_json:
            entry = {
                "timestamp": now.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
                "level": record.levelname,
                "logger": record.name,
                "event": record.getMessage(),
            }
            entry.update(context)
            return json.dumps(entry, default=str)

        stack = context.pop("traceback", None)
        line = f"{now:%H:%M:%S} {record.levelname:<7} {record.name} {record.getMessage()}"
        if context:
            line += " [" + " ".join(f"{key}={value}" for key, value in context.items()) + "]"
        if stack:
            line += "\n" + stack.rstrip()
        return line


def _configured(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(LifecycleFormatter(as_json=LOG_FORMAT == "json"))
        logger.addHandler(handler)
        logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    return logger


class StructuredLogger:
    """Event logger with keyword context and bindable job fields."""

    def __init__(self, name: str, **bound):
        self.name = name
        self.logger = _configured(name)
        self.bound = bound

    def bind(self, **context) -> "StructuredLogger":
        return StructuredLogger(self.name, **{**self.bound, **context})

    def _log(self, level: int, event: str, context: Dict[str, Any]) -> None:
        if self.logger.isEnabledFor(level):
            self.logger.log(level, event, extra={"context": _mask({**self.bound, **context})})

    def debug(self, event: str, **context):
        self._log(logging.DEBUG, event, context)

    def info(self, event: str, **context):
        self._log(logging.INFO, event, context)

    def warning(self, event: str, **context):
        self._log(logging.WARNING, event, context)

    def error(self, event: str, error: Optional[BaseException] = None, **context):
        if error is not None:
            context["error_type"] = type(error).__name__
            context["error_message"] = str(error)
            if error.__traceback__ is not None:
                context["traceback"] = "".join(
                    traceback.format_exception(type(error), error, error.__traceback__)
                )
        self._log(logging.ERROR, event, context)


# ============================================================
# REQUEST LOGGING (debug runs)
# ============================================================

def log_request(logger: StructuredLogger):
    """Build an access-log middleware class bound to ``logger``.

    Reuses an incoming X-Request-ID (or mints one) and echoes it back.
    Health checks are not logged.
    """
    from fastapi import Request
    from starlette.middleware.base import BaseHTTPMiddleware

    class RequestLoggingMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            if request.url.path.startswith(QUIET_PATHS):
                return await call_next(request)

            request_id = request.headers.get("X-Request-ID") or f"req_{time.time_ns()}"
            log = logger.bind(request_id=request_id, method=request.method, path=request.url.path)
            start = time.perf_counter()

            try:
                response = await call_next(request)
            except Exception as e:
                log.error("request_failed", error=e, duration_ms=_elapsed_ms(start))
                raise

            status = response.status_code
            emit = log.info if status < 400 else log.warning if status < 500 else log.error
            emit("request_completed", status_code=status, duration_ms=_elapsed_ms(start))
            response.headers["X-Request-ID"] = request_id
            return response

    return RequestLoggingMiddleware


def timed(logger: StructuredLogger):
    """Log how long a job coroutine took, and its error type when it raises."""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.warning(
                    f"{func.__name__}_failed",
                    error_type=type(e).__name__,
                    duration_ms=_elapsed_ms(start),
                )
                raise
            logger.debug(f"{func.__name__}_completed", duration_ms=_elapsed_ms(start))
            return result

        return wrapper

    return decorator


# ============================================================
# LOGGER INSTANCES
# ============================================================

api_logger = StructuredLogger("genstudio.api")
poller_logger = StructuredLogger("genstudio.poller")
download_logger = StructuredLogger("genstudio.download")
db_logger = StructuredLogger("genstudio.db")


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(f"genstudio.{name}")
