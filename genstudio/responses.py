"""
GenStudio API Responses

Success:  {"ok": true, "data": ..., "message": ..., "timestamp": ...}
Failure:  {"ok": false, "error": ..., "error_code": ..., "details": ..., "timestamp": ...}

Lifecycle errors raised by the generation core are answered with 502: the
request itself was valid, the provider or the artifact transfer was not.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

from .exceptions import DownloadError, GenStudioError, ProviderFailure, SubmissionError
from .logging_config import api_logger

# Checked in order; the first matching class wins
UPSTREAM_ERROR_CODES = (
    (SubmissionError, "SUBMISSION_FAILED"),
    (DownloadError, "DOWNLOAD_FAILED"),
    (ProviderFailure, "PROVIDER_FAILED"),
)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def success(data: Any = None, message: Optional[str] = None, meta: Optional[Dict] = None) -> Dict:
    body: Dict[str, Any] = {"ok": True, "timestamp": _timestamp()}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    if meta:
        body["meta"] = meta
    return body


def paginated(items: List, total: int, page: int = 1, per_page: int = 20) -> Dict:
    """History page plus the numbers a client needs to page through it."""
    total_pages = -(-total // per_page) if per_page > 0 else 0
    return {
        "ok": True,
        "data": items,
        "pagination": {
            "total": total,
            "page": page,
            "per_page": per_page,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
        "timestamp": _timestamp(),
    }


# ============================================================
# ERRORS
# ============================================================

class ApiException(HTTPException):
    """HTTP error carrying a machine-readable code and optional details."""

    def __init__(self, status_code: int, message: str, error_code: Optional[str] = None, details: Optional[Dict] = None):
        super().__init__(status_code=status_code, detail=message)
        self.error_code = error_code or f"ERR_{status_code}"
        self.details = details


def bad_request(message: str, code: str = "BAD_REQUEST", details: Optional[Dict] = None):
    raise ApiException(400, message, code, details)


def unauthorized(message: str = "API key required"):
    raise ApiException(401, message, "UNAUTHORIZED")


def not_found(resource: str, id: Optional[str] = None):
    raise ApiException(404, f"{resource} '{id}' not found" if id else f"{resource} not found", "NOT_FOUND")


def from_generation_error(exc: GenStudioError) -> ApiException:
    code = next((code for kind, code in UPSTREAM_ERROR_CODES if isinstance(exc, kind)), "UPSTREAM_ERROR")
    details = None
    if isinstance(exc, SubmissionError):
        details = {"generation_id": exc.generation_id, "upstream_status": exc.status_code}
    return ApiException(502, exc.message, code, details)


def _error_body(status_code: int, message: Any, error_code: str, details: Optional[Dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "ok": False,
            "error": message,
            "error_code": error_code,
            "details": details,
            "timestamp": _timestamp(),
        },
    )


async def api_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render any error raised by a route in the failure envelope."""
    log = api_logger.bind(method=request.method, path=request.url.path)

    if isinstance(exc, GenStudioError):
        exc = from_generation_error(exc)

    if isinstance(exc, ApiException):
        log.warning("api_error", status_code=exc.status_code, error_code=exc.error_code, error=exc.detail)
        return _error_body(exc.status_code, exc.detail, exc.error_code, exc.details)

    if isinstance(exc, HTTPException):
        log.warning("http_error", status_code=exc.status_code, error=exc.detail)
        return _error_body(exc.status_code, exc.detail, f"HTTP_{exc.status_code}")

    log.error("unhandled_error", error=exc)
    return _error_body(500, "An unexpected error occurred", "INTERNAL_ERROR")
