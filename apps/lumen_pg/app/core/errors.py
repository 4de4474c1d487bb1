"""
core/errors.py

Uniform error envelope and exception handlers.

Non-developer summary:
----------------------
No matter which middleware rejects a request, the browser sees the same
structure: { error: { code, message, details?, requestId } }. Stack traces
and internal details never reach the client; they go to the log instead,
keyed by the same requestId.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..schemas.common import ErrorBody, ErrorEnvelope
from .logging import current_request_id

# Map common statuses to generic codes.
STATUS_CODES: Dict[int, str] = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHENTICATED",
    403: "PERMISSION_DENIED",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    406: "NOT_ACCEPTABLE",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    415: "UNSUPPORTED_MEDIA_TYPE",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
}


def _get_request_id(request: Request) -> Optional[str]:
    # Prefer the value set by RequestIdMiddleware, fallback to header.
    return current_request_id(request)


def error_envelope(
    *,
    code: str,
    message: str,
    status: int,
    request_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    """
    Build a JSON error response with the uniform envelope.
    """
    envelope = ErrorEnvelope(
        error=ErrorBody(code=code, message=message, requestId=request_id, details=details or None)
    )
    # requestId stays even when unknown; details only when there are some
    body = envelope.model_dump(exclude={"error": {"details"}} if not details else None)
    return JSONResponse(status_code=status, content=jsonable_encoder(body), headers=dict(headers or {}))


# ---------- AppError (preferred for domain-specific errors) ----------

class AppError(Exception):
    """
    Raise this from middleware checks for well-defined errors, e.g.:

        raise AppError("PERMISSION_DENIED", "No SELECT privilege.", status=403, details={...})

    `headers` are copied onto the rendered response (Allow, Retry-After, ...).
    """
    def __init__(
        self,
        code: str,
        message: str,
        *,
        status: int = 400,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status
        self.details = details or {}
        self.headers = headers or {}


def error_response(request: Request, exc: AppError) -> JSONResponse:
    """
    Render an AppError raised inside a middleware's own checks.

    Exceptions raised from BaseHTTPMiddleware.dispatch bypass the app's
    exception handlers, so middlewares call this directly.
    """
    return error_envelope(
        code=exc.code,
        message=exc.message,
        status=exc.status,
        request_id=_get_request_id(request),
        details=exc.details,
        headers=exc.headers,
    )


# ---------- Exception handlers plugged in main.py ----------

async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """
    Convert Starlette/FastAPI HTTPException into our envelope.
    """
    code = STATUS_CODES.get(exc.status_code, "ERROR")
    msg = exc.detail if isinstance(exc.detail, str) else "Request failed."
    return error_envelope(
        code=code,
        message=msg,
        status=exc.status_code,
        request_id=_get_request_id(request),
        headers=getattr(exc, "headers", None),
    )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """
    Convert our AppError into the envelope as-is.
    """
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Convert FastAPI validation errors (pydantic) into a 422 envelope with field errors.
    """
    details = {"fields": jsonable_encoder(exc.errors())}
    return error_envelope(
        code="VALIDATION_ERROR",
        message="Request validation failed.",
        status=422,
        request_id=_get_request_id(request),
        details=details,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Catch-all for anything else. We do not leak internal errors to clients.
    """
    return error_envelope(
        code="INTERNAL_ERROR",
        message="Unexpected error occurred.",
        status=500,
        request_id=_get_request_id(request),
    )
