"""
middleware/errors.py

Error relaying, crash recovery and per-route HTTP method checks.

Non-developer summary:
----------------------
- HandleErrors makes sure every rejection uses the same JSON error shape
  and gets logged with the request id.
- RecoverFromPanic is the safety net: if any code below it crashes, the
  user gets a plain "Unexpected error occurred" (500) instead of a broken
  connection, and the details go to the log only.
- ValidateHTTPMethod answers 405 when a route is called with a method it
  does not support, and tells the client which ones it does.
"""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

from fastapi import Request
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

from ..core.context import get_context
from ..core.errors import STATUS_CODES, AppError, error_envelope, error_response
from ..core.logging import current_request_id, log_extra

log = logging.getLogger("apps.lumen_pg.errors")


class HandleErrors(BaseHTTPMiddleware):
    """
    Relay downstream error responses verbatim, convert AppError and
    HTTPException raised below into the envelope, and log every >= 400.
    Anything else propagates to RecoverFromPanic.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        try:
            response = await call_next(request)
        except AppError as exc:
            response = error_response(request, exc)
        except StarletteHTTPException as exc:
            response = error_envelope(
                code=STATUS_CODES.get(exc.status_code, "ERROR"),
                message=exc.detail if isinstance(exc.detail, str) else "Request failed.",
                status=exc.status_code,
                request_id=current_request_id(request),
                headers=exc.headers,
            )

        if response.status_code >= 400:
            log.warning(
                "request_error",
                extra=log_extra(
                    request,
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                ),
            )
        return response


class RecoverFromPanic(BaseHTTPMiddleware):
    """Turn any downstream exception into a 500 envelope; never leak a stack trace."""

    async def dispatch(self, request: Request, call_next) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            snapshot = get_context(request).redacted()
            log.error(
                "panic_recovered",
                exc_info=exc,
                extra=log_extra(
                    request,
                    method=request.method,
                    path=request.url.path,
                    error=type(exc).__name__,
                    **snapshot,
                ),
            )
            return error_envelope(
                code="INTERNAL_ERROR",
                message="Unexpected error occurred.",
                status=500,
                request_id=current_request_id(request),
            )


class ValidateHTTPMethod(BaseHTTPMiddleware):
    """
    Reject methods outside `allowed` with 405 and an Allow header.
    Comparison is case-sensitive (HTTP methods are).
    """

    def __init__(self, app: ASGIApp, allowed: Sequence[str] = ("GET",)) -> None:
        super().__init__(app)
        self.allowed = list(allowed)

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.method not in self.allowed:
            return error_response(
                request,
                AppError(
                    "METHOD_NOT_ALLOWED",
                    "Method not allowed.",
                    status=405,
                    details={"method": request.method, "allowed": self.allowed},
                    headers={"Allow": allow_header(self.allowed)},
                ),
            )
        return await call_next(request)


def allow_header(methods: Iterable[str]) -> str:
    return ", ".join(methods)
