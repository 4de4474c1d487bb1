"""
middleware/csrf.py

CSRF defense for browser-based (cookie) sessions:
- Enforces allow-listed Origin for unsafe methods when the browser sends one.
- Requires the CSRF header, matching either the CSRF cookie (double-submit)
  or a token the session store vouches for.
"""

from __future__ import annotations

import hmac
import logging
from typing import Callable, Iterable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

from ..core.config import get_settings
from ..core.context import get_context
from ..core.errors import AppError, error_response
from ..core.logging import log_extra
from ..services.collaborators import Collaborators, get_collaborators
from .authentication import recognize

log = logging.getLogger("apps.lumen_pg.csrf")

SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


class CSRFMiddleware(BaseHTTPMiddleware):
    """
    When does this run?
    -------------------
    - Only for state-changing methods (POST/PUT/PATCH/DELETE, anything not safe).

    What does it verify?
    --------------------
    1) Origin: when present, must match one of the configured ALLOWED_ORIGINS.
    2) Token: header X-CSRF-Token must equal the CSRF cookie (constant-time),
       or be accepted by the is_valid_csrf collaborator for the current session
       (taken from the context, else resolved from the session cookies).
    """

    def __init__(
        self,
        app: ASGIApp,
        allowed_origins: Optional[Iterable[str]] = None,
        collaborators: Optional[Collaborators] = None,
        check_origin: Optional[bool] = None,
    ) -> None:
        super().__init__(app)
        s = get_settings()
        origins = allowed_origins if allowed_origins is not None else s.ALLOWED_ORIGIN_LIST
        self.allowed_origins = {o.rstrip("/") for o in origins}
        self.header_name = s.CSRF_HEADER
        self.cookie_name = s.CSRF_COOKIE
        self.check_origin = s.CSRF_CHECK_ORIGIN if check_origin is None else check_origin
        self.collaborators = collaborators

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Skip for safe methods
        if request.method in SAFE_METHODS:
            return await call_next(request)

        try:
            if self.check_origin:
                self._enforce_origin(request)
            await self._enforce_token(request)
        except AppError as exc:
            log.warning(
                "csrf_rejected",
                extra=log_extra(request, code=exc.code, method=request.method, path=request.url.path),
            )
            return error_response(request, exc)

        return await call_next(request)

    # ---------------- Internal helpers ----------------

    def _enforce_origin(self, request: Request) -> None:
        """
        Allow only requests originating from our allow-listed frontend origins.
        Requests without an Origin header fall through to the token check.
        """
        origin = request.headers.get("Origin")
        if not origin:
            return
        if "*" in self.allowed_origins or origin.rstrip("/") in self.allowed_origins:
            return
        # Unknown Origin attempting a state change
        raise AppError(
            "ORIGIN_MISMATCH",
            "Request origin is not allowed.",
            status=403,
            details={"origin": origin},
        )

    async def _enforce_token(self, request: Request) -> None:
        header_val: Optional[str] = request.headers.get(self.header_name)
        if not header_val:
            raise AppError(
                "CSRF_FAILED",
                "Missing CSRF token.",
                status=403,
                details={"header": False},
            )

        cookie_val: Optional[str] = request.cookies.get(self.cookie_name)
        if cookie_val and hmac.compare_digest(header_val.encode("utf-8"), cookie_val.encode("utf-8")):
            return

        collab = self.collaborators or get_collaborators()
        session = get_context(request).session
        if session is None:
            # Global CSRF runs ahead of route-level Authenticate; look the session up here
            recognized = await recognize(request, collab)
            session = recognized[1] if recognized else None
        try:
            accepted = await collab.is_valid_csrf(header_val, session)
        except Exception as exc:
            log.warning("csrf_validator_failed", extra=log_extra(request, error=type(exc).__name__))
            accepted = False
        if not accepted:
            raise AppError("CSRF_FAILED", "Invalid CSRF token.", status=403)
