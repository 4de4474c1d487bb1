"""
middleware/cookie_integrity.py

Rejects requests whose signed cookies were altered in the browser.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

from ..core.errors import AppError, error_response
from ..core.logging import log_extra
from ..security.cookie_signing import SIGNATURE_SUFFIX, verify_value
from ..services.collaborators import Collaborators, get_collaborators

log = logging.getLogger("apps.lumen_pg.cookies")


class CookieIntegrityMiddleware(BaseHTTPMiddleware):
    """
    For every cookie X that has a companion X_signature, recompute the HMAC
    and answer 401 COOKIE_TAMPERED on mismatch. Unsigned cookies and
    signatures without their cookie are ignored.
    """

    def __init__(self, app: ASGIApp, collaborators: Optional[Collaborators] = None) -> None:
        super().__init__(app)
        self.collaborators = collaborators

    async def dispatch(self, request: Request, call_next) -> Response:
        cookies = request.cookies
        if not cookies:
            return await call_next(request)

        key = (self.collaborators or get_collaborators()).signing_key()
        for name, value in cookies.items():
            if name.endswith(SIGNATURE_SUFFIX):
                continue
            signature = cookies.get(f"{name}{SIGNATURE_SUFFIX}")
            if signature is None:
                continue
            if not verify_value(name, value, signature, key):
                # Cookie name only; the value stays out of the log
                log.warning("cookie_tampered", extra=log_extra(request, resource=name))
                return error_response(
                    request,
                    AppError(
                        "COOKIE_TAMPERED",
                        "Cookie integrity check failed.",
                        status=401,
                        details={"cookie": name},
                    ),
                )
        return await call_next(request)
