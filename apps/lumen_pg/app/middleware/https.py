"""
middleware/https.py

Redirects plain-HTTP requests to HTTPS so Secure cookies are never sent
or set over an unencrypted connection.

Non-developer summary:
----------------------
Login cookies are marked "Secure", which browsers only send over HTTPS.
If someone reaches us over plain HTTP, we send them to the HTTPS address
instead of letting the login silently break. Local development hosts
(localhost, 127.0.0.1) are left alone.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import RedirectResponse
from starlette.types import ASGIApp

from ..core.config import get_settings

LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def effective_scheme(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-proto")
    if forwarded:
        # Proxies may chain values; the first one is the client-facing hop
        return forwarded.split(",")[0].strip().lower()
    return request.url.scheme.lower()


class HTTPSRedirectForCookiesMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, strict: Optional[bool] = None) -> None:
        super().__init__(app)
        self.strict = get_settings().HTTPS_STRICT if strict is None else strict

    async def dispatch(self, request: Request, call_next):
        if not self.strict or effective_scheme(request) in ("https", "wss"):
            return await call_next(request)
        host = (request.url.hostname or "").strip("[]").lower()
        if host in LOCAL_HOSTS:
            return await call_next(request)

        if request.url.port == 80:
            target = request.url.replace(scheme="https", port=None)
        else:
            target = request.url.replace(scheme="https")
        # 301 may be cached and replayed as GET; unsafe methods get a 302
        status = 301 if request.method in SAFE_METHODS else 302
        return RedirectResponse(str(target), status_code=status)
