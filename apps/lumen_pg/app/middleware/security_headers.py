"""
middleware/security_headers.py

Baseline security headers applied to all responses.

Non-developer summary:
----------------------
These headers harden the pages we serve by preventing common attacks
(content-type sniffing, clickjacking, injected scripts) and by limiting how
much referrer information the browser sends. A handler that sets its own
value for one of them always wins.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

from ..core.config import get_settings


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Apply the security header set to every response, only where absent.

    Notes:
    - We do not set HSTS here; that belongs on the public HTTPS edge.
    """

    def __init__(
        self,
        app: ASGIApp,
        frame_options: Optional[str] = None,
        content_security_policy: Optional[str] = None,
        referrer_policy: str = "strict-origin-when-cross-origin",
    ) -> None:
        super().__init__(app)
        s = get_settings()
        self.frame_options = (frame_options or s.FRAME_OPTIONS).upper()
        self.csp = content_security_policy or s.CONTENT_SECURITY_POLICY
        self.referrer_policy = referrer_policy

    async def dispatch(self, request: Request, call_next):
        resp: Response = await call_next(request)

        # Prevent content-type sniffing
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        # Disallow (or restrict) embedding in iframes
        resp.headers.setdefault("X-Frame-Options", self.frame_options)
        # Legacy XSS auditor for older browsers
        resp.headers.setdefault("X-XSS-Protection", "1; mode=block")
        resp.headers.setdefault("Content-Security-Policy", self.csp)
        # Limit referrer data on cross-origin requests
        resp.headers.setdefault("Referrer-Policy", self.referrer_policy)
        return resp
