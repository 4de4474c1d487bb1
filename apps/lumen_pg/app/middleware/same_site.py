"""
middleware/same_site.py

Forces a SameSite attribute on every cookie the application sets.

Non-developer summary:
----------------------
SameSite tells the browser not to attach our cookies to requests started
by other websites. Whatever a handler wrote, each cookie leaves with the
configured policy (Lax by default, Strict if configured).
"""

from __future__ import annotations

from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..core.config import get_settings


def with_same_site(cookie: str, policy: str) -> str:
    """Replace any SameSite attribute in a Set-Cookie value with `policy`."""
    parts = [p.strip() for p in cookie.split(";")]
    kept = [p for p in parts if p and p.split("=", 1)[0].strip().lower() != "samesite"]
    kept.append(f"SameSite={policy}")
    return "; ".join(kept)


class SameSiteCookieMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, policy: Optional[str] = None) -> None:
        super().__init__(app)
        self.policy = (policy or get_settings().SAMESITE_POLICY).capitalize()

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        # Rewrite in place; response.headers is a view over raw_headers
        for i, (name, value) in enumerate(response.raw_headers):
            if name.lower() == b"set-cookie":
                rewritten = with_same_site(value.decode("latin-1"), self.policy)
                response.raw_headers[i] = (name, rewritten.encode("latin-1"))
        return response
