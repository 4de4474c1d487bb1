"""
middleware/default_headers.py

Fills in Content-Type and Cache-Control when a handler did not set them.

Non-developer summary:
----------------------
Pages here show private database contents, so by default nothing is
stored by browsers or proxies (Cache-Control: no-store). Handlers can
still choose their own values; we only fill gaps.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..core.config import get_settings

# Statuses that never carry a body, so never a Content-Type
_BODYLESS = frozenset({204, 304})


class DefaultHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: ASGIApp,
        content_type: Optional[str] = None,
        cache_control: Optional[str] = None,
    ) -> None:
        super().__init__(app)
        s = get_settings()
        self.content_type = content_type or s.DEFAULT_CONTENT_TYPE
        self.cache_control = cache_control or s.DEFAULT_CACHE_CONTROL

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        if response.status_code not in _BODYLESS and response.status_code >= 200:
            response.headers.setdefault("Content-Type", self.content_type)
        response.headers.setdefault("Cache-Control", self.cache_control)
        return response
