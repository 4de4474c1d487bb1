"""
middleware/cors.py

Strict, allow-list based CORS middleware for cookie-bearing browser calls.

Non-developer summary:
----------------------
Browsers block cross-site requests unless the server explicitly allows them.
We only allow requests from origins listed in the environment variable
ALLOWED_ORIGINS (e.g., https://pg.example.com, http://localhost:3000).
Unknown origins receive no CORS headers (safest default).
"""

from __future__ import annotations

from typing import Iterable, List, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

from ..core.config import get_settings
from ..core.errors import AppError, error_response


ALLOWED_METHODS: List[str] = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
EXPOSED_HEADERS = "X-Request-ID"


class CORSMiddlewareStrict(BaseHTTPMiddleware):
    """
    Enforces:
      - Only configured origins are allowed ("*" in the list allows any).
      - Credentials (cookies) are allowed for approved origins.
      - Preflight responses echo the requested headers (or our configured set).
      - Unknown origins receive no CORS headers (fail-closed).

    Notes:
      * We never answer with a wildcard (*) origin; we echo the exact, approved Origin.
    """

    def __init__(
        self,
        app: ASGIApp,
        allowed_origins: Optional[Iterable[str]] = None,
        max_age: Optional[int] = None,
        allowed_headers: Optional[Iterable[str]] = None,
    ):
        super().__init__(app)
        s = get_settings()
        origins = allowed_origins if allowed_origins is not None else s.ALLOWED_ORIGIN_LIST
        self.allowed_origins = {o.rstrip("/") for o in origins}
        self.max_age = s.CORS_MAX_AGE if max_age is None else max_age
        self.allowed_headers: List[str] = list(allowed_headers or s.cors_allowed_header_list)

    async def dispatch(self, request: Request, call_next):
        origin = request.headers.get("Origin")

        # --- Handle preflight (OPTIONS) early ---
        if (
            request.method == "OPTIONS"
            and origin
            and "access-control-request-method" in request.headers
        ):
            return self._handle_preflight(request, origin)

        # --- Simple/actual request flow ---
        response: Response = await call_next(request)

        # If request has Origin and it's approved, attach CORS headers.
        if origin and self._is_allowed_origin(origin):
            self._apply_cors_headers(response, origin)
            response.headers["Access-Control-Expose-Headers"] = EXPOSED_HEADERS

        # Unknown origins get no CORS headers at all (fail-closed).
        return response

    def _handle_preflight(self, request: Request, origin: str) -> Response:
        """
        Respond to browser preflight checks:
        - Validate origin and requested method.
        - Echo the requested headers, or our configured set when none were asked for.
        """
        if not self._is_allowed_origin(origin):
            # No CORS headers on purpose for disallowed origins.
            return error_response(
                request,
                AppError("CORS_REJECTED", "Origin not allowed.", status=403, details={"origin": origin}),
            )

        req_method = request.headers.get("Access-Control-Request-Method", "").strip()
        if req_method not in ALLOWED_METHODS:
            return error_response(
                request,
                AppError("CORS_REJECTED", "Method not allowed by CORS.", status=403, details={"method": req_method}),
            )

        requested = _split_header_tokens(request.headers.get("Access-Control-Request-Headers", ""))
        resp = Response(status_code=204)  # No Content
        self._apply_cors_headers(resp, origin)
        resp.headers["Access-Control-Allow-Methods"] = ", ".join(ALLOWED_METHODS)
        resp.headers["Access-Control-Allow-Headers"] = ", ".join(requested or self.allowed_headers)
        resp.headers["Access-Control-Max-Age"] = str(self.max_age)
        return resp

    def _apply_cors_headers(self, response: Response, origin: str) -> None:
        # Echo the exact allowed origin (never '*') and allow credentials.
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        merge_vary(response, "Origin")  # ensure proxies don't mix origins

    def _is_allowed_origin(self, origin: str) -> bool:
        return "*" in self.allowed_origins or origin.rstrip("/") in self.allowed_origins


def merge_vary(response: Response, value: str) -> None:
    current = response.headers.get("Vary")
    if not current:
        response.headers["Vary"] = value
    elif value.lower() not in {v.strip().lower() for v in current.split(",")}:
        response.headers["Vary"] = f"{current}, {value}"


def _split_header_tokens(value: str) -> List[str]:
    """
    Normalize a comma-separated header list, keeping the client's order.
    Example: "Content-Type, X-CSRF-Token" -> ["Content-Type", "X-CSRF-Token"]
    """
    if not value:
        return []
    return [t.strip() for t in value.split(",") if t.strip()]
