"""
main.py

FastAPI application factory for the Lumen-PG middleware pipeline (AWS Lambda compatible).

Non-developer summary (what this file does):
--------------------------------------------
- Sets up JSON logging (with requestId) and builds the FastAPI app.
- Adds the global middlewares in a deliberate order, outermost first:
    1) RequestId (adds/echoes X-Request-ID)
    2) Crash recovery (500 envelope, never a stack trace)
    3) Request logging, then error relaying and security-event logging
    4) Default + security headers, SameSite on cookies
    5) Strict CORS (credentials, allow-listed origins only)
    6) Compression (gzip/deflate over 1KB)
    7) Content negotiation (406 for unproducible Accept)
    8) HTTPS redirect (Secure cookies need HTTPS)
    9) Cookie integrity (signed cookies must verify)
   10) Rate limiting (per IP or per user)
   11) CSRF (state-changing methods only)
- Route-specific checks (auth, context, validation, permissions) are added
  per route with routing.guarded_route().
- Mounts /healthz and /readyz.
- Installs uniform error handlers so all errors look like:
    { "error": { "code", "message", "requestId", "details?" } }
- Exposes the AWS Lambda handler (via Mangum).
"""

from __future__ import annotations

from typing import Optional, Sequence

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from mangum import Mangum
from starlette.exceptions import HTTPException
from starlette.routing import BaseRoute

from .core.config import get_settings
from .core.logging import configure_logging
from .core.errors import (
    http_exception_handler,
    app_error_handler,
    validation_exception_handler,
    unhandled_exception_handler,
    AppError,
)
from .middleware.compression import CompressionMiddleware
from .middleware.content_negotiation import ContentNegotiationMiddleware
from .middleware.cookie_integrity import CookieIntegrityMiddleware
from .middleware.cors import CORSMiddlewareStrict
from .middleware.csrf import CSRFMiddleware
from .middleware.default_headers import DefaultHeadersMiddleware
from .middleware.errors import HandleErrors, RecoverFromPanic
from .middleware.https import HTTPSRedirectForCookiesMiddleware
from .middleware.rate_limit import RateLimitBackend, RateLimitMiddleware, build_rate_limit_backend
from .middleware.request_id import RequestIdMiddleware
from .middleware.request_logging import LogRequest, LogSecurityEvents
from .middleware.same_site import SameSiteCookieMiddleware
from .middleware.security_headers import SecurityHeadersMiddleware
from .routers import health as health_router
from .services.collaborators import Collaborators, configure_collaborators


def create_app(
    routes: Optional[Sequence[BaseRoute]] = None,
    collaborators: Optional[Collaborators] = None,
    rate_limit_backend: Optional[RateLimitBackend] = None,
) -> FastAPI:
    """
    Build and configure the FastAPI application.

    `routes` are typically built with routing.guarded_route(); `collaborators`
    are registered process-wide before any middleware runs.
    """
    s = get_settings()

    # 1) Logging (structured JSON with requestId, service, stage)
    configure_logging(s.LOG_LEVEL)

    if collaborators is not None:
        configure_collaborators(collaborators)

    # 2) App instance
    app = FastAPI(
        title="Lumen-PG",
        version="1.0.0",
        openapi_url="/openapi.json",
        docs_url="/docs" if s.APP_STAGE != "prod" else None,  # hide Swagger in prod
        redoc_url=None,
    )

    # 3) Middlewares. add_middleware() wraps the current stack, so they are
    # listed innermost first; RequestId ends up outermost.
    app.add_middleware(CSRFMiddleware)
    app.add_middleware(RateLimitMiddleware, backend=rate_limit_backend or build_rate_limit_backend())
    app.add_middleware(CookieIntegrityMiddleware)
    app.add_middleware(HTTPSRedirectForCookiesMiddleware)
    app.add_middleware(ContentNegotiationMiddleware)
    app.add_middleware(CompressionMiddleware)
    app.add_middleware(CORSMiddlewareStrict)
    app.add_middleware(SameSiteCookieMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(DefaultHeadersMiddleware)
    app.add_middleware(LogSecurityEvents)
    app.add_middleware(HandleErrors)
    app.add_middleware(LogRequest)
    app.add_middleware(RecoverFromPanic)
    app.add_middleware(RequestIdMiddleware)

    # 4) Routers
    # Health endpoints at root for infra checks (/healthz, /readyz)
    app.include_router(health_router.router, prefix="")
    for route in routes or ():
        app.router.routes.append(route)

    # Minimal root route for quick diagnostics
    @app.get("/")
    async def root():
        return JSONResponse({"service": s.APP_NAME, "stage": s.APP_STAGE})

    # 5) Error handlers (uniform envelope everywhere)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    return app


# App instance for local uvicorn runs, e.g.:
# uvicorn apps.lumen_pg.app.main:app --reload --port 8000
app = create_app()

# AWS Lambda handler via Mangum (lifespan disabled to speed cold starts)
handler = Mangum(app, lifespan="off")
