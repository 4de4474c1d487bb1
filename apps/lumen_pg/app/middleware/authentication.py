"""
middleware/authentication.py

Cookie-based session recognition.

A request is authenticated when it carries both the `session_id` and the
`username` cookies, the session store knows that session, the session has
not expired, and the session belongs to that username.

Non-developer summary:
----------------------
- Authenticate / RequireAuth: protected pages. Without a valid login the
  request stops here (401, or a redirect to the login page if configured).
- OptionalAuth: pages that work for everyone but show more when logged in.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional, Tuple
from urllib.parse import urlencode

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import RedirectResponse, Response
from starlette.types import ASGIApp

from ..core.config import get_settings
from ..core.context import bind, get_context
from ..core.errors import AppError, error_response
from ..core.logging import log_extra
from ..schemas.identity import Session, User
from ..security.cookie_signing import SESSION_COOKIE, USERNAME_COOKIE
from ..services.collaborators import Collaborators, get_collaborators

log = logging.getLogger("apps.lumen_pg.auth")


async def recognize(
    request: Request, collaborators: Optional[Collaborators] = None
) -> Optional[Tuple[User, Session]]:
    """
    Return (user, session) for a valid cookie pair, else None.
    Resolver failures are logged and count as an invalid session.
    """
    session_id = request.cookies.get(SESSION_COOKIE)
    username = request.cookies.get(USERNAME_COOKIE)
    if not session_id or not username:
        return None

    collab = collaborators or get_collaborators()
    try:
        session = await collab.resolve_session(session_id)
    except Exception as exc:
        log.warning("session_resolve_failed", extra=log_extra(request, error=type(exc).__name__))
        return None

    if session is None:
        return None
    if session.is_expired(datetime.now(timezone.utc)):
        log.info("session_expired", extra=log_extra(request, sessionId=session.id))
        return None
    if session.username != username:
        # Cookie says one role, the store says another
        log.warning("session_username_mismatch", extra=log_extra(request, sessionId=session.id))
        return None
    return User(username=username), session


class _AuthBase(BaseHTTPMiddleware):
    def __init__(
        self,
        app: ASGIApp,
        collaborators: Optional[Collaborators] = None,
        failure_mode: Optional[str] = None,
        login_path: Optional[str] = None,
    ) -> None:
        super().__init__(app)
        s = get_settings()
        self.collaborators = collaborators
        self.failure_mode = (failure_mode or s.AUTH_FAILURE_MODE).lower()
        self.login_path = login_path or s.LOGIN_PATH

    async def _recognize_and_bind(self, request: Request) -> bool:
        found = await recognize(request, self.collaborators)
        if found is None:
            return False
        user, session = found
        bind(request, user=user, session=session)
        return True

    def _reject(self, request: Request) -> Response:
        if self.failure_mode == "redirect":
            target = f"{self.login_path}?{urlencode({'next': request.url.path})}"
            return RedirectResponse(target, status_code=302)
        return error_response(
            request,
            AppError("UNAUTHENTICATED", "Authentication required.", status=401),
        )


class Authenticate(_AuthBase):
    """Recognize the session; reject when it is missing or invalid."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if not await self._recognize_and_bind(request):
            return self._reject(request)
        return await call_next(request)


class RequireAuth(_AuthBase):
    """
    Gate for handlers that must see a user. Reuses an identity already bound
    by Authenticate instead of asking the session store again.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        if get_context(request).is_authenticated:
            return await call_next(request)
        if not await self._recognize_and_bind(request):
            return self._reject(request)
        return await call_next(request)


class OptionalAuth(_AuthBase):
    """Bind the identity when there is one; never reject."""

    async def dispatch(self, request: Request, call_next) -> Response:
        await self._recognize_and_bind(request)
        return await call_next(request)
