"""
middleware/context_injection.py

Populate the request context from cookies and collaborators.

Each injector adds one fact and never rejects: a missing cookie or a
failing collaborator leaves the field unset (failures logged at warning).
Authorization gates further down decide what an unset field means.

The injectors trust cookie values as-is. Mount them behind Authenticate
(which checks the cookies against the session store) or
CookieIntegrityMiddleware (which checks their signatures). The routing.py
presets put Authenticate first and create_app installs cookie integrity
globally.

Non-developer summary:
----------------------
Before a page runs, we gather what it needs: who is calling, their
session, any open transaction, what their role may access and which
databases they can browse. If something can't be found, we just leave it
blank instead of failing the request here.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

from ..core.context import bind, get_context
from ..core.logging import log_extra
from ..schemas.identity import TransactionState, User
from ..security.cookie_signing import (
    SESSION_COOKIE,
    TRANSACTION_ACTIVE_COOKIE,
    TRANSACTION_COOKIE,
    USERNAME_COOKIE,
)
from ..services.collaborators import Collaborators, get_collaborators
from ..services.metadata_cache import cached_metadata, cached_permissions

log = logging.getLogger("apps.lumen_pg.context")

_FALSE = {"false", "0", "no", "off"}


def parse_active_flag(raw: Optional[str]) -> bool:
    """transaction_active cookie: absent or unrecognized means active."""
    if raw is None:
        return True
    return raw.strip().lower() not in _FALSE


class _Injector(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, collaborators: Optional[Collaborators] = None) -> None:
        super().__init__(app)
        self.collaborators = collaborators

    @property
    def collab(self) -> Collaborators:
        return self.collaborators or get_collaborators()

    async def dispatch(self, request: Request, call_next) -> Response:
        await self.inject(request)
        return await call_next(request)

    async def inject(self, request: Request) -> None:  # pragma: no cover - abstract
        raise NotImplementedError


class InjectUser(_Injector):
    """
    Bind the username cookie as the user. The cookie is not verified here:
    without Authenticate or CookieIntegrityMiddleware in front, a client could
    name any role and InjectUserPermissions would load its grants.
    """

    async def inject(self, request: Request) -> None:
        if get_context(request).user is not None:
            return
        username = request.cookies.get(USERNAME_COOKIE)
        if username:
            bind(request, user=User(username=username))


class InjectSession(_Injector):
    async def inject(self, request: Request) -> None:
        if get_context(request).session is not None:
            return
        session_id = request.cookies.get(SESSION_COOKIE)
        if not session_id:
            return
        try:
            session = await self.collab.resolve_session(session_id)
        except Exception as exc:
            log.warning("inject_session_failed", extra=log_extra(request, error=type(exc).__name__))
            return
        if session is not None:
            bind(request, session=session)


class InjectTransaction(_Injector):
    async def inject(self, request: Request) -> None:
        tx_id = request.cookies.get(TRANSACTION_COOKIE)
        if not tx_id:
            return
        active = parse_active_flag(request.cookies.get(TRANSACTION_ACTIVE_COOKIE))
        bind(request, transaction=TransactionState(id=tx_id, active=active))


class InjectUserPermissions(_Injector):
    async def inject(self, request: Request) -> None:
        user = get_context(request).user
        if user is None:
            return
        try:
            perms = await cached_permissions(user.username, self.collab.load_permissions)
        except Exception as exc:
            log.warning(
                "inject_permissions_failed",
                extra=log_extra(request, username=user.username, error=type(exc).__name__),
            )
            return
        if perms is not None:
            bind(request, permissions=perms)


class InjectMetadata(_Injector):
    async def inject(self, request: Request) -> None:
        session = get_context(request).session
        if session is None:
            return
        try:
            meta = await cached_metadata(session, self.collab.load_metadata)
        except Exception as exc:
            log.warning(
                "inject_metadata_failed",
                extra=log_extra(request, sessionId=session.id, error=type(exc).__name__),
            )
            return
        if meta is not None:
            bind(request, metadata=meta)
