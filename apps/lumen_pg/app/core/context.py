"""
core/context.py

Per-request context carried through the middleware pipeline.

Non-developer summary:
----------------------
Every middleware can add facts about the request (who the user is, which
session, which transaction, what they may access). Those facts live in one
small immutable record attached to the request. Adding a fact produces a new
record, so nothing written earlier is ever lost, and nothing leaks from one
request to the next.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from starlette.requests import Request

from ..schemas.identity import DatabaseMetadata, RoleMetadata, Session, TransactionState, User

# Attribute name on request.state (backed by scope["state"], shared by every
# BaseHTTPMiddleware that sees the same request).
STATE_ATTR = "lumen_context"


class ContextKey(str, Enum):
    USER = "user"
    SESSION = "session"
    TRANSACTION = "transaction"
    PERMISSIONS = "permissions"
    METADATA = "metadata"
    REQUEST_ID = "request_id"


@dataclass(frozen=True)
class RequestContext:
    user: Optional[User] = None
    session: Optional[Session] = None
    transaction: Optional[TransactionState] = None
    permissions: Optional[RoleMetadata] = None
    metadata: Optional[DatabaseMetadata] = None
    request_id: Optional[str] = None
    # Host-supplied values: query, query_type, event, severity, body, ...
    attributes: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def attr(self, name: str, default: Any = None) -> Any:
        return self.attributes.get(name, default)

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None and self.session is not None

    def redacted(self) -> dict:
        """Log-safe snapshot: identifiers only, never cookie values or keys."""
        return {
            "username": self.user.username if self.user else None,
            "sessionId": self.session.id if self.session else None,
            "transactionId": self.transaction.id if self.transaction else None,
        }


def get_context(request: Request) -> RequestContext:
    ctx = getattr(request.state, STATE_ATTR, None)
    if ctx is None:
        ctx = RequestContext()
        setattr(request.state, STATE_ATTR, ctx)
    return ctx


def bind(request: Request, **fields: Any) -> RequestContext:
    """
    Return (and store) a new context with the given fields set.

    Only ContextKey names are accepted; everything else belongs in attributes.
    """
    allowed = {k.value for k in ContextKey}
    unknown = set(fields) - allowed
    if unknown:
        raise KeyError(f"unknown context fields: {sorted(unknown)}")
    ctx = replace(get_context(request), **fields)
    setattr(request.state, STATE_ATTR, ctx)
    return ctx


def bind_attributes(request: Request, **values: Any) -> RequestContext:
    current = get_context(request)
    merged = dict(current.attributes)
    merged.update(values)
    ctx = replace(current, attributes=MappingProxyType(merged))
    setattr(request.state, STATE_ATTR, ctx)
    return ctx
