"""
services/collaborators.py

The outside world, as the middleware layer sees it: a session store, a
permission source, a metadata source and a CSRF token validator. The host
application supplies real implementations at startup.

Non-developer summary:
----------------------
The middlewares never talk to PostgreSQL directly. Instead they ask these
five small functions ("is this session real?", "what can this role do?").
Until the host plugs in real ones, the defaults say "no" to everything,
so nothing is accidentally allowed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from ..core.config import get_settings
from ..schemas.identity import DatabaseMetadata, RoleMetadata, Session

SessionResolver = Callable[[str], Awaitable[Optional[Session]]]
PermissionLoader = Callable[[str], Awaitable[Optional[RoleMetadata]]]
MetadataLoader = Callable[[Session], Awaitable[Optional[DatabaseMetadata]]]
CsrfValidator = Callable[[str, Optional[Session]], Awaitable[bool]]
KeyProvider = Callable[[], bytes]


async def _no_session(session_id: str) -> Optional[Session]:
    return None


async def _no_permissions(username: str) -> Optional[RoleMetadata]:
    return None


async def _no_metadata(session: Session) -> Optional[DatabaseMetadata]:
    return None


async def _deny_csrf(token: str, session: Optional[Session]) -> bool:
    return False


def _settings_key() -> bytes:
    return get_settings().COOKIE_SIGNING_KEY.get_secret_value().encode("utf-8")


@dataclass
class Collaborators:
    resolve_session: SessionResolver = field(default=_no_session)
    load_permissions: PermissionLoader = field(default=_no_permissions)
    load_metadata: MetadataLoader = field(default=_no_metadata)
    is_valid_csrf: CsrfValidator = field(default=_deny_csrf)
    signing_key: KeyProvider = field(default=_settings_key)


_collaborators: Collaborators = Collaborators()


def configure_collaborators(collaborators: Optional[Collaborators] = None, **overrides) -> Collaborators:
    """
    Register the process-wide collaborators. Call once at startup, e.g.:

        configure_collaborators(resolve_session=store.get, load_permissions=pg.role_metadata)
    """
    global _collaborators
    base = collaborators or Collaborators()
    for name, fn in overrides.items():
        if not hasattr(base, name):
            raise AttributeError(f"unknown collaborator: {name}")
        setattr(base, name, fn)
    _collaborators = base
    return _collaborators


def get_collaborators() -> Collaborators:
    return _collaborators
