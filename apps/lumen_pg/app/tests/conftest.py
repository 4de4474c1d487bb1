"""
Shared fixtures: settings patched the same way everywhere, an in-memory
session/permission store behind the collaborator seam, and a tiny
Starlette app builder for driving one middleware (or a few) in isolation.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Set

import pytest
from pydantic import SecretStr
from fastapi.testclient import TestClient
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from apps.lumen_pg.app import main as main_mod
from apps.lumen_pg.app.core import config as config_mod
from apps.lumen_pg.app.core.config import Settings
from apps.lumen_pg.app.core.context import get_context
from apps.lumen_pg.app.infra import redis as redis_mod
from apps.lumen_pg.app.middleware import authentication as authn_mod
from apps.lumen_pg.app.middleware import compression as compression_mod
from apps.lumen_pg.app.middleware import content_negotiation as negotiation_mod
from apps.lumen_pg.app.middleware import cors as cors_mod
from apps.lumen_pg.app.middleware import csrf as csrf_mod
from apps.lumen_pg.app.middleware import default_headers as default_headers_mod
from apps.lumen_pg.app.middleware import https as https_mod
from apps.lumen_pg.app.middleware import rate_limit as rate_limit_mod
from apps.lumen_pg.app.middleware import same_site as same_site_mod
from apps.lumen_pg.app.middleware import security_headers as security_headers_mod
from apps.lumen_pg.app.middleware import validation as validation_mod
from apps.lumen_pg.app.schemas.identity import (
    AccessibleTable,
    DatabaseMetadata,
    RoleMetadata,
    Session,
)
from apps.lumen_pg.app.security import cookie_signing as signing_mod
from apps.lumen_pg.app.services import collaborators as collab_mod
from apps.lumen_pg.app.services import metadata_cache as cache_mod

SIGNING_KEY = "test-signing-key"

# Every module that looked up get_settings at import time
SETTINGS_CONSUMERS = [
    config_mod,
    redis_mod,
    collab_mod,
    cache_mod,
    signing_mod,
    authn_mod,
    compression_mod,
    negotiation_mod,
    cors_mod,
    csrf_mod,
    default_headers_mod,
    https_mod,
    rate_limit_mod,
    same_site_mod,
    security_headers_mod,
    validation_mod,
]


class DummySettings(Settings):
    APP_NAME: str = "lumen-pg"
    APP_STAGE: str = "test"
    LOG_LEVEL: str = "INFO"
    ALLOWED_ORIGINS: str = "http://localhost:3000,https://pg.example.com"
    COOKIE_SIGNING_KEY: SecretStr = SecretStr(SIGNING_KEY)
    HTTPS_STRICT: bool = False
    RATE_LIMIT: str = "1000/m"
    REDIS_URL: Optional[str] = None


@pytest.fixture
def use_settings(monkeypatch):
    """Install DummySettings (with overrides) wherever get_settings is referenced."""

    def _install(**overrides) -> DummySettings:
        settings = DummySettings(**overrides)
        for mod in SETTINGS_CONSUMERS:
            monkeypatch.setattr(mod, "get_settings", lambda: settings)
        return settings

    return _install


@pytest.fixture(autouse=True)
def settings(use_settings):
    return use_settings()


class FakeStore:
    """Sessions, grants and metadata keyed the way the collaborators ask for them."""

    def __init__(self) -> None:
        self.sessions: Dict[str, Session] = {}
        self.permissions: Dict[str, RoleMetadata] = {}
        self.metadata: Dict[str, DatabaseMetadata] = {}
        self.csrf_tokens: Set[str] = set()
        # session id -> token issued for that session
        self.session_csrf: Dict[str, str] = {}
        self.csrf_sessions_seen: list = []
        self.calls: Dict[str, int] = {"resolve_session": 0, "load_permissions": 0, "load_metadata": 0}
        self.fail_sessions = False

    def add_user(
        self,
        username: str,
        session_id: str,
        *,
        expires_in: int = 3600,
        tables: Optional[list] = None,
        databases: Optional[Set[str]] = None,
    ) -> Session:
        now = datetime.now(timezone.utc)
        session = Session(
            id=session_id,
            username=username,
            expires_at=now + timedelta(seconds=expires_in),
            created_at=now,
        )
        self.sessions[session_id] = session
        self.permissions[username] = RoleMetadata(
            name=username,
            accessible_databases=databases if databases is not None else {"testdb"},
            accessible_tables=tables if tables is not None else [],
        )
        self.metadata[session_id] = DatabaseMetadata(name="testdb", schemas=["public"], tables=["public.users"])
        return session

    async def resolve_session(self, session_id: str) -> Optional[Session]:
        self.calls["resolve_session"] += 1
        if self.fail_sessions:
            raise ConnectionError("session store unavailable")
        return self.sessions.get(session_id)

    async def load_permissions(self, username: str) -> Optional[RoleMetadata]:
        self.calls["load_permissions"] += 1
        return self.permissions.get(username)

    async def load_metadata(self, session: Session) -> Optional[DatabaseMetadata]:
        self.calls["load_metadata"] += 1
        return self.metadata.get(session.id)

    async def is_valid_csrf(self, token: str, session: Optional[Session]) -> bool:
        self.csrf_sessions_seen.append(session.id if session else None)
        if session is not None and self.session_csrf.get(session.id) == token:
            return True
        return token in self.csrf_tokens

    def collaborators(self) -> collab_mod.Collaborators:
        return collab_mod.Collaborators(
            resolve_session=self.resolve_session,
            load_permissions=self.load_permissions,
            load_metadata=self.load_metadata,
            is_valid_csrf=self.is_valid_csrf,
            signing_key=lambda: SIGNING_KEY.encode("utf-8"),
        )


USERS_TABLE = AccessibleTable(
    database="testdb",
    schema="public",
    name="users",
    has_select=True,
    has_insert=False,
    has_update=True,
    has_delete=False,
)


@pytest.fixture
def store():
    s = FakeStore()
    s.add_user("alice", "sess-alice", tables=[USERS_TABLE])
    return s


@pytest.fixture(autouse=True)
def collaborators(store, monkeypatch):
    cache_mod.clear_local_cache()
    collab = store.collaborators()
    monkeypatch.setattr(collab_mod, "_collaborators", collab)
    yield collab
    cache_mod.clear_local_cache()


def _jsonable(value):
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json", by_alias=True)
    return value


async def echo_context(request: Request):
    """Endpoint that reports what the middlewares put in the context."""
    ctx = get_context(request)
    return JSONResponse(
        {
            "user": ctx.user.username if ctx.user else None,
            "session": ctx.session.id if ctx.session else None,
            "transaction": _jsonable(ctx.transaction),
            "permissions": ctx.permissions.name if ctx.permissions else None,
            "metadata": _jsonable(ctx.metadata),
            "requestId": ctx.request_id,
            "attributes": {k: _jsonable(v) for k, v in ctx.attributes.items()},
        }
    )


ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"]


@pytest.fixture
def build_client():
    """
    build_client(Middleware(...), ..., endpoint=None, base_url=...) -> TestClient

    Middleware listed first is outermost. The default endpoint echoes the context.
    """

    def _build(*middleware: Middleware, endpoint=None, path: str = "/t", **client_kwargs) -> TestClient:
        app = Starlette(
            routes=[Route(path, endpoint or echo_context, methods=ALL_METHODS)],
            middleware=list(middleware),
        )
        return TestClient(app, **client_kwargs)

    return _build


@pytest.fixture
def signed():
    """signed(name, value) -> {name: value, name_signature: hmac}"""

    def _signed(name: str, value: str) -> Dict[str, str]:
        sig = signing_mod.sign_value(name, value, SIGNING_KEY.encode("utf-8"))
        return {name: value, signing_mod.signature_cookie_name(name): sig}

    return _signed


@pytest.fixture
def app_client(use_settings, store, monkeypatch):
    """
    app_client(routes, **settings_overrides) -> TestClient over create_app()

    Logging setup is skipped so caplog keeps its handler on the root logger.
    """

    def _build(routes=None, **overrides) -> TestClient:
        settings = use_settings(**overrides)
        monkeypatch.setattr(main_mod, "get_settings", lambda: settings)
        monkeypatch.setattr(main_mod, "configure_logging", lambda level: None)
        app = main_mod.create_app(routes=routes, collaborators=store.collaborators())
        return TestClient(app)

    return _build
