from mangum import Mangum

from apps.lumen_pg.app import main as main_mod
from apps.lumen_pg.app.middleware.compression import CompressionMiddleware
from apps.lumen_pg.app.middleware.content_negotiation import ContentNegotiationMiddleware
from apps.lumen_pg.app.middleware.cookie_integrity import CookieIntegrityMiddleware
from apps.lumen_pg.app.middleware.cors import CORSMiddlewareStrict
from apps.lumen_pg.app.middleware.csrf import CSRFMiddleware
from apps.lumen_pg.app.middleware.default_headers import DefaultHeadersMiddleware
from apps.lumen_pg.app.middleware.errors import HandleErrors, RecoverFromPanic
from apps.lumen_pg.app.middleware.https import HTTPSRedirectForCookiesMiddleware
from apps.lumen_pg.app.middleware.rate_limit import RateLimitMiddleware
from apps.lumen_pg.app.middleware.request_id import RequestIdMiddleware
from apps.lumen_pg.app.middleware.request_logging import LogRequest, LogSecurityEvents
from apps.lumen_pg.app.middleware.same_site import SameSiteCookieMiddleware
from apps.lumen_pg.app.middleware.security_headers import SecurityHeadersMiddleware
from apps.lumen_pg.app.routers import health as health_router
from apps.lumen_pg.app.services.collaborators import get_collaborators


def test_global_middleware_order(use_settings, monkeypatch):
    settings = use_settings()
    monkeypatch.setattr(main_mod, "get_settings", lambda: settings)
    monkeypatch.setattr(main_mod, "configure_logging", lambda level: None)
    app = main_mod.create_app()
    # Outermost first
    assert [m.cls for m in app.user_middleware] == [
        RequestIdMiddleware,
        RecoverFromPanic,
        LogRequest,
        HandleErrors,
        LogSecurityEvents,
        DefaultHeadersMiddleware,
        SecurityHeadersMiddleware,
        SameSiteCookieMiddleware,
        CORSMiddlewareStrict,
        CompressionMiddleware,
        ContentNegotiationMiddleware,
        HTTPSRedirectForCookiesMiddleware,
        CookieIntegrityMiddleware,
        RateLimitMiddleware,
        CSRFMiddleware,
    ]


def test_lambda_handler_exposed():
    assert isinstance(main_mod.handler, Mangum)


def test_healthz(app_client):
    client = app_client()
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}
    assert "X-Request-ID" in r.headers


def test_readyz_without_redis(app_client):
    client = app_client()
    r = client.get("/readyz")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "dependencies": {"redis": None}}


def test_readyz_degraded_when_redis_down(app_client, monkeypatch):
    async def down():
        return False

    monkeypatch.setattr(health_router, "ping_redis", down)
    client = app_client()
    r = client.get("/readyz")
    assert r.status_code == 503
    assert r.json()["status"] == "degraded"


def test_root_reports_service(app_client):
    r = app_client().get("/")
    assert r.json() == {"service": "lumen-pg", "stage": "test"}


def test_collaborators_registered(app_client, store):
    app_client()
    assert get_collaborators().resolve_session == store.resolve_session
