"""
Security middlewares: headers, CSRF, cookie integrity, SameSite and HTTPS.
"""

import logging

from starlette.middleware import Middleware
from starlette.responses import JSONResponse, PlainTextResponse

from apps.lumen_pg.app.middleware.authentication import Authenticate
from apps.lumen_pg.app.middleware.cookie_integrity import CookieIntegrityMiddleware
from apps.lumen_pg.app.middleware.csrf import CSRFMiddleware
from apps.lumen_pg.app.middleware.https import HTTPSRedirectForCookiesMiddleware
from apps.lumen_pg.app.middleware.same_site import SameSiteCookieMiddleware, with_same_site
from apps.lumen_pg.app.middleware.security_headers import SecurityHeadersMiddleware
from apps.lumen_pg.app.security.cookie_signing import set_csrf_cookie, set_signed_cookie


# ---------- Security headers ----------

def test_security_headers_on_success_and_error(build_client):
    async def fail(request):
        return PlainTextResponse("bad", status_code=400)

    for endpoint in (None, fail):
        client = build_client(Middleware(SecurityHeadersMiddleware), endpoint=endpoint)
        r = client.get("/t")
        assert r.headers["X-Content-Type-Options"] == "nosniff"
        assert r.headers["X-Frame-Options"] == "DENY"
        assert r.headers["X-XSS-Protection"] == "1; mode=block"
        assert r.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
        assert "default-src 'self'" in r.headers["Content-Security-Policy"]


def test_handler_header_wins(build_client):
    async def framed(request):
        return PlainTextResponse("ok", headers={"X-Frame-Options": "SAMEORIGIN"})

    client = build_client(Middleware(SecurityHeadersMiddleware), endpoint=framed)
    assert client.get("/t").headers["X-Frame-Options"] == "SAMEORIGIN"


def test_frame_options_from_settings(build_client, use_settings):
    use_settings(FRAME_OPTIONS="sameorigin")
    client = build_client(Middleware(SecurityHeadersMiddleware))
    assert client.get("/t").headers["X-Frame-Options"] == "SAMEORIGIN"


# ---------- CSRF ----------

def test_csrf_safe_methods_skip_checks(build_client):
    client = build_client(Middleware(CSRFMiddleware))
    assert client.get("/t").status_code == 200
    assert client.options("/t").status_code == 200


def test_csrf_missing_header_rejected(build_client):
    client = build_client(Middleware(CSRFMiddleware))
    r = client.post("/t", headers={"Origin": "http://localhost:3000"})
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "CSRF_FAILED"


def test_csrf_double_submit_cookie_accepted(build_client):
    client = build_client(Middleware(CSRFMiddleware))
    client.cookies.set("csrf_token", "tok-123")
    r = client.post("/t", headers={"X-CSRF-Token": "tok-123", "Origin": "http://localhost:3000"})
    assert r.status_code == 200, r.text


def test_csrf_header_cookie_mismatch_rejected(build_client):
    client = build_client(Middleware(CSRFMiddleware))
    client.cookies.set("csrf_token", "tok-123")
    r = client.post("/t", headers={"X-CSRF-Token": "tok-999"})
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "CSRF_FAILED"


def test_csrf_token_vouched_by_session_store(build_client, store):
    store.csrf_tokens.add("server-issued")
    client = build_client(Middleware(Authenticate), Middleware(CSRFMiddleware))
    client.cookies.set("session_id", "sess-alice")
    client.cookies.set("username", "alice")
    r = client.delete("/t", headers={"X-CSRF-Token": "server-issued"})
    assert r.status_code == 200


def test_csrf_session_token_checked_without_prior_authentication(build_client, store):
    store.session_csrf["sess-alice"] = "tok-sess-alice"
    client = build_client(Middleware(CSRFMiddleware))
    client.cookies.set("session_id", "sess-alice")
    client.cookies.set("username", "alice")
    r = client.post("/t", headers={"X-CSRF-Token": "tok-sess-alice"})
    assert r.status_code == 200
    assert store.csrf_sessions_seen == ["sess-alice"]


def test_csrf_session_token_needs_matching_session(build_client, store):
    store.session_csrf["sess-alice"] = "tok-sess-alice"
    client = build_client(Middleware(CSRFMiddleware))
    r = client.post("/t", headers={"X-CSRF-Token": "tok-sess-alice"})
    assert r.status_code == 403
    assert store.csrf_sessions_seen == [None]


def test_csrf_session_lookup_failure_counts_as_no_session(build_client, store):
    store.session_csrf["sess-alice"] = "tok-sess-alice"
    store.fail_sessions = True
    client = build_client(Middleware(CSRFMiddleware))
    client.cookies.set("session_id", "sess-alice")
    client.cookies.set("username", "alice")
    r = client.post("/t", headers={"X-CSRF-Token": "tok-sess-alice"})
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "CSRF_FAILED"


def test_csrf_foreign_origin_rejected_even_with_token(build_client):
    client = build_client(Middleware(CSRFMiddleware))
    client.cookies.set("csrf_token", "tok-123")
    r = client.post("/t", headers={"X-CSRF-Token": "tok-123", "Origin": "https://evil.example"})
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "ORIGIN_MISMATCH"


def test_csrf_origin_check_can_be_disabled(build_client):
    client = build_client(Middleware(CSRFMiddleware, check_origin=False))
    client.cookies.set("csrf_token", "tok-123")
    r = client.post("/t", headers={"X-CSRF-Token": "tok-123", "Origin": "https://evil.example"})
    assert r.status_code == 200


# ---------- Cookie integrity ----------

def test_signed_cookies_verify(build_client, signed):
    client = build_client(Middleware(CookieIntegrityMiddleware))
    for name, value in {**signed("username", "alice"), **signed("session_id", "sess-alice")}.items():
        client.cookies.set(name, value)
    assert client.get("/t").status_code == 200


def test_tampered_cookie_rejected(build_client, signed, caplog):
    caplog.set_level(logging.INFO)
    client = build_client(Middleware(CookieIntegrityMiddleware))
    cookies = signed("username", "alice")
    cookies["username"] = "postgres"
    for name, value in cookies.items():
        client.cookies.set(name, value)
    r = client.get("/t")
    assert r.status_code == 401
    err = r.json()["error"]
    assert err["code"] == "COOKIE_TAMPERED"
    assert err["details"] == {"cookie": "username"}
    # The forged value never reaches the log
    assert "postgres" not in caplog.text


def test_unsigned_cookies_and_orphan_signatures_ignored(build_client):
    client = build_client(Middleware(CookieIntegrityMiddleware))
    client.cookies.set("theme", "dark")
    client.cookies.set("ghost_signature", "deadbeef")
    assert client.get("/t").status_code == 200


def test_set_signed_cookie_round_trips_through_integrity_check(build_client):
    async def login(request):
        resp = JSONResponse({"ok": True})
        set_signed_cookie(resp, "username", "alice")
        return resp

    # Secure cookies are only stored from an https origin
    issuer = build_client(endpoint=login, base_url="https://testserver")
    issued = issuer.get("/t")
    assert "username_signature" in issued.cookies

    checker = build_client(Middleware(CookieIntegrityMiddleware))
    for name in ("username", "username_signature"):
        checker.cookies.set(name, issued.cookies[name])
    assert checker.get("/t").status_code == 200


# ---------- SameSite ----------

def test_with_same_site_replaces_existing_attribute():
    out = with_same_site("sid=1; Path=/; SameSite=None; Secure", "Strict")
    assert out == "sid=1; Path=/; Secure; SameSite=Strict"
    assert with_same_site("a=b", "Lax") == "a=b; SameSite=Lax"


def test_every_cookie_gets_configured_policy(build_client, use_settings):
    use_settings(SAMESITE_POLICY="strict")

    async def cookies(request):
        resp = PlainTextResponse("ok")
        resp.set_cookie("a", "1")
        resp.set_cookie("b", "2", samesite="none", secure=True)
        set_csrf_cookie(resp, "tok")
        return resp

    client = build_client(Middleware(SameSiteCookieMiddleware), endpoint=cookies)
    r = client.get("/t")
    set_cookies = r.headers.get_list("set-cookie")
    assert len(set_cookies) == 3
    for value in set_cookies:
        assert value.endswith("SameSite=Strict")
        assert value.lower().count("samesite") == 1


# ---------- HTTPS ----------

def test_plain_http_redirected_when_strict(build_client):
    client = build_client(Middleware(HTTPSRedirectForCookiesMiddleware, strict=True), follow_redirects=False)
    r = client.get("/t?x=1")
    assert r.status_code == 301
    assert r.headers["location"] == "https://testserver/t?x=1"

    r = client.post("/t")
    assert r.status_code == 302


def test_forwarded_proto_https_passes(build_client):
    client = build_client(Middleware(HTTPSRedirectForCookiesMiddleware, strict=True), follow_redirects=False)
    r = client.get("/t", headers={"X-Forwarded-Proto": "https, http"})
    assert r.status_code == 200


def test_https_request_passes(build_client):
    client = build_client(
        Middleware(HTTPSRedirectForCookiesMiddleware, strict=True),
        base_url="https://testserver",
    )
    assert client.get("/t").status_code == 200


def test_localhost_exempt(build_client):
    client = build_client(
        Middleware(HTTPSRedirectForCookiesMiddleware, strict=True),
        base_url="http://localhost:8000",
        follow_redirects=False,
    )
    assert client.get("/t").status_code == 200


def test_non_strict_mode_allows_http(build_client):
    client = build_client(Middleware(HTTPSRedirectForCookiesMiddleware), follow_redirects=False)
    assert client.get("/t").status_code == 200
