"""
security/cookie_signing.py

HMAC signing for cookies plus the cookie builders used after login/logout.

A signed cookie `X` travels with a companion `X_signature` whose value is
hex(HMAC-SHA256(key, "X=" + value)). CookieIntegrityMiddleware recomputes it
on every request.

Non-developer summary:
----------------------
The browser stores cookies and could edit them (for example, change the
username cookie to someone else). The signature is a fingerprint only the
server can produce, so an edited cookie no longer matches and is refused.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from starlette.responses import Response

from ..core.config import get_settings

SIGNATURE_SUFFIX = "_signature"

# Cookies written and read by the middleware layer
SESSION_COOKIE = "session_id"
USERNAME_COOKIE = "username"
TRANSACTION_COOKIE = "transaction_id"
TRANSACTION_ACTIVE_COOKIE = "transaction_active"


def _default_key() -> bytes:
    return get_settings().COOKIE_SIGNING_KEY.get_secret_value().encode("utf-8")


def _expiry(ts_seconds: int) -> datetime:
    """Convert a relative seconds-from-now TTL into an absolute UTC datetime."""
    return datetime.now(tz=timezone.utc) + timedelta(seconds=int(ts_seconds))


def signature_cookie_name(name: str) -> str:
    return f"{name}{SIGNATURE_SUFFIX}"


def sign_value(name: str, value: str, key: Optional[bytes] = None) -> str:
    """Hex HMAC-SHA256 over "name=value"."""
    mac = hmac.new(key or _default_key(), f"{name}={value}".encode("utf-8"), hashlib.sha256)
    return mac.hexdigest()


def verify_value(name: str, value: str, signature: str, key: Optional[bytes] = None) -> bool:
    """Constant-time comparison against the expected signature."""
    expected = sign_value(name, value, key)
    return hmac.compare_digest(expected, (signature or "").strip().lower())


def generate_csrf_token() -> str:
    """Strong random value suitable for CSRF double-submit (sent as cookie and echoed in header)."""
    return secrets.token_urlsafe(32)


def set_signed_cookie(
    response: Response,
    name: str,
    value: str,
    *,
    ttl_seconds: Optional[int] = None,
    key: Optional[bytes] = None,
    httponly: bool = True,
    secure: bool = True,
) -> None:
    """
    Write `name` and its `name_signature` companion with identical attributes.
    SameSite is applied later by SameSiteCookieMiddleware.
    """
    sig = sign_value(name, value, key)
    for cookie_name, cookie_value in ((name, value), (signature_cookie_name(name), sig)):
        response.set_cookie(
            key=cookie_name,
            value=cookie_value,
            expires=_expiry(ttl_seconds) if ttl_seconds is not None else None,
            max_age=ttl_seconds,
            path="/",
            secure=secure,
            httponly=httponly,
            samesite="lax",
        )


def set_csrf_cookie(response: Response, csrf_token: Optional[str] = None, ttl_seconds: Optional[int] = None) -> str:
    """
    Set the readable (non-HttpOnly) CSRF cookie for double-submit.

    The frontend copies it into the X-CSRF-Token header for unsafe requests.
    """
    s = get_settings()
    token = csrf_token or generate_csrf_token()
    response.set_cookie(
        key=s.CSRF_COOKIE,
        value=token,
        expires=_expiry(ttl_seconds) if ttl_seconds is not None else None,
        max_age=ttl_seconds,
        path="/",
        secure=True,
        httponly=False,  # FE must be able to read it
        samesite="lax",
    )
    return token


def clear_session_cookies(response: Response) -> None:
    """
    Clear session, username, transaction and CSRF cookies with their signatures
    (used by logout and forced sign-out flows).
    """
    s = get_settings()
    for name in (SESSION_COOKIE, USERNAME_COOKIE, TRANSACTION_COOKIE, TRANSACTION_ACTIVE_COOKIE):
        response.delete_cookie(key=name, path="/")
        response.delete_cookie(key=signature_cookie_name(name), path="/")
    response.delete_cookie(key=s.CSRF_COOKIE, path="/")
