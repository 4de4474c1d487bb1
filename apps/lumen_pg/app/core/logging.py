"""
core/logging.py

JSON logging setup with request ID propagation.

Non-developer summary:
----------------------
This makes logs machine-readable and easy to filter. Each line includes a
requestId so you can trace one request across all middlewares. Secrets
(cookie values, the signing key) are never part of the log payload.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from starlette.requests import Request

# Context variable set by RequestIdMiddleware
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Extras copied from the LogRecord into the JSON payload (safe subset).
SAFE_EXTRAS = (
    "method",
    "path",
    "status",
    "durationMs",
    "client",
    "userAgent",
    "referer",
    "username",
    "sessionId",
    "transactionId",
    "transactionActive",
    "event",
    "severity",
    "resource",
    "reason",
    "changesCount",
    "query",
    "queryType",
    "code",
    "scope",
    "key",
    "error",
)


class JsonFormatter(logging.Formatter):
    """
    Minimal JSON log formatter that adds common fields and pulls requestId
    from the record (when passed via `extra=`) or from the context variable
    set by the middleware.
    """

    def __init__(self, service: str, stage: str):
        super().__init__()
        self.service = service
        self.stage = stage

    def format(self, record: logging.LogRecord) -> str:
        # Base envelope
        payload: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "service": self.service,
            "stage": self.stage,
        }

        rid = getattr(record, "requestId", None) or request_id_var.get()
        if rid:
            payload["requestId"] = rid

        for key in SAFE_EXTRAS:
            if hasattr(record, key):
                payload[key] = getattr(record, key)

        # Short exception info only; full stacks stay out of shipped logs
        if record.exc_info:
            payload["exc"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
            }

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


def current_request_id(request: Optional[Request] = None) -> Optional[str]:
    """Request id from request.state (preferred), the context var, or the inbound header."""
    if request is not None:
        rid = getattr(request.state, "request_id", None)
        if rid:
            return rid
    rid = request_id_var.get()
    if rid:
        return rid
    if request is not None:
        return request.headers.get("X-Request-ID")
    return None


def log_extra(request: Optional[Request] = None, **fields: Any) -> Dict[str, Any]:
    """
    Build an `extra=` mapping for logger calls. Always carries requestId so
    records are correlatable even when a different formatter is installed.
    """
    extra: Dict[str, Any] = {k: v for k, v in fields.items() if v is not None}
    extra["requestId"] = current_request_id(request)
    return extra


def _setup_handler(level: int, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def configure_logging(level_str: str = "INFO") -> None:
    """
    Configure root, uvicorn, and app loggers to use JSON.

    Call this once at startup (main.py does this already).
    """
    level = getattr(logging, (level_str or "INFO").upper(), logging.INFO)

    # Import here to avoid circulars
    from .config import get_settings
    s = get_settings()

    formatter = JsonFormatter(service=s.APP_NAME, stage=s.APP_STAGE)
    handler = _setup_handler(level, formatter)

    # Root logger
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    root.setLevel(level)
    root.addHandler(handler)

    # Align uvicorn/access loggers
    for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        lg = logging.getLogger(name)
        for h in list(lg.handlers):
            lg.removeHandler(h)
        lg.setLevel(level)
        lg.addHandler(handler)
        lg.propagate = False

    # Our app namespace inherits the root handler
    logging.getLogger("apps.lumen_pg").setLevel(level)
