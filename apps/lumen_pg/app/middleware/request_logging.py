"""
middleware/request_logging.py

Structured logging hooks. None of them changes the response; all of them
carry the request id and cope with an empty context.

Non-developer summary:
----------------------
- LogRequest: one line per request (who, what, how long, result).
- LogQueryExecution: which SQL ran and whether it worked.
- LogSecurityEvents: suspicious or rejected requests, by severity.
- LogTransactionEvents: begin/commit/rollback activity on open transactions.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

from ..core.context import RequestContext, get_context
from ..core.logging import log_extra
from ..security.sql_guard import classify_statement

# Longest query text written to the log
QUERY_LOG_LIMIT = 500

SEVERITY_LEVELS: Dict[str, int] = {
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.ERROR,
    "critical": logging.ERROR,
}

# Response statuses that are security-relevant on their own
STATUS_EVENTS: Dict[int, tuple] = {
    400: ("validation_failed", "medium"),
    401: ("authentication_failed", "medium"),
    403: ("access_denied", "high"),
    405: ("method_not_allowed", "low"),
    413: ("payload_too_large", "medium"),
    429: ("rate_limited", "medium"),
}


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _username(ctx: RequestContext) -> Optional[str]:
    return ctx.user.username if ctx.user else None


class _LogHook(BaseHTTPMiddleware):
    logger_name = "apps.lumen_pg.requests"

    def __init__(self, app: ASGIApp, logger: Optional[logging.Logger] = None) -> None:
        super().__init__(app)
        self.log = logger or logging.getLogger(self.logger_name)


class LogRequest(_LogHook):
    logger_name = "apps.lumen_pg.requests"

    async def dispatch(self, request: Request, call_next) -> Response:
        started = time.perf_counter()
        base = {
            "method": request.method,
            "path": request.url.path,
            "client": request.client.host if request.client else None,
            "userAgent": request.headers.get("user-agent"),
            "referer": request.headers.get("referer"),
        }
        try:
            response = await call_next(request)
        except Exception as exc:
            self.log.error(
                "request_failed",
                extra=log_extra(
                    request,
                    durationMs=_elapsed_ms(started),
                    username=_username(get_context(request)),
                    error=type(exc).__name__,
                    **base,
                ),
            )
            raise

        self.log.info(
            "request_completed",
            extra=log_extra(
                request,
                status=response.status_code,
                durationMs=_elapsed_ms(started),
                username=_username(get_context(request)),
                **base,
            ),
        )
        return response


def _query_from_context(ctx: RequestContext) -> Optional[str]:
    query = ctx.attr("query")
    if isinstance(query, str):
        return query
    body = ctx.attr("body")
    if isinstance(body, dict) and isinstance(body.get("query"), str):
        return body["query"]
    return None


class LogQueryExecution(_LogHook):
    logger_name = "apps.lumen_pg.queries"

    async def dispatch(self, request: Request, call_next) -> Response:
        started = time.perf_counter()
        response = await call_next(request)

        ctx = get_context(request)
        query = _query_from_context(ctx)
        if query is None:
            return response

        query_type = ctx.attr("query_type") or classify_statement(query)
        level = logging.WARNING if response.status_code >= 400 else logging.INFO
        self.log.log(
            level,
            "query_executed",
            extra=log_extra(
                request,
                query=query[:QUERY_LOG_LIMIT],
                queryType=query_type,
                status=response.status_code,
                durationMs=_elapsed_ms(started),
                username=_username(ctx),
                transactionId=ctx.transaction.id if ctx.transaction else None,
            ),
        )
        return response


class LogSecurityEvents(_LogHook):
    logger_name = "apps.lumen_pg.security"

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        ctx = get_context(request)

        event = ctx.attr("event")
        severity = ctx.attr("severity")
        if event is None and response.status_code in STATUS_EVENTS:
            event, severity = STATUS_EVENTS[response.status_code]
        if event is None:
            return response

        severity = str(severity or "low").lower()
        self.log.log(
            SEVERITY_LEVELS.get(severity, logging.WARNING),
            "security_event",
            extra=log_extra(
                request,
                event=event,
                severity=severity,
                resource=ctx.attr("resource") or request.url.path,
                status=response.status_code,
                method=request.method,
                username=_username(ctx),
            ),
        )
        return response


class LogTransactionEvents(_LogHook):
    logger_name = "apps.lumen_pg.transactions"

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        ctx = get_context(request)
        event = ctx.attr("event")
        if ctx.transaction is None and event is None:
            return response

        fields: Dict[str, Any] = {
            "event": event or "transaction_request",
            "reason": ctx.attr("reason"),
            "changesCount": ctx.attr("changes_count"),
            "status": response.status_code,
            "username": _username(ctx),
        }
        if ctx.transaction is not None:
            fields["transactionId"] = ctx.transaction.id
            fields["transactionActive"] = ctx.transaction.active
        self.log.info("transaction_event", extra=log_extra(request, **fields))
        return response
