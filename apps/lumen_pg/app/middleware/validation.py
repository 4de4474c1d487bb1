"""
middleware/validation.py

Input firewall: query parameters, request bodies, WHERE-clause fragments
and query-editor SQL.

Non-developer summary:
----------------------
Everything a browser sends is checked before it gets near PostgreSQL.
Ordinary filters (database names, page numbers, search words) must use a
small set of safe characters. The free-form SQL fields (the table filter
and the query editor) get a closer, SQL-aware inspection instead.
Too-large or malformed bodies are refused up front.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional
from urllib.parse import parse_qsl

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

from ..core.config import get_settings
from ..core.context import bind_attributes, get_context
from ..core.errors import AppError, error_response
from ..core.logging import log_extra
from ..security.sql_guard import inspect_sql_query, inspect_where_clause

log = logging.getLogger("apps.lumen_pg.validation")

_PARAM_NAME_RE = re.compile(r"^[A-Za-z0-9_.\-\[\]]{1,64}$")
# Unicode letters/digits, underscore and the documented punctuation
_PARAM_VALUE_RE = re.compile(r"^[\w\-. ,:/@+=()*%!?~#]*$")
_SQL_COMMENT_MARKERS = ("--", "/*", "*/")

# Inspected by the SQL-aware validators instead
SQL_PARAMS = frozenset({"where", "query"})

FORM_TYPE = "application/x-www-form-urlencoded"


def _invalid(message: str, **details: Any) -> AppError:
    return AppError("VALIDATION_ERROR", message, status=400, details=details or None)


def media_type(request: Request) -> str:
    return (request.headers.get("content-type") or "").split(";", 1)[0].strip().lower()


def is_json_type(mtype: str) -> bool:
    return mtype == "application/json" or mtype.endswith("+json")


def check_query_value(value: str, max_length: int) -> Optional[str]:
    """Return a reason when a plain query value is unsafe, else None."""
    if len(value) > max_length:
        return "value too long"
    if not _PARAM_VALUE_RE.match(value):
        return "value contains disallowed characters"
    if any(marker in value for marker in _SQL_COMMENT_MARKERS):
        return "value contains a comment marker"
    return None


class ValidateQueryParams(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, max_value_length: Optional[int] = None) -> None:
        super().__init__(app)
        self.max_value_length = (
            max_value_length if max_value_length is not None else get_settings().MAX_QUERY_VALUE_LENGTH
        )

    async def dispatch(self, request: Request, call_next) -> Response:
        for name, value in request.query_params.multi_items():
            if not _PARAM_NAME_RE.match(name):
                return self._reject(request, _invalid("Invalid query parameter name.", param=name[:64]))
            if name in SQL_PARAMS:
                continue
            reason = check_query_value(value, self.max_value_length)
            if reason:
                return self._reject(request, _invalid("Invalid query parameter value.", param=name, reason=reason))
        return await call_next(request)

    @staticmethod
    def _reject(request: Request, exc: AppError) -> Response:
        log.info("query_param_rejected", extra=log_extra(request, reason=exc.details.get("reason")))
        return error_response(request, exc)


class ValidateRequestBody(BaseHTTPMiddleware):
    """
    Size limit (413) first on Content-Length then on the bytes actually read;
    JSON and form bodies must parse. Parsed JSON is bound as attribute `body`.
    """

    def __init__(self, app: ASGIApp, max_bytes: Optional[int] = None) -> None:
        super().__init__(app)
        self.max_bytes = max_bytes if max_bytes is not None else get_settings().MAX_BODY_BYTES

    async def dispatch(self, request: Request, call_next) -> Response:
        declared = request.headers.get("content-length")
        if declared is not None:
            try:
                if int(declared) > self.max_bytes:
                    return error_response(request, self._too_large())
            except ValueError:
                return error_response(request, _invalid("Invalid Content-Length header."))

        body = await request.body()
        if len(body) > self.max_bytes:
            return error_response(request, self._too_large())
        if not body:
            return await call_next(request)

        mtype = media_type(request)
        try:
            text = body.decode("utf-8") if (is_json_type(mtype) or mtype == FORM_TYPE) else None
        except UnicodeDecodeError:
            return error_response(request, _invalid("Body is not valid UTF-8."))

        if is_json_type(mtype):
            try:
                parsed = json.loads(text)
            except ValueError:
                return error_response(request, _invalid("Malformed JSON body."))
            bind_attributes(request, body=parsed)
        elif mtype == FORM_TYPE:
            try:
                parse_qsl(text, keep_blank_values=True, strict_parsing=True)
            except ValueError:
                return error_response(request, _invalid("Malformed form body."))
        return await call_next(request)

    def _too_large(self) -> AppError:
        return AppError(
            "PAYLOAD_TOO_LARGE",
            "Request body is too large.",
            status=413,
            details={"maxBytes": self.max_bytes},
        )


class ValidateWhereClause(BaseHTTPMiddleware):
    """Inspect the `where` query parameter of the table browser."""

    async def dispatch(self, request: Request, call_next) -> Response:
        clause = request.query_params.get("where")
        reason = inspect_where_clause(clause)
        if reason:
            log.warning("where_clause_rejected", extra=log_extra(request, reason=reason))
            return error_response(request, _invalid("Unsafe WHERE clause.", reason=reason))
        return await call_next(request)


class ValidateSQLQuery(BaseHTTPMiddleware):
    """
    Inspect the query-editor statement: JSON body field `query`, form field
    `query`, or the `query` query parameter. The text is bound as attribute
    `query` for the logging hooks.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        try:
            query = await self._extract(request)
        except AppError as exc:
            return error_response(request, exc)

        if query is None:
            return await call_next(request)

        reason = inspect_sql_query(query)
        if reason:
            log.warning("sql_query_rejected", extra=log_extra(request, reason=reason))
            return error_response(request, _invalid("Unsafe SQL query.", reason=reason))
        bind_attributes(request, query=query)
        return await call_next(request)

    async def _extract(self, request: Request) -> Optional[str]:
        value: Any = None
        mtype = media_type(request)
        if is_json_type(mtype):
            parsed = get_context(request).attr("body")
            if parsed is None:
                raw = await request.body()
                if raw:
                    try:
                        parsed = json.loads(raw)
                    except ValueError:
                        raise _invalid("Malformed JSON body.")
            if isinstance(parsed, dict):
                value = parsed.get("query")
        elif mtype == FORM_TYPE:
            raw = await request.body()
            try:
                fields = dict(parse_qsl(raw.decode("utf-8"), keep_blank_values=True))
            except UnicodeDecodeError:
                raise _invalid("Body is not valid UTF-8.")
            value = fields.get("query")

        if value is None:
            value = request.query_params.get("query")
        if value is None:
            return None
        if not isinstance(value, str):
            raise _invalid("Query must be a string.")
        return value
