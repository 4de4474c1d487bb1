"""
routing.py

Per-route middleware stacks ("guards") for domain handlers.

The global pipeline (request id, recovery, logging, headers, CORS,
compression, negotiation, HTTPS, cookie integrity, rate limit, CSRF) is
assembled in main.create_app(). Everything that depends on the route
(allowed methods, authentication, context, validation, authorization)
is attached here, outer to inner in list order.

Non-developer summary:
----------------------
Each page of the admin UI declares which checks it needs. The table
browser needs a logged-in user with SELECT on the table; the row editor
needs UPDATE; the query editor needs a safe SQL statement. This file
bundles those checks into ready-made lists.
"""

from __future__ import annotations

from typing import Callable, List, Optional, Sequence

from starlette.middleware import Middleware
from starlette.routing import Route

from .middleware.authentication import Authenticate
from .middleware.authorization import (
    RequireDatabaseAccess,
    RequireDeletePermission,
    RequireInsertPermission,
    RequireSelectPermission,
    RequireTableAccess,
    RequireUpdatePermission,
)
from .middleware.context_injection import (
    InjectMetadata,
    InjectSession,
    InjectTransaction,
    InjectUser,
    InjectUserPermissions,
)
from .middleware.errors import ValidateHTTPMethod
from .middleware.request_logging import LogQueryExecution, LogTransactionEvents
from .middleware.validation import (
    ValidateQueryParams,
    ValidateRequestBody,
    ValidateSQLQuery,
    ValidateWhereClause,
)

# Route matching accepts every method; ValidateHTTPMethod answers 405 with Allow
ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"]

AUTH_AND_CONTEXT: List[Middleware] = [
    Middleware(Authenticate),
    Middleware(InjectUser),
    Middleware(InjectSession),
    Middleware(InjectUserPermissions),
    Middleware(InjectTransaction),
    Middleware(InjectMetadata),
]

READ_TABLE_GUARDS: List[Middleware] = [
    *AUTH_AND_CONTEXT,
    Middleware(ValidateQueryParams),
    Middleware(ValidateWhereClause),
    Middleware(RequireDatabaseAccess),
    Middleware(RequireTableAccess),
    Middleware(RequireSelectPermission),
]

_WRITE_GATES = {
    "insert": RequireInsertPermission,
    "update": RequireUpdatePermission,
    "delete": RequireDeletePermission,
}


def write_table_guards(privilege: str) -> List[Middleware]:
    """Guards for row edits; `privilege` is insert, update or delete."""
    gate = _WRITE_GATES[privilege]
    return [
        *AUTH_AND_CONTEXT,
        Middleware(ValidateQueryParams),
        Middleware(ValidateRequestBody),
        Middleware(RequireDatabaseAccess),
        Middleware(RequireTableAccess),
        Middleware(gate),
        Middleware(LogTransactionEvents),
    ]


WRITE_TABLE_GUARDS: List[Middleware] = write_table_guards("update")

QUERY_GUARDS: List[Middleware] = [
    *AUTH_AND_CONTEXT,
    Middleware(ValidateQueryParams),
    Middleware(ValidateRequestBody),
    Middleware(ValidateSQLQuery),
    Middleware(RequireDatabaseAccess),
    Middleware(LogQueryExecution),
    Middleware(LogTransactionEvents),
]


def guarded_route(
    path: str,
    endpoint: Callable,
    methods: Sequence[str] = ("GET",),
    guards: Optional[Sequence[Middleware]] = None,
    name: Optional[str] = None,
) -> Route:
    """
    Build a Starlette Route whose route-level middleware is the method check
    followed by `guards`. Mount with app.router.routes.append(route).
    """
    allowed = list(methods)
    if "GET" in allowed and "HEAD" not in allowed:
        allowed.append("HEAD")
    return Route(
        path,
        endpoint,
        methods=ALL_METHODS,
        name=name,
        middleware=[Middleware(ValidateHTTPMethod, allowed=allowed), *(guards or [])],
    )
