"""
middleware/authorization.py

Database / table / per-verb gates driven by the role metadata in the
request context and the `database`, `schema`, `table` query parameters.

Non-developer summary:
----------------------
Once we know who is calling and what their PostgreSQL role may touch,
these checks stop requests for databases or tables outside that list, or
for actions (read, add, change, delete rows) the role has no grant for.
"""

from __future__ import annotations

from typing import ClassVar, Dict, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from ..core.context import RequestContext, get_context
from ..core.errors import AppError, error_response
from ..schemas.identity import RoleMetadata


def _coordinates(request: Request) -> Dict[str, Optional[str]]:
    q = request.query_params
    return {"database": q.get("database"), "schema": q.get("schema"), "table": q.get("table")}


def _missing_permissions(ctx: RequestContext) -> AppError:
    # No role metadata: anonymous callers get 401, known users 403
    if ctx.user is None:
        return AppError("UNAUTHENTICATED", "Authentication required.", status=401)
    return AppError(
        "PERMISSION_DENIED",
        "Role permissions are unavailable.",
        status=403,
        details={"reason": "permissions_unavailable"},
    )


class _PermissionGate(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        ctx = get_context(request)
        if ctx.permissions is None:
            return error_response(request, _missing_permissions(ctx))
        denial = self.check(ctx.permissions, _coordinates(request))
        if denial is not None:
            return error_response(request, denial)
        return await call_next(request)

    def check(self, perms: RoleMetadata, coords: Dict[str, Optional[str]]) -> Optional[AppError]:
        raise NotImplementedError


class RequireDatabaseAccess(_PermissionGate):
    def check(self, perms: RoleMetadata, coords: Dict[str, Optional[str]]) -> Optional[AppError]:
        if perms.can_access_database(coords["database"]):
            return None
        return AppError(
            "PERMISSION_DENIED",
            "No access to this database.",
            status=403,
            details={"resource": {"database": coords["database"]}, "privilege": "CONNECT"},
        )


class _TableGate(_PermissionGate):
    """
    Requires an exact (database, schema, table) match; subclasses name the
    privilege the matched table must carry (None means any access).
    """

    privilege: ClassVar[Optional[str]] = None

    def check(self, perms: RoleMetadata, coords: Dict[str, Optional[str]]) -> Optional[AppError]:
        table = perms.find_table(coords["database"], coords["schema"], coords["table"])
        if table is not None and (self.privilege is None or table.allows(self.privilege)):
            return None
        missing = self.privilege.upper() if self.privilege else "ACCESS"
        return AppError(
            "PERMISSION_DENIED",
            f"Missing {missing} privilege on this table." if table is not None else "No access to this table.",
            status=403,
            details={"resource": coords, "privilege": missing},
        )


class RequireTableAccess(_TableGate):
    privilege = None


class RequireSelectPermission(_TableGate):
    privilege = "select"


class RequireInsertPermission(_TableGate):
    privilege = "insert"


class RequireUpdatePermission(_TableGate):
    privilege = "update"


class RequireDeletePermission(_TableGate):
    privilege = "delete"
