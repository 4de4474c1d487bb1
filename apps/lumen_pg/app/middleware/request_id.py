"""
middleware/request_id.py

Guarantees an X-Request-ID for every request, makes it available in:
  - the request context (request_id) and request.state.request_id
  - logging context (JSON logs include it)

Non-developer summary:
----------------------
This adds a unique id to each request so we can trace it across services
and logs. If the browser or a proxy provides a sane one, we keep it;
otherwise we create one. Every response, errors included, carries it back.
"""

from __future__ import annotations

import re
import uuid
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from ..core.context import bind
from ..core.logging import request_id_var

# 1..128 printable ASCII characters, no spaces inside
_VALID_RID = re.compile(r"^[\x21-\x7e]{1,128}$")


def accept_request_id(incoming: Optional[str]) -> Optional[str]:
    """Return the inbound id when it is safe to adopt, else None."""
    if not incoming:
        return None
    rid = incoming.strip()
    return rid if _VALID_RID.match(rid) else None


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    - Accept or generate a request id.
    - Store it in the context, request.state and logging context.
    - Echo it back in the response header.
    """

    header_name: str = "X-Request-ID"

    async def dispatch(self, request: Request, call_next):
        rid = accept_request_id(request.headers.get(self.header_name)) or str(uuid.uuid4())

        # Expose to handlers and logging
        request.state.request_id = rid
        bind(request, request_id=rid)
        token = request_id_var.set(rid)
        try:
            response: Response = await call_next(request)
        finally:
            # Restore previous context to avoid leaking the id across requests
            request_id_var.reset(token)

        response.headers[self.header_name] = rid
        return response
