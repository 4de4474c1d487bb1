"""
middleware/content_negotiation.py

Accept-header negotiation against the media types this service produces.
The chosen type is bound as context attribute `media_type`.
"""

from __future__ import annotations

from typing import Iterable, List, NamedTuple, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..core.config import get_settings
from ..core.context import bind_attributes
from ..core.errors import AppError, error_response


class MediaRange(NamedTuple):
    type: str
    subtype: str
    q: float
    order: int

    @property
    def specificity(self) -> int:
        if self.type == "*":
            return 0
        if self.subtype == "*":
            return 1
        return 2

    def matches(self, media_type: str) -> bool:
        mtype, _, subtype = media_type.partition("/")
        return self.type in ("*", mtype) and self.subtype in ("*", subtype)


def parse_accept(header: Optional[str]) -> List[MediaRange]:
    """Parse an Accept header; malformed ranges are skipped, bad q counts as 0."""
    ranges: List[MediaRange] = []
    for order, raw in enumerate((header or "").split(",")):
        parts = [p.strip() for p in raw.split(";")]
        media = parts[0].lower()
        if "/" not in media:
            continue
        mtype, subtype = media.split("/", 1)
        q = 1.0
        for param in parts[1:]:
            name, _, value = param.partition("=")
            if name.strip().lower() == "q":
                try:
                    q = max(0.0, min(1.0, float(value.strip())))
                except ValueError:
                    q = 0.0
        ranges.append(MediaRange(mtype.strip(), subtype.strip(), q, order))
    return ranges


def negotiate(header: Optional[str], producible: Iterable[str]) -> Optional[str]:
    """
    Best producible type for `header`, or None when nothing acceptable.
    The most specific matching range decides each candidate's quality.
    """
    ranges = parse_accept(header)
    best: Optional[str] = None
    best_key = (0.0, -1, 0)
    for index, candidate in enumerate(producible):
        matching = [r for r in ranges if r.matches(candidate)]
        if not matching:
            continue
        decisive = max(matching, key=lambda r: (r.specificity, -r.order))
        if decisive.q <= 0:
            continue
        # Higher q wins, then the more specific range, then server order
        key = (decisive.q, decisive.specificity, -index)
        if best is None or key > best_key:
            best, best_key = candidate, key
    return best


def has_preference(header: Optional[str]) -> bool:
    value = (header or "").strip()
    return bool(value) and value != "*/*"


class ContentNegotiationMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: ASGIApp,
        producible: Optional[Iterable[str]] = None,
        strict: Optional[bool] = None,
    ) -> None:
        super().__init__(app)
        s = get_settings()
        self.producible = [t.lower() for t in (producible or s.producible_media_type_list)]
        self.strict = s.STRICT_CONTENT_NEGOTIATION if strict is None else strict

    async def dispatch(self, request: Request, call_next):
        accept = request.headers.get("accept")
        if not has_preference(accept):
            bind_attributes(request, media_type=self.producible[0] if self.producible else None)
            return await call_next(request)

        chosen = negotiate(accept, self.producible)
        if chosen is None and self.strict:
            return error_response(
                request,
                AppError(
                    "NOT_ACCEPTABLE",
                    "None of the requested media types can be produced.",
                    status=406,
                    details={"available": self.producible},
                ),
            )
        bind_attributes(request, media_type=chosen)
        return await call_next(request)
