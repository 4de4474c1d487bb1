"""
middleware/compression.py

gzip / deflate response compression for text-like bodies, built on
Starlette's GZipMiddleware responders.

Non-developer summary:
----------------------
Large pages and JSON results travel faster when zipped. We only compress
when the browser says it can unzip, the body is big enough to be worth it
(1 KiB by default) and the content is text-like; images, video and live
event streams are sent as-is.
"""

from __future__ import annotations

import zlib
from typing import Dict, Optional, Type

from starlette.datastructures import Headers
from starlette.middleware.gzip import GZipResponder, IdentityResponder
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ..core.config import get_settings

# Server preference order
SUPPORTED_ENCODINGS = ("gzip", "deflate")

_COMPRESSIBLE_EXACT = frozenset(
    {
        "application/json",
        "application/xml",
        "application/javascript",
        "application/x-javascript",
        "application/ecmascript",
        "application/xhtml+xml",
        "image/svg+xml",
    }
)
_NEVER_PREFIXES = ("image/", "video/", "audio/")
# Streamed to the browser event by event; buffering in a compressor stalls it
_NEVER_EXACT = frozenset({"text/event-stream"})


def parse_accept_encoding(header: Optional[str]) -> Dict[str, float]:
    prefs: Dict[str, float] = {}
    for raw in (header or "").split(","):
        parts = [p.strip() for p in raw.split(";")]
        coding = parts[0].lower()
        if not coding:
            continue
        q = 1.0
        for param in parts[1:]:
            name, _, value = param.partition("=")
            if name.strip().lower() == "q":
                try:
                    q = float(value.strip())
                except ValueError:
                    q = 0.0
        prefs[coding] = q
    return prefs


def choose_encoding(header: Optional[str]) -> Optional[str]:
    prefs = parse_accept_encoding(header)
    wildcard = prefs.get("*", 0.0)
    for coding in SUPPORTED_ENCODINGS:
        q = prefs[coding] if coding in prefs else wildcard
        if q > 0:
            return coding
    return None


def is_compressible(content_type: Optional[str]) -> bool:
    mtype = (content_type or "").split(";", 1)[0].strip().lower()
    if not mtype or mtype in _NEVER_EXACT:
        return False
    if mtype in _COMPRESSIBLE_EXACT:
        return True
    if mtype.startswith(_NEVER_PREFIXES):
        return False
    return (
        mtype.startswith("text/")
        or mtype.endswith("+json")
        or mtype.endswith("+xml")
    )


class _ContentTypeGate:
    """
    Let only text-like responses reach Starlette's compression path.

    Starlette excludes a fixed list of binary types; we invert that into an
    allow-list so unknown binary payloads (octet-stream, pdf) are left alone.

    Responses relayed by BaseHTTPMiddleware always arrive as a stream, which
    Starlette compresses regardless of size. Leading chunks are held back
    until minimum_size is reached or the body ends, so the size threshold
    holds for them too.
    """

    _held = b""

    async def send_with_compression(self, message: Message) -> None:
        message_type = message["type"]
        if message_type == "http.response.start":
            content_type = Headers(raw=message["headers"]).get("content-type")
            if not is_compressible(content_type):
                # Body messages now pass straight through
                self.content_type_is_excluded = True
                await self.send(message)
                return
        elif message_type == "http.response.body" and not self.started and not self._passes_through():
            body = self._held + message.get("body", b"")
            if message.get("more_body", False) and len(body) < self.minimum_size:
                self._held = body
                return
            self._held = b""
            message = {**message, "body": body}
        await super().send_with_compression(message)

    def _passes_through(self) -> bool:
        return self.content_type_is_excluded or self.content_encoding_set or self.partial_response


class PassThroughResponder(_ContentTypeGate, IdentityResponder):
    """No usable encoding: body untouched, Vary still set on compressible responses."""


class GZipEncodingResponder(_ContentTypeGate, GZipResponder):
    pass


class DeflateResponder(GZipEncodingResponder):
    content_encoding = "deflate"

    @property
    def compressor(self):
        # zlib wrapper instead of the gzip header GZipResponder asks for
        if self._compressor is None:
            self._compressor = zlib.compressobj(self.compresslevel, zlib.DEFLATED, zlib.MAX_WBITS)
        return self._compressor


RESPONDERS: Dict[str, Type[GZipResponder]] = {
    "gzip": GZipEncodingResponder,
    "deflate": DeflateResponder,
}


class CompressionMiddleware:
    """
    Pure ASGI, like GZipMiddleware, so streamed bodies are compressed chunk
    by chunk instead of being buffered.

    Status codes are never consulted: a large error page is compressed like
    any other body (206 partial content is the one exception Starlette keeps).
    """

    def __init__(self, app: ASGIApp, minimum_size: Optional[int] = None, compresslevel: int = 9) -> None:
        self.app = app
        self.minimum_size = minimum_size if minimum_size is not None else get_settings().COMPRESSION_MIN_SIZE
        self.compresslevel = compresslevel

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        encoding = choose_encoding(Headers(scope=scope).get("accept-encoding"))
        responder_cls = RESPONDERS.get(encoding) if encoding else None
        if responder_cls is None:
            responder: ASGIApp = PassThroughResponder(self.app, self.minimum_size)
        else:
            responder = responder_cls(self.app, self.minimum_size, compresslevel=self.compresslevel)
        await responder(scope, receive, send)
