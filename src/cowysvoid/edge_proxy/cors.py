"""Uniform cross-origin policy for every outgoing response."""

from __future__ import annotations

from starlette.types import ASGIApp, Message, Receive, Scope, Send
from starlette.datastructures import MutableHeaders


CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


def apply_cors(headers: MutableHeaders) -> None:
    """Set (overwrite) the CORS headers; status and body are never touched."""
    for name, value in CORS_HEADERS.items():
        headers[name] = value


class CORSWrapperMiddleware:
    """ASGI middleware stamping CORS headers on every response start message.

    Preflight (``OPTIONS`` on any path) is answered here with an empty 204 and
    never reaches the router.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        if scope["method"] == "OPTIONS":
            await self._preflight(send)
            return

        async def send_with_cors(message: Message) -> None:
            if message["type"] == "http.response.start":
                apply_cors(MutableHeaders(scope=message))
            await send(message)

        await self.app(scope, receive, send_with_cors)

    async def _preflight(self, send: Send) -> None:
        start: Message = {"type": "http.response.start", "status": 204, "headers": []}
        apply_cors(MutableHeaders(scope=start))
        await send(start)
        await send({"type": "http.response.body", "body": b""})
