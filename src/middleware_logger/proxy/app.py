"""Starlette application assembly."""

from __future__ import annotations

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route
from starlette.types import Receive, Scope, Send

from middleware_logger import __version__
from middleware_logger.proxy.handler import ProxyHandler


class ProxyEndpoint:
    """Raw ASGI endpoint, so the route accepts every request method."""

    def __init__(self, handler: ProxyHandler) -> None:
        self._handler = handler

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive, send)
        response = await self._handler.handle(request)
        await response(scope, receive, send)


def create_app(handler: ProxyHandler) -> Starlette:
    """Create the Starlette app that serves every non-CONNECT request."""

    async def health(request: Request) -> JSONResponse:
        """Health check endpoint."""
        return JSONResponse({"status": "ok", "version": __version__})

    routes = [
        Route("/_middleware_logger/health", health, methods=["GET"]),
        # Catch-all proxy route, must be last
        Route("/{path:path}", ProxyEndpoint(handler)),
    ]

    return Starlette(routes=routes)
