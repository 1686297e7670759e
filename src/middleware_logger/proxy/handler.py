"""Core request handler: receive -> forward -> mirror -> inspect."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from http import HTTPStatus

import httpx
from starlette.requests import ClientDisconnect, Request
from starlette.responses import Response, StreamingResponse

from middleware_logger.config import ProxyConfig
from middleware_logger.errors import UpstreamUnreachable
from middleware_logger.models import Direction, DisplayRecord, Exchange, RecordKind
from middleware_logger.proxy.inspector import BodyInspector
from middleware_logger.proxy.reassembly import StreamReassembler

logger = logging.getLogger(__name__)

RecordCallback = Callable[[DisplayRecord], Awaitable[None]]

# Hop-by-hop headers, which describe one connection rather than the message
HOP_BY_HOP_HEADERS = frozenset(
    {
        b"connection",
        b"keep-alive",
        b"proxy-authenticate",
        b"proxy-authorization",
        b"proxy-connection",
        b"te",
        b"trailers",
        b"transfer-encoding",
        b"upgrade",
    }
)

# Removed from forwarded requests. Host is rewritten to the upstream authority and
# Expect is answered by the client connection itself.
STRIP_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {b"host", b"expect"}


def request_target(request: Request) -> str:
    """Path and query exactly as the client sent them."""
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else request.url.path
    query = request.scope.get("query_string", b"")
    if query:
        path += "?" + query.decode("latin-1")
    return path


def forward_request_headers(
    raw_headers: list[tuple[bytes, bytes]], authority: str
) -> list[tuple[bytes, bytes]]:
    """Copy request headers for the upstream leg, rewriting Host."""
    headers = [(k, v) for k, v in raw_headers if k.lower() not in STRIP_REQUEST_HEADERS]
    headers.insert(0, (b"host", authority.encode("latin-1")))
    return headers


def forward_response_headers(raw_headers: list[tuple[bytes, bytes]]) -> list[tuple[bytes, bytes]]:
    """Copy response headers for the client leg.

    Content-Encoding and Content-Length stay: the body is relayed undecoded.
    """
    return [(k.lower(), v) for k, v in raw_headers if k.lower() not in HOP_BY_HOP_HEADERS]


def _has_body(request: Request) -> bool:
    return "content-length" in request.headers or "transfer-encoding" in request.headers


class ProxyHandler:
    """Forwards each request to the fixed upstream and mirrors bodies for inspection."""

    def __init__(
        self,
        config: ProxyConfig,
        http_client: httpx.AsyncClient,
        reassembler: StreamReassembler | None = None,
        on_record: RecordCallback | None = None,
    ) -> None:
        self._config = config
        self._client = http_client
        self._reassembler = reassembler if reassembler is not None else StreamReassembler()
        self._on_record = on_record
        self._inspections: set[asyncio.Task[None]] = set()

    @property
    def reassembler(self) -> StreamReassembler:
        return self._reassembler

    async def handle(self, request: Request) -> Response:
        """Handle an incoming proxy request."""
        start_time = time.monotonic()
        exchange = Exchange(
            method=request.method,
            path=request_target(request),
            request_headers=dict(request.headers),
        )
        # Lets the connection driver tag its own log lines
        request.state.exchange_id = exchange.id

        await self._emit(
            DisplayRecord(
                exchange_id=exchange.id,
                direction=Direction.REQUEST,
                kind=RecordKind.EXCHANGE_START,
                detail={
                    "timestamp": exchange.timestamp.isoformat(),
                    "method": exchange.method,
                    "path": exchange.path,
                    "user_agent": request.headers.get("user-agent", "Unknown"),
                    "content_length": request.headers.get("content-length"),
                    "content_type": request.headers.get("content-type"),
                },
            )
        )

        request_inspector = self._inspector(
            exchange,
            Direction.REQUEST,
            content_type=request.headers.get("content-type"),
            content_encoding=request.headers.get("content-encoding"),
        )

        async def request_body() -> AsyncIterator[bytes]:
            complete = False
            try:
                async for chunk in request.stream():
                    if not chunk:
                        continue
                    if request_inspector:
                        request_inspector.offer(chunk)
                    yield chunk
                complete = True
            finally:
                if request_inspector:
                    request_inspector.close(complete=complete)

        upstream_request = httpx.Request(
            method=exchange.method,
            url=f"{self._config.upstream_base_url}{exchange.path}",
            headers=forward_request_headers(request.headers.raw, self._config.upstream_authority),
            content=request_body() if _has_body(request) else None,
        )

        try:
            upstream_response = await self._client.send(upstream_request, stream=True)
        except httpx.ConnectError as e:
            error = UpstreamUnreachable(
                f"Cannot reach {self._config.upstream_authority}: {e}", exchange_id=exchange.id
            )
            return self._error_response(exchange, error, HTTPStatus.BAD_GATEWAY)
        except httpx.TimeoutException as e:
            return self._error_response(exchange, e, HTTPStatus.GATEWAY_TIMEOUT)
        except httpx.HTTPError as e:
            return self._error_response(exchange, e, HTTPStatus.BAD_GATEWAY)
        except ClientDisconnect:
            exchange.error = "Client disconnected during request body"
            logger.warning("[%s] Client request error: disconnected mid-body", exchange.id)
            return Response(status_code=HTTPStatus.BAD_REQUEST)
        finally:
            # No-op once the body was sent in full
            if request_inspector:
                request_inspector.close(complete=False)

        return await self._relay_response(exchange, upstream_response, start_time)

    async def _relay_response(
        self,
        exchange: Exchange,
        upstream_response: httpx.Response,
        start_time: float,
    ) -> Response:
        exchange.status_code = upstream_response.status_code
        exchange.response_headers = dict(upstream_response.headers)
        duration_ms = (time.monotonic() - start_time) * 1000

        await self._emit(
            DisplayRecord(
                exchange_id=exchange.id,
                direction=Direction.RESPONSE,
                kind=RecordKind.RESPONSE_START,
                detail={
                    "status_code": upstream_response.status_code,
                    "reason": upstream_response.reason_phrase,
                    "duration_ms": duration_ms,
                    "content_length": upstream_response.headers.get("content-length"),
                    "content_type": upstream_response.headers.get("content-type"),
                },
            )
        )

        response_inspector = self._inspector(
            exchange,
            Direction.RESPONSE,
            content_type=upstream_response.headers.get("content-type"),
            content_encoding=upstream_response.headers.get("content-encoding"),
        )

        async def response_body() -> AsyncIterator[bytes]:
            try:
                async for chunk in upstream_response.aiter_raw():
                    if response_inspector:
                        response_inspector.offer(chunk)
                    yield chunk
            except httpx.HTTPError as e:
                # Headers are already on the wire; the connection gets dropped
                exchange.error = f"Upstream response error: {e}"
                logger.error("[%s] Proxy response error: %s", exchange.id, e)
                if response_inspector:
                    response_inspector.close(complete=False)
                raise
            finally:
                await upstream_response.aclose()
                if response_inspector:
                    response_inspector.close()
                else:
                    self._reassembler.evict(exchange.id)

        response = StreamingResponse(
            content=response_body(),
            status_code=upstream_response.status_code,
        )
        response.raw_headers = forward_response_headers(upstream_response.headers.raw)
        return response

    def _inspector(
        self,
        exchange: Exchange,
        direction: Direction,
        *,
        content_type: str | None,
        content_encoding: str | None,
    ) -> BodyInspector | None:
        if not self._config.inspect_bodies:
            return None
        inspector = BodyInspector(
            exchange.id,
            direction,
            config=self._config,
            reassembler=self._reassembler,
            emit=self._emit,
            buffer=exchange.request_body
            if direction is Direction.REQUEST
            else exchange.response_body,
            content_type=content_type,
            content_encoding=content_encoding,
        )
        task = inspector.start()
        self._inspections.add(task)
        task.add_done_callback(self._inspections.discard)
        return inspector

    def _error_response(
        self, exchange: Exchange, error: Exception, status: HTTPStatus
    ) -> Response:
        exchange.error = str(error)
        logger.error("[%s] Proxy request error: %s", exchange.id, error)
        return Response(
            content=json.dumps({"error": str(error)}),
            status_code=status,
            media_type="application/json",
        )

    async def drain(self) -> None:
        """Wait for in-flight inspections to finish."""
        while self._inspections:
            await asyncio.gather(*list(self._inspections), return_exceptions=True)

    async def _emit(self, record: DisplayRecord) -> None:
        """Hand a record to the presentation layer."""
        if self._on_record:
            with contextlib.suppress(Exception):
                await self._on_record(record)
