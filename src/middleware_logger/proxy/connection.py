"""HTTP/1.1 connection driver.

Parses inbound requests with h11. CONNECT requests are handed off as raw
sockets to the tunnel callback; every other request is served by an ASGI
application, with keep-alive between requests on the same connection.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from http import HTTPStatus
from typing import Any
from urllib.parse import unquote, urlsplit

import h11

logger = logging.getLogger(__name__)

READ_SIZE = 65536

Scope = dict[str, Any]
Message = dict[str, Any]
ASGIApp = Callable[
    [Scope, Callable[[], Awaitable[Message]], Callable[[Message], Awaitable[None]]],
    Awaitable[None],
]
ConnectHandler = Callable[[str, bytes, asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]


def split_target(target: bytes) -> tuple[bytes, bytes]:
    """Split a request target into raw path and query, accepting absolute-form."""
    if not target.startswith(b"/"):
        parts = urlsplit(target)
        path = parts.path or b"/"
        return path, parts.query
    path, _, query = target.partition(b"?")
    return path, query


def _reason(status_code: int) -> bytes:
    try:
        return HTTPStatus(status_code).phrase.encode("ascii")
    except ValueError:
        return b""


class HTTPConnection:
    """Serves one accepted client connection."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        app: ASGIApp,
        on_connect: ConnectHandler,
        *,
        scheme: str = "http",
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._app = app
        self._on_connect = on_connect
        self._scheme = scheme
        self._conn = h11.Connection(h11.SERVER)
        self._read_lock = asyncio.Lock()
        self._handed_off = False

    async def run(self) -> None:
        """Serve requests until the client closes or the connection is handed off."""
        try:
            while True:
                event = await self._next_event()
                if isinstance(event, h11.ConnectionClosed):
                    break
                if not isinstance(event, h11.Request):
                    break

                if event.method == b"CONNECT":
                    await self._connect(event)
                    return

                keep_going = await self._serve(event)
                if not keep_going or self._conn.our_state is h11.MUST_CLOSE:
                    break
                try:
                    self._conn.start_next_cycle()
                except h11.LocalProtocolError:
                    break
        except h11.RemoteProtocolError as e:
            logger.warning("Bad request from client: %s", e)
            await self._send_simple(e.error_status_hint, str(e))
        except ConnectionError as e:
            logger.debug("Client connection error: %s", e)
        finally:
            if not self._handed_off:
                await self._close()

    async def _next_event(self) -> Any:
        async with self._read_lock:
            while True:
                event = self._conn.next_event()
                if event is not h11.NEED_DATA:
                    return event
                data = await self._reader.read(READ_SIZE)
                self._conn.receive_data(data)

    async def _connect(self, request: h11.Request) -> None:
        # Bytes already buffered past the request head belong to the tunnel
        head, _ = self._conn.trailing_data
        self._handed_off = True
        await self._on_connect(
            request.target.decode("latin-1"), bytes(head), self._reader, self._writer
        )

    def _scope(self, request: h11.Request, state: dict[str, Any]) -> Scope:
        raw_path, query = split_target(request.target)
        return {
            "type": "http",
            "asgi": {"version": "3.0", "spec_version": "2.3"},
            "http_version": request.http_version.decode("ascii"),
            "method": request.method.decode("ascii"),
            "scheme": self._scheme,
            "path": unquote(raw_path.decode("latin-1")),
            "raw_path": raw_path,
            "query_string": query,
            "root_path": "",
            "headers": [(name.lower(), value) for name, value in request.headers],
            "client": self._writer.get_extra_info("peername"),
            "server": self._writer.get_extra_info("sockname"),
            "state": state,
        }

    async def _serve(self, request: h11.Request) -> bool:
        """Run the app for one request. Returns False if the connection must close."""
        body_done = False
        response_started = False
        response_done = False
        disconnected = asyncio.Event()
        # The app records the exchange id here
        state: dict[str, Any] = {}

        async def receive() -> Message:
            nonlocal body_done
            if not body_done:
                if self._conn.client_is_waiting_for_100_continue and not response_started:
                    interim = h11.InformationalResponse(
                        status_code=100, headers=[], reason=b"Continue"
                    )
                    self._writer.write(self._conn.send(interim))
                    await self._writer.drain()
                try:
                    event = await self._next_event()
                except (h11.RemoteProtocolError, ConnectionError) as e:
                    logger.debug("Request body cut off: %s", e)
                    event = None
                if isinstance(event, h11.Data):
                    return {"type": "http.request", "body": bytes(event.data), "more_body": True}
                body_done = True
                if isinstance(event, h11.EndOfMessage):
                    return {"type": "http.request", "body": b"", "more_body": False}
                disconnected.set()
                return {"type": "http.disconnect"}
            await disconnected.wait()
            return {"type": "http.disconnect"}

        async def send(message: Message) -> None:
            nonlocal response_started, response_done
            if message["type"] == "http.response.start":
                status = message["status"]
                response = h11.Response(
                    status_code=status,
                    headers=list(message.get("headers", [])),
                    reason=_reason(status),
                )
                self._writer.write(self._conn.send(response))
                response_started = True
            elif message["type"] == "http.response.body":
                body = message.get("body", b"")
                if body:
                    self._writer.write(self._conn.send(h11.Data(data=body)))
                if not message.get("more_body", False):
                    self._writer.write(self._conn.send(h11.EndOfMessage()))
                    response_done = True
            await self._writer.drain()

        try:
            await self._app(self._scope(request, state), receive, send)
        except (ConnectionError, h11.LocalProtocolError) as e:
            logger.warning(
                "[%s] Client connection lost while serving %s: %s",
                state.get("exchange_id", "-"),
                request.target.decode("latin-1"),
                e,
            )
            return False
        except Exception:
            logger.exception(
                "[%s] Error serving %s %s",
                state.get("exchange_id", "-"),
                request.method.decode("ascii"),
                request.target.decode("latin-1"),
            )
            if not response_started:
                await self._send_simple(HTTPStatus.BAD_GATEWAY, "Proxy Error")
            # A response already under way cannot be retracted
            return False
        finally:
            disconnected.set()

        if not response_done:
            return False

        # Discard any request body the app did not read
        while self._conn.their_state is h11.SEND_BODY:
            event = await self._next_event()
            if isinstance(event, h11.ConnectionClosed):
                return False
        return True

    async def _send_simple(self, status: int, text: str) -> None:
        body = text.encode("utf-8")
        headers = [
            (b"content-type", b"text/plain; charset=utf-8"),
            (b"content-length", str(len(body)).encode("ascii")),
            (b"connection", b"close"),
        ]
        with contextlib.suppress(h11.LocalProtocolError, ConnectionError):
            response = h11.Response(status_code=status, headers=headers, reason=_reason(status))
            self._writer.write(self._conn.send(response))
            self._writer.write(self._conn.send(h11.Data(data=body)))
            self._writer.write(self._conn.send(h11.EndOfMessage()))
            await self._writer.drain()

    async def _close(self) -> None:
        self._writer.close()
        with contextlib.suppress(ConnectionError, OSError):
            await self._writer.wait_closed()
