"""Listening socket, connection dispatch and lifecycle."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import ssl
from types import TracebackType

import httpx

from middleware_logger.config import ProxyConfig
from middleware_logger.errors import BindError, UpstreamUnreachable
from middleware_logger.models import Direction, DisplayRecord, RecordKind, new_exchange_id
from middleware_logger.proxy.app import create_app
from middleware_logger.proxy.connection import HTTPConnection
from middleware_logger.proxy.handler import ProxyHandler, RecordCallback
from middleware_logger.proxy.reassembly import StreamReassembler
from middleware_logger.proxy.tunnel import run_tunnel

logger = logging.getLogger(__name__)

# Seconds open connections get to wind down on close before being cancelled
SHUTDOWN_GRACE = 5.0


def build_tls_context(config: ProxyConfig) -> ssl.SSLContext:
    """Server-side TLS context for the local listener.

    Raises:
        BindError: no certificate configured, or it cannot be loaded.
    """
    if not config.tls_certfile:
        raise BindError("Local TLS requires a certificate (--cert) and key (--key)")
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    try:
        context.load_cert_chain(config.tls_certfile, config.tls_keyfile)
    except (OSError, ssl.SSLError) as e:
        raise BindError(f"Cannot load TLS certificate {config.tls_certfile}: {e}") from e
    return context


class ProxyServer:
    """The proxy engine: accepts connections and owns all per-exchange state."""

    def __init__(
        self,
        config: ProxyConfig,
        on_record: RecordCallback | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._on_record = on_record
        self._reassembler = StreamReassembler()
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.read_timeout, connect=config.connect_timeout)
        )
        self._handler = ProxyHandler(
            config=config,
            http_client=self._client,
            reassembler=self._reassembler,
            on_record=on_record,
        )
        self._app = create_app(self._handler)
        self._server: asyncio.Server | None = None
        self._connections: dict[asyncio.Task[None], asyncio.StreamWriter] = {}

    @property
    def handler(self) -> ProxyHandler:
        return self._handler

    @property
    def reassembler(self) -> StreamReassembler:
        return self._reassembler

    @property
    def port(self) -> int:
        """The bound port (useful when configured with port 0)."""
        if self._server is None or not self._server.sockets:
            raise RuntimeError("Server not started. Call start() first.")
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        """Bind the listening socket.

        Raises:
            BindError: the address is unavailable or TLS setup failed.
        """
        tls = build_tls_context(self._config) if self._config.local_tls else None
        try:
            self._server = await asyncio.start_server(
                self._accept, self._config.host, self._config.port, ssl=tls
            )
        except OSError as e:
            raise BindError(
                f"Cannot listen on {self._config.host}:{self._config.port}: {e}"
            ) from e
        logger.info("Listening on %s:%d", self._config.host, self.port)

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        assert self._server is not None
        await self._server.serve_forever()

    async def close(self) -> None:
        """Stop accepting, tear down open connections and release resources."""
        if self._server is not None:
            self._server.close()
        # Closing the client sockets ends idle keep-alive connections and tunnels
        for writer in list(self._connections.values()):
            writer.close()
        if self._connections:
            _, pending = await asyncio.wait(list(self._connections), timeout=SHUTDOWN_GRACE)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        if self._server is not None:
            with contextlib.suppress(Exception):
                await self._server.wait_closed()
            self._server = None
        await self._handler.drain()
        self._reassembler.clear()
        await self._client.aclose()

    async def __aenter__(self) -> ProxyServer:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def _accept(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections[task] = writer
        try:
            connection = HTTPConnection(
                reader,
                writer,
                self._app,
                self._tunnel,
                scheme="https" if self._config.local_tls else "http",
            )
            await connection.run()
        except Exception:
            logger.exception(
                "Unhandled error on connection from %s", writer.get_extra_info("peername")
            )
        finally:
            if task is not None:
                self._connections.pop(task, None)

    async def _tunnel(
        self,
        authority: str,
        head: bytes,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        exchange_id = new_exchange_id()
        logger.info("[%s] CONNECT %s", exchange_id, authority)

        async def established(duration_ms: float) -> None:
            await self._emit(
                DisplayRecord(
                    exchange_id=exchange_id,
                    direction=Direction.REQUEST,
                    kind=RecordKind.TUNNEL,
                    text=authority,
                    detail={"duration_ms": duration_ms},
                )
            )

        try:
            await run_tunnel(
                authority,
                reader,
                writer,
                head,
                exchange_id=exchange_id,
                timeout=self._config.connect_timeout,
                on_established=established,
            )
        except UpstreamUnreachable as e:
            logger.error("[%s] CONNECT error: %s", exchange_id, e)
            await self._emit(
                DisplayRecord(
                    exchange_id=exchange_id,
                    direction=Direction.REQUEST,
                    kind=RecordKind.DIAGNOSTIC,
                    text=str(e),
                    detail={"authority": authority},
                )
            )

    async def _emit(self, record: DisplayRecord) -> None:
        if self._on_record:
            with contextlib.suppress(Exception):
                await self._on_record(record)
