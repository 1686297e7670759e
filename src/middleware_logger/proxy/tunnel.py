"""Opaque CONNECT tunnels."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable

from middleware_logger.errors import UpstreamUnreachable

logger = logging.getLogger(__name__)

CONNECT_ESTABLISHED = b"HTTP/1.1 200 Connection Established\r\n\r\n"
READ_SIZE = 65536
DEFAULT_TUNNEL_PORT = 443


def parse_authority(authority: str, default_port: int = DEFAULT_TUNNEL_PORT) -> tuple[str, int]:
    """Split a CONNECT target (``host:port``, ``[v6]:port`` or bare host).

    Raises:
        ValueError: the port is not a number.
    """
    if authority.startswith("["):
        host, _, rest = authority[1:].partition("]")
        port = rest[1:] if rest.startswith(":") else ""
    else:
        host, _, port = authority.rpartition(":")
        if not host:
            host, port = port, ""
    return host, int(port) if port else default_port


async def open_tunnel(
    authority: str, *, exchange_id: str | None = None, timeout: float | None = None
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Open the upstream leg of a tunnel.

    Raises:
        UpstreamUnreachable: the target could not be parsed or connected to.
    """
    try:
        host, port = parse_authority(authority)
        return await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except (OSError, ValueError, TimeoutError) as e:
        raise UpstreamUnreachable(
            f"CONNECT to {authority} failed: {e}", exchange_id=exchange_id
        ) from e


async def _pipe(src: asyncio.StreamReader, dst: asyncio.StreamWriter) -> None:
    with contextlib.suppress(ConnectionError):
        while True:
            data = await src.read(READ_SIZE)
            if not data:
                break
            dst.write(data)
            await dst.drain()


async def _close(writer: asyncio.StreamWriter) -> None:
    writer.close()
    with contextlib.suppress(ConnectionError, OSError):
        await writer.wait_closed()


async def splice(
    client: tuple[asyncio.StreamReader, asyncio.StreamWriter],
    upstream: tuple[asyncio.StreamReader, asyncio.StreamWriter],
) -> None:
    """Relay bytes both ways until either side closes, then close both."""
    client_reader, client_writer = client
    upstream_reader, upstream_writer = upstream

    t1 = asyncio.create_task(_pipe(client_reader, upstream_writer))
    t2 = asyncio.create_task(_pipe(upstream_reader, client_writer))
    try:
        _, pending = await asyncio.wait([t1, t2], return_when=asyncio.FIRST_COMPLETED)
        for t in pending:
            t.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await t
    finally:
        t1.cancel()
        t2.cancel()
        await _close(upstream_writer)
        await _close(client_writer)


async def run_tunnel(
    authority: str,
    client_reader: asyncio.StreamReader,
    client_writer: asyncio.StreamWriter,
    head: bytes = b"",
    *,
    exchange_id: str,
    timeout: float | None = None,
    on_established: Callable[[float], Awaitable[None]] | None = None,
) -> float:
    """Handle a CONNECT request end to end.

    ``head`` holds bytes the client sent after the CONNECT request head, which
    belong to the tunnelled stream.

    Returns:
        Milliseconds taken to establish the tunnel.

    Raises:
        UpstreamUnreachable: the client socket has been closed without a
            ``200 Connection Established`` reply.
    """
    start_time = time.monotonic()
    try:
        upstream_reader, upstream_writer = await open_tunnel(
            authority, exchange_id=exchange_id, timeout=timeout
        )
    except UpstreamUnreachable:
        await _close(client_writer)
        raise

    duration_ms = (time.monotonic() - start_time) * 1000
    try:
        client_writer.write(CONNECT_ESTABLISHED)
        await client_writer.drain()
        if head:
            upstream_writer.write(head)
            await upstream_writer.drain()
    except ConnectionError as e:
        logger.error("[%s] Client socket error: %s", exchange_id, e)
        await _close(upstream_writer)
        await _close(client_writer)
        return duration_ms

    logger.debug("[%s] CONNECT established (%.0fms)", exchange_id, duration_ms)
    if on_established:
        await on_established(duration_ms)
    await splice((client_reader, client_writer), (upstream_reader, upstream_writer))
    return duration_ms
