"""Tests for CONNECT tunnelling over real loopback sockets."""

from __future__ import annotations

import asyncio
import socket
from collections.abc import AsyncGenerator
from typing import Any

import pytest

from middleware_logger.config import ProxyConfig
from middleware_logger.errors import UpstreamUnreachable
from middleware_logger.models import RecordKind
from middleware_logger.proxy.server import ProxyServer
from middleware_logger.proxy.tunnel import CONNECT_ESTABLISHED, open_tunnel, parse_authority


def _closed_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def _connect_request(authority: str) -> bytes:
    return f"CONNECT {authority} HTTP/1.1\r\nHost: {authority}\r\n\r\n".encode()


@pytest.fixture
async def echo_server() -> AsyncGenerator[int, None]:
    """A loopback server that echoes every byte back."""

    async def echo(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        while data := await reader.read(65536):
            writer.write(data)
            await writer.drain()
        writer.close()

    server = await asyncio.start_server(echo, "127.0.0.1", 0)
    yield server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()


@pytest.fixture
async def proxy(collector: Any) -> AsyncGenerator[ProxyServer, None]:
    config = ProxyConfig(host="127.0.0.1", port=0, connect_timeout=5.0)
    async with ProxyServer(config, on_record=collector) as server:
        yield server


class TestParseAuthority:
    def test_host_and_port(self) -> None:
        assert parse_authority("api.anthropic.com:443") == ("api.anthropic.com", 443)

    def test_default_port(self) -> None:
        assert parse_authority("example.com") == ("example.com", 443)

    def test_ipv6(self) -> None:
        assert parse_authority("[::1]:8443") == ("::1", 8443)
        assert parse_authority("[::1]") == ("::1", 443)

    def test_bad_port(self) -> None:
        with pytest.raises(ValueError):
            parse_authority("example.com:https")


class TestOpenTunnel:
    async def test_refused_raises_unreachable(self) -> None:
        with pytest.raises(UpstreamUnreachable) as exc_info:
            await open_tunnel(f"127.0.0.1:{_closed_port()}", exchange_id="ex1", timeout=5)
        assert exc_info.value.exchange_id == "ex1"

    async def test_unparseable_authority(self) -> None:
        with pytest.raises(UpstreamUnreachable):
            await open_tunnel("127.0.0.1:notaport")


class TestConnectThroughProxy:
    async def test_unreachable_target_closes_without_200(
        self, proxy: ProxyServer, collector: Any
    ) -> None:
        reader, writer = await asyncio.open_connection("127.0.0.1", proxy.port)
        writer.write(_connect_request(f"127.0.0.1:{_closed_port()}"))
        await writer.drain()

        data = await asyncio.wait_for(reader.read(), timeout=5)
        writer.close()

        assert b"200" not in data
        assert data == b""

    async def test_tunnel_relays_both_ways(
        self, proxy: ProxyServer, echo_server: int, collector: Any
    ) -> None:
        reader, writer = await asyncio.open_connection("127.0.0.1", proxy.port)
        writer.write(_connect_request(f"127.0.0.1:{echo_server}"))
        await writer.drain()

        status = await asyncio.wait_for(
            reader.readexactly(len(CONNECT_ESTABLISHED)), timeout=5
        )
        assert status == CONNECT_ESTABLISHED

        payload = bytes(range(256)) * 4
        writer.write(payload)
        await writer.drain()
        echoed = await asyncio.wait_for(reader.readexactly(len(payload)), timeout=5)
        assert echoed == payload

        writer.close()
        await writer.wait_closed()

        tunnels = collector.of_kind(RecordKind.TUNNEL)
        assert tunnels[0].text == f"127.0.0.1:{echo_server}"

    async def test_bytes_sent_with_connect_head_are_forwarded(
        self, proxy: ProxyServer, echo_server: int
    ) -> None:
        reader, writer = await asyncio.open_connection("127.0.0.1", proxy.port)
        writer.write(_connect_request(f"127.0.0.1:{echo_server}") + b"early bytes")
        await writer.drain()

        expected = CONNECT_ESTABLISHED + b"early bytes"
        data = await asyncio.wait_for(reader.readexactly(len(expected)), timeout=5)
        assert data == expected

        writer.close()
        await writer.wait_closed()

    async def test_upstream_close_ends_tunnel(self, proxy: ProxyServer) -> None:
        async def hang_up(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            writer.write(b"bye")
            await writer.drain()
            writer.close()

        upstream = await asyncio.start_server(hang_up, "127.0.0.1", 0)
        port = upstream.sockets[0].getsockname()[1]
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", proxy.port)
            writer.write(_connect_request(f"127.0.0.1:{port}"))
            await writer.drain()

            data = await asyncio.wait_for(reader.read(), timeout=5)
            assert data == CONNECT_ESTABLISHED + b"bye"
            writer.close()
        finally:
            upstream.close()
            await upstream.wait_closed()
