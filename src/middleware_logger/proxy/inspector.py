"""Inspection path for one direction of an exchange.

The forwarding path hands every chunk to :meth:`BodyInspector.offer`, which
only enqueues it. A background task owned by the inspector accumulates the copy
(up to a cap), feeds event streams to the reassembler as they arrive, and turns
the finished body into display records. Nothing here can delay or alter the
bytes being forwarded.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from middleware_logger import codec
from middleware_logger.config import ProxyConfig
from middleware_logger.conversation import (
    extract_request_turns,
    extract_response_turns,
    extract_system_prompts,
)
from middleware_logger.models import (
    BinaryMarker,
    ConversationTurn,
    Direction,
    DisplayRecord,
    RecordKind,
)
from middleware_logger.proxy.reassembly import StreamReassembler

logger = logging.getLogger(__name__)

RecordSink = Callable[[DisplayRecord], Awaitable[None]]

EVENT_STREAM_TYPE = "text/event-stream"


def is_identity_encoding(content_encoding: str | None) -> bool:
    return not content_encoding or content_encoding.strip().lower() == "identity"


class BodyInspector:
    """Accumulates and interprets one body while it is being forwarded."""

    def __init__(
        self,
        exchange_id: str,
        direction: Direction,
        *,
        config: ProxyConfig,
        reassembler: StreamReassembler,
        emit: RecordSink,
        buffer: bytearray | None = None,
        content_type: str | None = None,
        content_encoding: str | None = None,
    ) -> None:
        self._exchange_id = exchange_id
        self._direction = direction
        self._config = config
        self._reassembler = reassembler
        self._emit = emit
        self._buffer = buffer if buffer is not None else bytearray()
        self._content_encoding = content_encoding
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._closed = False
        self._complete = True
        self._capped = False
        self._received = 0

        self._is_event_stream = (
            direction is Direction.RESPONSE
            and config.reassemble_streams
            and EVENT_STREAM_TYPE in (content_type or "").lower()
        )
        # Compressed streams can only be decoded once the whole body is in
        self._live_stream = self._is_event_stream and is_identity_encoding(content_encoding)
        self._shown = 0

    @property
    def buffer(self) -> bytearray:
        return self._buffer

    @property
    def capped(self) -> bool:
        """Whether the copy stopped growing at ``max_body_bytes``."""
        return self._capped

    @property
    def received(self) -> int:
        """Total bytes offered, including any past the cap."""
        return self._received

    def start(self) -> asyncio.Task[None]:
        """Start the background task. Returns it so the owner can track it."""
        if self._task is None:
            self._task = asyncio.create_task(
                self._run(), name=f"inspect-{self._direction}-{self._exchange_id}"
            )
        return self._task

    def offer(self, chunk: bytes) -> None:
        """Queue a forwarded chunk for inspection. Never blocks."""
        if not self._closed and chunk:
            self._queue.put_nowait(chunk)

    def close(self, *, complete: bool = True) -> None:
        """Mark end of body. The task processes what it has and exits.

        A body cut off by its sender (``complete=False``) is discarded unprocessed.
        """
        if not self._closed:
            self._closed = True
            self._complete = complete
            self._queue.put_nowait(None)

    async def wait_closed(self) -> None:
        if self._task is not None:
            await self._task

    async def _run(self) -> None:
        try:
            while True:
                chunk = await self._queue.get()
                if chunk is None:
                    break
                self._accumulate(chunk)
                if self._live_stream:
                    await self._feed_stream(chunk)
            if self._complete:
                await self._finish()
            else:
                logger.debug(
                    "[%s] %s body cut off after %d bytes, not inspected",
                    self._exchange_id,
                    self._direction.capitalize(),
                    self._received,
                )
        except Exception:
            logger.exception(
                "[%s] Inspection of %s body failed", self._exchange_id, self._direction
            )
        finally:
            if self._direction is Direction.RESPONSE:
                self._reassembler.evict(self._exchange_id)

    def _accumulate(self, chunk: bytes) -> None:
        self._received += len(chunk)
        room = self._config.max_body_bytes - len(self._buffer)
        if room >= len(chunk):
            self._buffer.extend(chunk)
            return
        if room > 0:
            self._buffer.extend(chunk[:room])
        if not self._capped:
            self._capped = True
            logger.warning(
                "[%s] %s body exceeds %d bytes, inspecting the first %d only",
                self._exchange_id,
                self._direction.capitalize(),
                self._config.max_body_bytes,
                self._config.max_body_bytes,
            )

    async def _record(
        self,
        kind: RecordKind,
        *,
        text: str | None = None,
        turn: ConversationTurn | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        await self._emit(
            DisplayRecord(
                exchange_id=self._exchange_id,
                direction=self._direction,
                kind=kind,
                text=text,
                turn=turn,
                detail=detail or {},
            )
        )

    async def _feed_stream(self, raw: bytes, *, final: bool = False) -> None:
        merged, complete = self._reassembler.feed(self._exchange_id, raw, final=final)
        await self._publish_stream(merged, complete)

    async def _publish_stream(self, merged: str, complete: bool) -> None:
        if len(merged) > self._shown:
            await self._record(RecordKind.STREAM_DELTA, text=merged[self._shown :])
            self._shown = len(merged)
        if complete:
            await self._record(
                RecordKind.STREAM_COMPLETE, text=merged, detail={"chars": len(merged)}
            )
            self._shown = 0

    async def _finish(self) -> None:
        logger.debug(
            "[%s] %s ended, %d bytes received, %d kept",
            self._exchange_id,
            self._direction.capitalize(),
            self._received,
            len(self._buffer),
        )
        if self._is_event_stream:
            await self._finish_stream()
            return
        if not self._buffer:
            return

        body = bytes(self._buffer)
        if self._config.chat_mode:
            await self._publish_chat(body)
        elif self._config.log_body:
            text = await asyncio.to_thread(
                codec.render_body,
                body,
                self._content_encoding,
                self._config.display_max_chars,
                self._config.max_body_bytes,
            )
            await self._record(
                RecordKind.RAW_BODY,
                text=text,
                detail={"bytes": self._received, "capped": self._capped},
            )

    async def _finish_stream(self) -> None:
        if self._live_stream:
            flushed = self._reassembler.flush(self._exchange_id)
            if flushed is not None:
                await self._publish_stream(*flushed)
            return
        if not self._buffer:
            return
        decoded = await asyncio.to_thread(
            codec.decode, bytes(self._buffer), self._content_encoding, self._config.max_body_bytes
        )
        if isinstance(decoded, BinaryMarker):
            await self._record(RecordKind.DIAGNOSTIC, text=str(decoded))
            return
        await self._feed_stream(decoded.encode("utf-8"), final=True)

    async def _publish_chat(self, body: bytes) -> None:
        decoded = await asyncio.to_thread(
            codec.decode, body, self._content_encoding, self._config.max_body_bytes
        )
        if isinstance(decoded, BinaryMarker):
            await self._record(
                RecordKind.RAW_BODY, text=str(decoded), detail={"bytes": self._received}
            )
            return

        if self._direction is Direction.REQUEST:
            prompts, turns = await asyncio.to_thread(self._extract_request, decoded)
            for prompt in prompts:
                await self._record(RecordKind.SYSTEM_PROMPT, text=prompt)
            await self._record(
                RecordKind.DIAGNOSTIC,
                text=f"Request: {len(decoded)} bytes",
                detail={"bytes": len(decoded), "turns": len(turns)},
            )
        else:
            turns = await asyncio.to_thread(extract_response_turns, decoded)

        for turn in turns:
            await self._record(RecordKind.TURN, turn=turn)

    def _extract_request(self, text: str) -> tuple[list[str], list[ConversationTurn]]:
        return (
            extract_system_prompts(text),
            extract_request_turns(text, verbose=self._config.verbose),
        )
