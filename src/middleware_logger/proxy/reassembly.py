"""Reassembly of streamed messages from server-sent events.

A :class:`StreamReassembler` is owned by one proxy instance. Each in-flight
event-stream response gets a :class:`ReassemblyState` keyed by its exchange id,
created on the first delivery and dropped as soon as a terminal event is seen
or the exchange ends. Every state is fed by a single inspection task, so events
for one exchange are processed in arrival order and never interleave with
another exchange's.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from middleware_logger.errors import MalformedEventPayload
from middleware_logger.models import StreamEvent
from middleware_logger.proxy.sse import parse_sse_events, split_complete_frames

logger = logging.getLogger(__name__)

DELTA_EVENT = "content_block_delta"
MAX_PENDING_CHARS = 1024 * 1024


class TerminalCondition(StrEnum):
    """Events that end a streamed message. Any one of them is sufficient."""

    MESSAGE_STOP = "message_stop"
    CONTENT_BLOCK_STOP = "content_block_stop"
    MESSAGE_DELTA_STOP_REASON = "message_delta"


def find_terminal_condition(events: list[StreamEvent]) -> TerminalCondition | None:
    """Check a batch of events against the completion rule, in rule order."""
    if any(e.event == TerminalCondition.MESSAGE_STOP for e in events):
        return TerminalCondition.MESSAGE_STOP
    if any(e.event == TerminalCondition.CONTENT_BLOCK_STOP for e in events):
        return TerminalCondition.CONTENT_BLOCK_STOP
    if any(
        e.event == TerminalCondition.MESSAGE_DELTA_STOP_REASON and "stop_reason" in (e.data or "")
        for e in events
    ):
        return TerminalCondition.MESSAGE_DELTA_STOP_REASON
    return None


def extract_delta_text(event: StreamEvent) -> str:
    """Return the text carried by a ``content_block_delta`` event.

    Raises:
        MalformedEventPayload: the event data is not a JSON object.
    """
    try:
        data: Any = json.loads(event.data or "{}")
    except json.JSONDecodeError as e:
        raise MalformedEventPayload(f"Invalid JSON in {event.event} data: {e}") from e
    if not isinstance(data, dict):
        raise MalformedEventPayload(f"Unexpected {event.event} data: {type(data).__name__}")
    delta = data.get("delta")
    if not isinstance(delta, dict):
        return ""
    text = delta.get("text")
    return text if isinstance(text, str) else ""


@dataclass
class ReassemblyState:
    """One streamed message being put back together."""

    exchange_id: str
    events: list[StreamEvent] = field(default_factory=list)
    merged_text: str = ""
    pending: str = ""
    decoder: codecs.IncrementalDecoder = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace")
    )


class StreamReassembler:
    """Keyed table of in-flight streamed messages."""

    def __init__(self, *, max_pending_chars: int = MAX_PENDING_CHARS) -> None:
        self._states: dict[str, ReassemblyState] = {}
        self._max_pending = max_pending_chars

    def __contains__(self, exchange_id: object) -> bool:
        return exchange_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    def pending(self) -> list[str]:
        """Ids of exchanges whose stream has not completed yet."""
        return list(self._states)

    def get(self, exchange_id: str) -> ReassemblyState | None:
        return self._states.get(exchange_id)

    def feed(self, exchange_id: str, raw: bytes, *, final: bool = False) -> tuple[str, bool]:
        """Add one delivery of event-stream bytes to an exchange's message.

        A frame split across deliveries is held back until the rest arrives;
        ``final=True`` marks the end of the body and parses whatever is left.

        Returns:
            ``(merged_text_so_far, is_complete)``. On completion the state is
            removed, so a later delivery for the same id starts a new message.
        """
        state = self._states.get(exchange_id)
        if state is None:
            state = ReassemblyState(exchange_id=exchange_id)
            self._states[exchange_id] = state

        text = state.pending + state.decoder.decode(raw, final=final)
        if final:
            complete, state.pending = text, ""
        else:
            complete, state.pending = split_complete_frames(text)
            if len(state.pending) > self._max_pending:
                logger.warning(
                    "[%s] Dropping %d chars of unterminated event data",
                    exchange_id,
                    len(state.pending),
                )
                state.pending = ""

        events = parse_sse_events(complete)
        state.events.extend(events)
        logger.debug(
            "[%s] Processing %d bytes, found %d events", exchange_id, len(raw), len(events)
        )
        event_types = [e.event for e in events if e.event]
        if event_types:
            logger.debug("[%s] Event types: %s", exchange_id, ", ".join(event_types))

        deltas: list[str] = []
        for event in events:
            if event.event != DELTA_EVENT:
                continue
            try:
                deltas.append(extract_delta_text(event))
            except MalformedEventPayload as e:
                # One corrupt frame must not lose the rest of the message
                logger.debug("[%s] %s", exchange_id, e)
        if any(deltas):
            logger.debug("[%s] Text deltas: %r", exchange_id, deltas)
        state.merged_text += "".join(deltas)

        condition = find_terminal_condition(events)
        logger.debug("[%s] Stream end check: %s", exchange_id, condition)
        if condition is None:
            return state.merged_text, False

        del self._states[exchange_id]
        return state.merged_text, True

    def flush(self, exchange_id: str) -> tuple[str, bool] | None:
        """Parse any frame still pending for an exchange at end of body."""
        state = self._states.get(exchange_id)
        if state is None:
            return None
        return self.feed(exchange_id, b"", final=True)

    def evict(self, exchange_id: str) -> bool:
        """Drop an exchange's state at teardown, completed or not.

        Returns True if a state was still present.
        """
        state = self._states.pop(exchange_id, None)
        if state is None:
            return False
        if state.events:
            logger.warning(
                "[%s] Stream ended without a terminal event (%d events, %d chars merged)",
                exchange_id,
                len(state.events),
                len(state.merged_text),
            )
        return True

    def clear(self) -> None:
        for exchange_id in list(self._states):
            self.evict(exchange_id)
