"""Tests for the terminal display."""

from __future__ import annotations

import io
from typing import Any

from rich.console import Console

from middleware_logger.config import ProxyConfig
from middleware_logger.display.terminal import TerminalDisplay
from middleware_logger.models import (
    ConversationTurn,
    Direction,
    DisplayRecord,
    RecordKind,
    TurnRole,
)


def _display(**settings: Any) -> tuple[TerminalDisplay, io.StringIO]:
    out = io.StringIO()
    console = Console(file=out, width=120, color_system=None, highlight=False)
    return TerminalDisplay(ProxyConfig(**settings), console=console), out


def _record(kind: RecordKind, **fields: Any) -> DisplayRecord:
    fields.setdefault("direction", Direction.RESPONSE)
    return DisplayRecord(exchange_id="abc123", kind=kind, **fields)


REQUEST_START = _record(
    RecordKind.EXCHANGE_START,
    direction=Direction.REQUEST,
    detail={
        "timestamp": "2025-01-15T10:30:00+00:00",
        "method": "POST",
        "path": "/v1/messages",
        "user_agent": "claude-cli/1.0",
        "content_length": "120",
        "content_type": "application/json",
    },
)


class TestTerminalDisplay:
    async def test_chat_mode_hides_exchange_lines(self) -> None:
        display, out = _display()
        await display.on_record(REQUEST_START)
        assert out.getvalue() == ""

    async def test_exchange_lines_shown_outside_chat_mode(self) -> None:
        display, out = _display(chat_mode=False)
        await display.on_record(REQUEST_START)
        text = out.getvalue()
        assert "[abc123] POST /v1/messages" in text
        assert "User-Agent: claude-cli/1.0" in text
        assert "Content-Type: application/json" in text

    async def test_response_status_line(self) -> None:
        display, out = _display(chat_mode=False)
        record = _record(
            RecordKind.RESPONSE_START,
            detail={"status_code": 529, "reason": "Overloaded", "duration_ms": 812.4},
        )
        await display.on_record(record)
        assert "! 529 Overloaded (812ms)" in out.getvalue()

    async def test_user_turn(self) -> None:
        display, out = _display()
        turn = ConversationTurn(role=TurnRole.USER, text="What is 2+2?")
        await display.on_record(_record(RecordKind.TURN, turn=turn))
        assert "User: What is 2+2?" in out.getvalue()

    async def test_truncated_directive_gets_ellipsis(self) -> None:
        display, out = _display()
        turn = ConversationTurn(role=TurnRole.SYSTEM_DIRECTIVE, text="r" * 50, truncated=True)
        await display.on_record(_record(RecordKind.TURN, turn=turn))
        text = out.getvalue()
        assert "System Reminder:" in text
        assert "r" * 50 + "..." in text

    async def test_file_turn_shows_name(self) -> None:
        display, out = _display()
        turn = ConversationTurn(
            role=TurnRole.SYSTEM_DIRECTIVE,
            text="[48 chars of file content]",
            truncated=True,
            source="src/app.py",
        )
        await display.on_record(_record(RecordKind.TURN, turn=turn))
        text = out.getvalue()
        assert "File: src/app.py" in text
        assert "[48 chars of file content]" in text

    async def test_stream_deltas_are_written_inline(self) -> None:
        display, out = _display()
        await display.on_record(_record(RecordKind.STREAM_DELTA, text="Hi"))
        await display.on_record(_record(RecordKind.STREAM_DELTA, text=" there"))
        await display.on_record(_record(RecordKind.STREAM_COMPLETE, text="Hi there"))
        text = out.getvalue()
        assert "Assistant:" in text
        assert "Hi there" in text
        assert text.endswith("\n")

    async def test_stream_complete_shown_when_merging_only(self) -> None:
        display, out = _display(chat_mode=False, merge_sse=True)
        await display.on_record(_record(RecordKind.STREAM_COMPLETE, text="Hi there"))
        text = out.getvalue()
        assert "[abc123] SSE Complete Message:" in text
        assert "Hi there" in text

    async def test_raw_body_panel(self) -> None:
        display, out = _display(chat_mode=False, log_body=True)
        await display.on_record(
            _record(RecordKind.RAW_BODY, direction=Direction.REQUEST, text='{"a": 1}')
        )
        text = out.getvalue()
        assert "Request Body" in text
        assert '{"a": 1}' in text

    async def test_diagnostics_only_in_debug(self) -> None:
        quiet, quiet_out = _display()
        loud, loud_out = _display(debug=True)
        record = _record(RecordKind.DIAGNOSTIC, text="Request: 120 bytes")
        await quiet.on_record(record)
        await loud.on_record(record)
        assert quiet_out.getvalue() == ""
        assert "Request: 120 bytes" in loud_out.getvalue()
