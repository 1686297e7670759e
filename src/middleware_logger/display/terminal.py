"""Rich terminal display for proxied exchanges."""

from __future__ import annotations

import contextlib

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from middleware_logger.config import ProxyConfig
from middleware_logger.models import (
    ConversationTurn,
    Direction,
    DisplayRecord,
    RecordKind,
    TurnRole,
)

ROLE_STYLES: dict[TurnRole, tuple[str, str]] = {
    TurnRole.USER: ("User", "bold green"),
    TurnRole.ASSISTANT: ("Assistant", "bold blue"),
    TurnRole.SYSTEM_DIRECTIVE: ("System Reminder", "yellow"),
    TurnRole.TOOL_RESULT: ("Tool Result", "cyan"),
}

RULE = "-" * 60


class TerminalDisplay:
    """Rich terminal display for real-time exchange logging."""

    def __init__(self, config: ProxyConfig, console: Console | None = None) -> None:
        self._config = config
        self._console = console or Console()
        # Exchanges whose streamed reply is mid-line on the terminal
        self._streaming: set[str] = set()

    @property
    def console(self) -> Console:
        """Access the underlying Rich console."""
        return self._console

    @property
    def show_exchanges(self) -> bool:
        """Whether request and response summary lines are shown."""
        return not self._config.chat_mode or self._config.log_body

    async def on_record(self, record: DisplayRecord) -> None:
        """Display one record as soon as the proxy produces it."""
        try:
            self._display_record(record)
        except (UnicodeEncodeError, OSError):
            # Fallback for terminals that can't render certain characters
            with contextlib.suppress(Exception):
                self._console.print(
                    f"[{record.exchange_id}] {record.kind} {record.text or ''}", markup=False
                )

    def _display_record(self, record: DisplayRecord) -> None:
        if record.kind is not RecordKind.STREAM_DELTA:
            self._end_stream_line(record.exchange_id)

        match record.kind:
            case RecordKind.EXCHANGE_START:
                if self.show_exchanges:
                    self._display_request(record)
            case RecordKind.RESPONSE_START:
                if self.show_exchanges:
                    self._display_response(record)
            case RecordKind.TUNNEL:
                if self.show_exchanges:
                    duration = record.detail.get("duration_ms", 0)
                    self._console.print(
                        Text(
                            f"[{record.exchange_id}] CONNECT {record.text} "
                            f"established ({duration:.0f}ms)",
                            style="green",
                        )
                    )
            case RecordKind.SYSTEM_PROMPT:
                self._console.print(Text("  System:", style="yellow"))
                self._console.print(Text(_indent(record.text or ""), style="dim"))
            case RecordKind.TURN:
                if record.turn is not None:
                    self._display_turn(record.turn)
            case RecordKind.RAW_BODY:
                self._display_body(record)
            case RecordKind.STREAM_DELTA:
                self._display_delta(record)
            case RecordKind.STREAM_COMPLETE:
                self._display_complete(record)
            case RecordKind.DIAGNOSTIC:
                if self._config.debug:
                    self._console.print(
                        Text(f"[{record.exchange_id}] {record.text}", style="magenta")
                    )

    def _display_request(self, record: DisplayRecord) -> None:
        d = record.detail
        prefix = f"[{record.exchange_id}] "
        self._console.print(Text(f"{prefix}Request {d.get('timestamp', '')}", style="cyan"))
        self._console.print(
            Text(f"{prefix}{d.get('method', '')} {d.get('path', '')}", style="blue")
        )
        self._console.print(Text(f"{prefix}User-Agent: {d.get('user_agent')}", style="dim"))
        if d.get("content_length"):
            self._console.print(
                Text(f"{prefix}Content-Length: {d['content_length']}", style="dim")
            )
        if d.get("content_type"):
            self._console.print(Text(f"{prefix}Content-Type: {d['content_type']}", style="dim"))

    def _display_response(self, record: DisplayRecord) -> None:
        d = record.detail
        prefix = f"[{record.exchange_id}] "
        status = d.get("status_code")
        self._console.print(Text(f"{prefix}Response", style="cyan"))
        self._console.print(
            Text(
                f"{prefix}{self._status_icon(status)} {status} {d.get('reason') or ''} "
                f"({d.get('duration_ms', 0):.0f}ms)",
                style=self._status_style(status),
            )
        )
        if d.get("content_length"):
            self._console.print(
                Text(f"{prefix}Content-Length: {d['content_length']}", style="dim")
            )
        if d.get("content_type"):
            self._console.print(Text(f"{prefix}Content-Type: {d['content_type']}", style="dim"))
        self._console.print(Text(RULE, style="dim"))

    def _display_turn(self, turn: ConversationTurn) -> None:
        label, style = ROLE_STYLES[turn.role]
        if turn.role is TurnRole.USER or (
            turn.role is TurnRole.ASSISTANT and not turn.historical
        ):
            line = Text()
            line.append(f"{label}: ", style=style)
            line.append(turn.text)
            self._console.print()
            self._console.print(line)
            return

        if turn.role is TurnRole.ASSISTANT:
            self._console.print(Text(f"  {label} (earlier):", style="blue"))
        elif turn.source:
            self._console.print(Text(f"  File: {turn.source}", style="cyan"))
        elif turn.line_count is not None:
            self._console.print(Text(f"  {label}:", style=style))
            self._console.print(Text(f"  [{turn.line_count} lines of file content]", style="dim"))
        else:
            self._console.print(Text(f"  {label}:", style=style))

        body = turn.text
        if turn.truncated and not turn.source:
            body += "\n..." if turn.line_count is not None else "..."
        self._console.print(Text(_indent(body), style="dim"))

    def _display_body(self, record: DisplayRecord) -> None:
        title = "Request Body" if record.direction is Direction.REQUEST else "Response Body"
        if record.detail.get("capped"):
            title += f" (first {self._config.max_body_bytes} bytes)"
        self._console.print(
            Panel(
                Text(record.text or ""),
                title=Text(f"[{record.exchange_id}] {title}"),
                title_align="left",
                border_style="cyan",
                padding=(0, 1),
            )
        )

    def _display_delta(self, record: DisplayRecord) -> None:
        text = record.text or ""
        if not self._config.chat_mode:
            self._console.print(Text(f"[{record.exchange_id}] +{text}", style="dim"))
            return
        if record.exchange_id not in self._streaming:
            self._streaming.add(record.exchange_id)
            self._console.print()
            self._console.print(Text("Assistant: ", style="bold blue"), end="")
        self._console.print(Text(text), end="", soft_wrap=True)

    def _display_complete(self, record: DisplayRecord) -> None:
        if self._config.chat_mode:
            # The text has already been streamed inline
            return
        self._console.print(Text(f"[{record.exchange_id}] SSE Complete Message:", style="cyan"))
        self._console.print(Text(record.text or "<empty message>", style="green"))
        self._console.print(Text(RULE, style="dim"))

    def _end_stream_line(self, exchange_id: str) -> None:
        if exchange_id in self._streaming:
            self._streaming.discard(exchange_id)
            self._console.print()

    @staticmethod
    def _status_icon(status_code: int | None) -> str:
        if status_code is None:
            return "?"
        if status_code < 300:
            return "+"
        if status_code < 400:
            return "~"
        return "!"

    @staticmethod
    def _status_style(status_code: int | None) -> str:
        if status_code is None or status_code >= 500:
            return "red"
        if status_code >= 400:
            return "yellow"
        if status_code >= 300:
            return "cyan"
        return "green"


def _indent(text: str, prefix: str = "  ") -> str:
    """Indent every line of ``text``."""
    return "\n".join(prefix + line for line in text.splitlines() or [""])
