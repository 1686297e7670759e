"""Data models for proxied exchanges and the records derived from them."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def new_exchange_id() -> str:
    """Return a short opaque token identifying one exchange."""
    return uuid.uuid4().hex[:12]


class Direction(StrEnum):
    """Which leg of an exchange a body or record belongs to."""

    REQUEST = "request"
    RESPONSE = "response"


class TurnRole(StrEnum):
    """Role of an extracted conversation turn."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM_DIRECTIVE = "system-directive"
    TOOL_RESULT = "tool-result"


class RecordKind(StrEnum):
    """Kinds of records handed to the presentation layer."""

    EXCHANGE_START = "exchange-start"
    RESPONSE_START = "response-start"
    TURN = "turn"
    SYSTEM_PROMPT = "system-prompt"
    RAW_BODY = "raw-body"
    STREAM_DELTA = "stream-delta"
    STREAM_COMPLETE = "stream-complete"
    DIAGNOSTIC = "diagnostic"
    TUNNEL = "tunnel"


class Exchange(BaseModel):
    """One proxied request/response pair.

    The id is assigned once, before anything is forwarded, and never changes.
    Body buffers only grow while inspection is enabled.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=new_exchange_id)
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the request was accepted",
    )

    method: str = Field(description="HTTP method")
    path: str = Field(description="Request path including query string")
    request_headers: dict[str, str] = Field(default_factory=dict)
    request_body: bytearray = Field(default_factory=bytearray)

    status_code: int | None = Field(default=None, description="Upstream status code")
    response_headers: dict[str, str] = Field(default_factory=dict)
    response_body: bytearray = Field(default_factory=bytearray)

    error: str | None = Field(default=None, description="Error message if proxying failed")


class StreamEvent(BaseModel):
    """One server-sent-event frame."""

    model_config = ConfigDict(frozen=True)

    event: str | None = Field(default=None, description="Event type name")
    data: str | None = Field(default=None, description="Concatenated data lines")
    id: str | None = Field(default=None, description="Event id field")


class ConversationTurn(BaseModel):
    """One logical message extracted from a request or response payload."""

    model_config = ConfigDict(frozen=True)

    role: TurnRole
    text: str
    truncated: bool = Field(default=False, description="Text was shortened for display")
    historical: bool = Field(
        default=False, description="Earlier assistant message replayed in the request"
    )
    source: str | None = Field(default=None, description="File name for inlined file contents")
    line_count: int | None = Field(
        default=None, description="Total lines of a line-numbered tool result"
    )


class BinaryMarker(BaseModel):
    """Placeholder for a body that cannot be shown as text."""

    model_config = ConfigDict(frozen=True)

    length: int = Field(description="Size of the undecoded body in bytes")
    encoding: str | None = Field(default=None, description="Declared content encoding")
    reason: str = Field(default="binary", description="'binary' or 'decode-failed'")

    def __str__(self) -> str:
        if self.reason == "decode-failed":
            return (
                f"<Compressed data ({self.encoding}): {self.length} bytes - decompression failed>"
            )
        suffix = f" ({self.encoding})" if self.encoding else ""
        return f"<Binary data: {self.length} bytes{suffix}>"


class DisplayRecord(BaseModel):
    """A unit of output for the presentation layer, tagged with its exchange."""

    model_config = ConfigDict(frozen=True)

    exchange_id: str
    direction: Direction
    kind: RecordKind
    turn: ConversationTurn | None = None
    text: str | None = None
    detail: dict[str, Any] = Field(default_factory=dict)
