"""Server-sent-event frame parsing."""

from __future__ import annotations

from typing import Any

from middleware_logger.models import StreamEvent

FRAME_SEPARATOR = "\n\n"


def parse_sse_events(text: str) -> list[StreamEvent]:
    """Parse one delivery of event-stream text into frames.

    Stateless: a frame cut off at the end of ``text`` is emitted as it stands.
    Joining partial deliveries is the caller's job (see
    :func:`split_complete_frames`).
    """
    events: list[StreamEvent] = []
    fields: dict[str, Any] = {}

    for raw_line in text.split("\n"):
        line = raw_line.strip()

        if not line:
            if fields:
                events.append(StreamEvent(**fields))
                fields = {}
        elif line.startswith("event:"):
            fields["event"] = line[6:].strip()
        elif line.startswith("data:"):
            # Multi-line data concatenates within one frame
            fields["data"] = fields.get("data", "") + line[5:].strip()
        elif line.startswith("id:"):
            fields["id"] = line[3:].strip()
        # Comments (":") and retry: lines carry nothing we display

    if fields:
        events.append(StreamEvent(**fields))

    return events


def split_complete_frames(text: str) -> tuple[str, str]:
    """Split text at the last frame boundary.

    Returns ``(complete, remainder)`` where ``complete`` holds only whole frames
    and ``remainder`` is the start of a frame still being delivered.
    """
    text = text.replace("\r\n", "\n")
    boundary = text.rfind(FRAME_SEPARATOR)
    if boundary == -1:
        return "", text
    cut = boundary + len(FRAME_SEPARATOR)
    return text[:cut], text[cut:]
