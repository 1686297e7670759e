"""Extraction of conversation turns from Messages API payloads.

Request content blocks are sorted into a closed set of shapes by
:func:`classify_block`, and each shape has exactly one rendering. Payloads that
are not JSON objects, or lack the expected fields, give no turns at all; the
raw body display is the fallback for those.
"""

from __future__ import annotations

import json
import logging
import re
from enum import StrEnum
from typing import Any

from middleware_logger.errors import UnrecognizedPayloadShape
from middleware_logger.models import ConversationTurn, TurnRole

logger = logging.getLogger(__name__)

DIRECTIVE_OPEN = "<system-reminder>"
DIRECTIVE_CLOSE = "</system-reminder>"
DIRECTIVE_PATTERN = re.compile(r"<system-reminder>([\s\S]*?)</system-reminder>")
FILE_NAME_PATTERN = re.compile(r"Contents of ([^:]+):")
NUMBERED_LINE_PATTERN = re.compile(r"^\s*\d+→", re.MULTILINE)

DIRECTIVE_MAX_CHARS = 200
TOOL_RESULT_MAX_CHARS = 200
TOOL_RESULT_PREVIEW_LINES = 5
HISTORY_MAX_CHARS = 100


class BlockKind(StrEnum):
    """Shapes a user content block can take."""

    DIRECTIVE_TEXT = "directive-text"
    FILE_CONTENTS = "file-contents"
    PLAIN_TEXT = "plain-text"
    TOOL_RESULT = "tool-result"
    OTHER = "other"


def classify_block(block: Any) -> BlockKind:
    """Sort one item of a user message's content array."""
    if not isinstance(block, dict):
        return BlockKind.OTHER

    block_type = block.get("type")
    if block_type == "text":
        text = block.get("text")
        if not isinstance(text, str) or not text:
            return BlockKind.OTHER
        if DIRECTIVE_OPEN in text:
            return BlockKind.DIRECTIVE_TEXT
        if "Contents of" in text and "```" in text and FILE_NAME_PATTERN.search(text):
            return BlockKind.FILE_CONTENTS
        return BlockKind.PLAIN_TEXT

    if block_type == "tool_result" and block.get("content"):
        return BlockKind.TOOL_RESULT

    return BlockKind.OTHER


def parse_payload(payload: str | bytes | dict[str, Any]) -> dict[str, Any]:
    """Return a payload as a JSON object.

    Raises:
        UnrecognizedPayloadShape: not JSON, or JSON that isn't an object.
    """
    if isinstance(payload, dict):
        return payload
    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise UnrecognizedPayloadShape(f"Body is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise UnrecognizedPayloadShape(f"Expected a JSON object, got {type(data).__name__}")
    return data


def _cap(text: str, limit: int, verbose: bool) -> tuple[str, bool]:
    if verbose or len(text) <= limit:
        return text, False
    return text[:limit], True


def _directive_turns(text: str, verbose: bool) -> list[ConversationTurn]:
    turns: list[ConversationTurn] = []
    for match in DIRECTIVE_PATTERN.finditer(text):
        content, truncated = _cap(match.group(1).strip(), DIRECTIVE_MAX_CHARS, verbose)
        turns.append(
            ConversationTurn(role=TurnRole.SYSTEM_DIRECTIVE, text=content, truncated=truncated)
        )

    user_part = text.split(DIRECTIVE_CLOSE)[-1].strip()
    if user_part:
        turns.append(ConversationTurn(role=TurnRole.USER, text=user_part))
    return turns


def _file_turn(text: str, verbose: bool) -> ConversationTurn:
    match = FILE_NAME_PATTERN.search(text)
    name = match.group(1) if match else None
    if verbose:
        return ConversationTurn(role=TurnRole.SYSTEM_DIRECTIVE, text=text, source=name)
    return ConversationTurn(
        role=TurnRole.SYSTEM_DIRECTIVE,
        text=f"[{len(text)} chars of file content]",
        truncated=True,
        source=name,
    )


def _tool_result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        return "\n".join(p for p in parts if isinstance(p, str))
    return ""


def _tool_result_turn(content: Any, verbose: bool) -> ConversationTurn | None:
    text = _tool_result_text(content)
    if not text:
        return None

    if NUMBERED_LINE_PATTERN.search(text):
        lines = text.split("\n")
        shown = lines if verbose else lines[:TOOL_RESULT_PREVIEW_LINES]
        return ConversationTurn(
            role=TurnRole.TOOL_RESULT,
            text="\n".join(shown),
            truncated=len(shown) < len(lines),
            line_count=len(lines),
        )

    capped, truncated = _cap(text, TOOL_RESULT_MAX_CHARS, verbose)
    return ConversationTurn(role=TurnRole.TOOL_RESULT, text=capped, truncated=truncated)


def _user_block_turns(block: Any, verbose: bool) -> list[ConversationTurn]:
    kind = classify_block(block)
    if kind is BlockKind.DIRECTIVE_TEXT:
        return _directive_turns(block["text"], verbose)
    if kind is BlockKind.FILE_CONTENTS:
        return [_file_turn(block["text"], verbose)]
    if kind is BlockKind.PLAIN_TEXT:
        return [ConversationTurn(role=TurnRole.USER, text=block["text"])]
    if kind is BlockKind.TOOL_RESULT:
        turn = _tool_result_turn(block["content"], verbose)
        return [turn] if turn else []
    return []


def _user_message_turns(content: Any, verbose: bool) -> list[ConversationTurn]:
    if isinstance(content, str):
        if DIRECTIVE_OPEN in content:
            return _directive_turns(content, verbose)
        return [ConversationTurn(role=TurnRole.USER, text=content)] if content else []
    if isinstance(content, list):
        turns: list[ConversationTurn] = []
        for block in content:
            turns.extend(_user_block_turns(block, verbose))
        return turns
    return []


def _assistant_history_turn(content: Any, verbose: bool) -> ConversationTurn | None:
    text = ""
    if isinstance(content, str):
        text = content
    elif isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and isinstance(block.get("text"), str):
                text = block["text"]
                break
    if not text:
        return None
    capped, truncated = _cap(text, HISTORY_MAX_CHARS, verbose)
    return ConversationTurn(
        role=TurnRole.ASSISTANT, text=capped, truncated=truncated, historical=True
    )


def extract_request_turns(
    payload: str | bytes | dict[str, Any], verbose: bool = False
) -> list[ConversationTurn]:
    """Extract the turns of a Messages API request, in message order.

    Every user message is rendered; earlier assistant messages (all but the
    final message of the array) are included as historical context.
    """
    try:
        data = parse_payload(payload)
        messages = data.get("messages")
        if not isinstance(messages, list):
            raise UnrecognizedPayloadShape(f"No messages array (keys: {sorted(data)})")
    except UnrecognizedPayloadShape as e:
        logger.debug("No request turns: %s", e)
        return []

    logger.debug("Found %d messages", len(messages))
    turns: list[ConversationTurn] = []
    last = len(messages) - 1
    for idx, message in enumerate(messages):
        if not isinstance(message, dict):
            continue
        role = message.get("role")
        if role == "user":
            turns.extend(_user_message_turns(message.get("content"), verbose))
        elif role == "assistant" and idx < last:
            turn = _assistant_history_turn(message.get("content"), verbose)
            if turn:
                turns.append(turn)
    return turns


def extract_response_turns(payload: str | bytes | dict[str, Any]) -> list[ConversationTurn]:
    """Extract the assistant reply of a non-streamed Messages API response."""
    try:
        data = parse_payload(payload)
        content = data.get("content")
        if not isinstance(content, list):
            raise UnrecognizedPayloadShape(f"No content array (keys: {sorted(data)})")
    except UnrecognizedPayloadShape as e:
        logger.debug("No response turns: %s", e)
        return []

    text = "".join(
        block.get("text", "")
        for block in content
        if isinstance(block, dict)
        and block.get("type") == "text"
        and isinstance(block.get("text", ""), str)
    )
    if not text.strip():
        return []
    return [ConversationTurn(role=TurnRole.ASSISTANT, text=text)]


def extract_system_prompts(payload: str | bytes | dict[str, Any]) -> list[str]:
    """Return the system prompt blocks of a request, in order.

    ``system`` may be a plain string or a list of text blocks.
    """
    try:
        data = parse_payload(payload)
    except UnrecognizedPayloadShape:
        return []

    system = data.get("system")
    if isinstance(system, str):
        return [system] if system else []
    if isinstance(system, list):
        return [
            block["text"]
            for block in system
            if isinstance(block, dict) and isinstance(block.get("text"), str) and block["text"]
        ]
    return []
