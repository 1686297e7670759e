"""Shared test fixtures."""

from __future__ import annotations

from typing import Any

import pytest

from middleware_logger.config import ProxyConfig
from middleware_logger.models import DisplayRecord, RecordKind
from middleware_logger.proxy.reassembly import StreamReassembler


class RecordCollector:
    """Async record sink that keeps everything it is given."""

    def __init__(self) -> None:
        self.records: list[DisplayRecord] = []

    async def __call__(self, record: DisplayRecord) -> None:
        self.records.append(record)

    def of_kind(self, kind: RecordKind) -> list[DisplayRecord]:
        return [r for r in self.records if r.kind is kind]


@pytest.fixture
def config() -> ProxyConfig:
    """Config pointing at a plain-HTTP test upstream."""
    return ProxyConfig(
        upstream_host="upstream.test",
        upstream_port=8080,
        upstream_tls=False,
    )


@pytest.fixture
def reassembler() -> StreamReassembler:
    return StreamReassembler()


@pytest.fixture
def collector() -> RecordCollector:
    return RecordCollector()


@pytest.fixture
def anthropic_request() -> dict[str, Any]:
    """A Messages API request with history, directives and a tool result."""
    return {
        "model": "claude-sonnet-4-20250514",
        "max_tokens": 1024,
        "system": [{"type": "text", "text": "You are a helpful assistant."}],
        "messages": [
            {"role": "user", "content": "First question"},
            {"role": "assistant", "content": [{"type": "text", "text": "First answer"}]},
            {
                "role": "user",
                "content": [
                    {
                        "type": "text",
                        "text": "<system-reminder>Be brief.</system-reminder>Second question",
                    },
                    {
                        "type": "tool_result",
                        "tool_use_id": "toolu_01",
                        "content": "ok",
                    },
                ],
            },
        ],
        "stream": True,
    }
