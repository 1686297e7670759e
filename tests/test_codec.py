"""Tests for body decoding and display formatting."""

from __future__ import annotations

import gzip
import json
import zlib
from collections.abc import Callable

import brotli
import pytest

from middleware_logger.codec import (
    TRUNCATION_MARKER,
    decode,
    decompress,
    format_for_display,
    is_binary_data,
    is_json_content,
    render_body,
)
from middleware_logger.errors import DecodeFailure
from middleware_logger.models import BinaryMarker

BODY = json.dumps({"content": [{"type": "text", "text": "Hello, wörld"}]}).encode()
LIMIT = 64 * 1024


class TestDecompress:
    @pytest.mark.parametrize(
        ("encoding", "compress"),
        [
            ("gzip", gzip.compress),
            ("x-gzip", gzip.compress),
            ("deflate", zlib.compress),
            ("br", brotli.compress),
            ("identity", lambda b: b),
            (None, lambda b: b),
        ],
    )
    def test_round_trip(
        self, encoding: str | None, compress: Callable[[bytes], bytes]
    ) -> None:
        assert decode(compress(BODY), encoding) == BODY.decode("utf-8")

    def test_raw_deflate_without_zlib_header(self) -> None:
        compressor = zlib.compressobj(wbits=-zlib.MAX_WBITS)
        raw = compressor.compress(BODY) + compressor.flush()
        assert decompress(raw, "deflate") == BODY

    def test_stacked_codings_removed_in_reverse(self) -> None:
        data = brotli.compress(gzip.compress(BODY))
        assert decompress(data, "gzip, br") == BODY

    def test_encoding_name_is_case_insensitive(self) -> None:
        assert decompress(gzip.compress(BODY), "GZip") == BODY

    def test_unknown_coding_passes_through(self) -> None:
        assert decompress(BODY, "compress") == BODY

    def test_corrupt_gzip_raises(self) -> None:
        with pytest.raises(DecodeFailure):
            decompress(b"definitely not gzip", "gzip")

    def test_corrupt_brotli_raises(self) -> None:
        with pytest.raises(DecodeFailure):
            decompress(b"\xff\xff\xff\xff", "br")

    def test_truncated_gzip_raises(self) -> None:
        with pytest.raises(DecodeFailure):
            decompress(gzip.compress(BODY)[:-12], "gzip")

    def test_concatenated_gzip_members(self) -> None:
        assert decompress(gzip.compress(b"ab") + gzip.compress(b"cd"), "gzip") == b"abcd"

    @pytest.mark.parametrize(
        ("encoding", "compress"),
        [("gzip", gzip.compress), ("deflate", zlib.compress), ("br", brotli.compress)],
    )
    def test_output_stops_at_max_size(
        self, encoding: str, compress: Callable[[bytes], bytes]
    ) -> None:
        bomb = compress(b"a" * (1024 * 1024))
        assert decompress(bomb, encoding, max_size=LIMIT) == b"a" * LIMIT

    @pytest.mark.parametrize(
        ("encoding", "compress"),
        [("gzip", gzip.compress), ("deflate", zlib.compress), ("br", brotli.compress)],
    )
    def test_body_exactly_at_max_size(
        self, encoding: str, compress: Callable[[bytes], bytes]
    ) -> None:
        assert decompress(compress(BODY), encoding, max_size=len(BODY)) == BODY


class TestBinaryDetection:
    def test_text_is_not_binary(self) -> None:
        assert is_binary_data("plain text ünïcode".encode()) is False

    def test_empty_is_not_binary(self) -> None:
        assert is_binary_data(b"") is False

    def test_null_at_start_is_binary(self) -> None:
        assert is_binary_data(b"\x00abc") is True

    def test_null_at_last_sniffed_byte_is_binary(self) -> None:
        assert is_binary_data(b"a" * 511 + b"\x00") is True

    def test_null_past_sniff_window_is_ignored(self) -> None:
        assert is_binary_data(b"a" * 512 + b"\x00") is False


class TestDecode:
    def test_decode_failure_gives_marker(self) -> None:
        result = decode(b"garbage", "gzip")
        assert isinstance(result, BinaryMarker)
        assert result.reason == "decode-failed"
        assert result.length == 7
        assert str(result) == "<Compressed data (gzip): 7 bytes - decompression failed>"

    def test_binary_body_gives_marker(self) -> None:
        result = decode(b"\x89PNG\r\n\x1a\n\x00\x00")
        assert isinstance(result, BinaryMarker)
        assert result.reason == "binary"
        assert str(result) == "<Binary data: 10 bytes>"

    def test_binary_marker_reports_compressed_length(self) -> None:
        compressed = gzip.compress(b"\x00" * 100)
        result = decode(compressed, "gzip")
        assert isinstance(result, BinaryMarker)
        assert result.length == len(compressed)
        assert str(result) == f"<Binary data: {len(compressed)} bytes (gzip)>"

    def test_decoded_text_bounded_by_max_size(self) -> None:
        compressed = gzip.compress(b"a" * (4 * 1024 * 1024))
        decoded = decode(compressed, "gzip", max_size=LIMIT)
        assert decoded == "a" * LIMIT

    def test_invalid_utf8_is_replaced(self) -> None:
        assert decode(b"abc\xffdef") == "abc�def"


class TestFormatForDisplay:
    def test_json_is_pretty_printed(self) -> None:
        assert format_for_display('{"a":1}') == '{\n  "a": 1\n}'

    def test_json_lookalike_left_alone(self) -> None:
        assert format_for_display("{not json}") == "{not json}"

    def test_long_text_is_truncated(self) -> None:
        result = format_for_display("x" * 1500)
        assert result == "x" * 1000 + TRUNCATION_MARKER

    def test_custom_limit(self) -> None:
        assert format_for_display("abcdef", max_length=3) == "abc" + TRUNCATION_MARKER

    def test_is_json_content(self) -> None:
        assert is_json_content('  {"a": 1}\n')
        assert is_json_content("[1, 2]")
        assert not is_json_content("data: {}")

    def test_render_body_decodes_then_formats(self) -> None:
        assert render_body(gzip.compress(b'{"ok":true}'), "gzip") == '{\n  "ok": true\n}'

    def test_render_body_binary(self) -> None:
        assert render_body(b"\x00\x01\x02") == "<Binary data: 3 bytes>"
