"""Body decoding: decompression, binary detection and display formatting."""

from __future__ import annotations

import json
import logging
import zlib
from collections.abc import Callable

import brotli

from middleware_logger.errors import DecodeFailure
from middleware_logger.models import BinaryMarker

logger = logging.getLogger(__name__)

BINARY_SNIFF_BYTES = 512
DISPLAY_MAX_CHARS = 1000
TRUNCATION_MARKER = "\n... (truncated)"

# Compressed input handed to the brotli decompressor per step
BROTLI_STEP = 1024

GZIP_WBITS = zlib.MAX_WBITS | 16


def _room(out: bytearray, limit: int | None) -> int:
    # zlib treats a max_length of 0 as unlimited
    return 0 if limit is None else limit - len(out)


def _full(out: bytes | bytearray, limit: int | None) -> bool:
    return limit is not None and len(out) >= limit


def _gunzip(data: bytes, limit: int | None) -> bytes:
    out = bytearray()
    while data and not _full(out, limit):
        d = zlib.decompressobj(GZIP_WBITS)
        out += d.decompress(data, _room(out, limit))
        if d.unconsumed_tail or _full(out, limit):
            break
        if not d.eof:
            raise EOFError("Compressed file ended before the end-of-stream marker was reached")
        # Concatenated members, possibly followed by zero padding
        data = d.unused_data.lstrip(b"\x00")
    return bytes(out)


def _inflate_with(data: bytes, wbits: int, limit: int | None) -> bytes:
    d = zlib.decompressobj(wbits)
    out = d.decompress(data, limit or 0)
    if not d.eof and not d.unconsumed_tail and not _full(out, limit):
        raise zlib.error("incomplete or truncated stream")
    return out


def _inflate(data: bytes, limit: int | None) -> bytes:
    # Servers disagree on whether "deflate" carries the zlib header.
    try:
        return _inflate_with(data, zlib.MAX_WBITS, limit)
    except zlib.error:
        return _inflate_with(data, -zlib.MAX_WBITS, limit)


def _unbrotli(data: bytes, limit: int | None) -> bytes:
    d = brotli.Decompressor()
    out = bytearray()
    for start in range(0, len(data), BROTLI_STEP):
        out += d.process(data[start : start + BROTLI_STEP])
        if _full(out, limit):
            return bytes(out[:limit])
    if not d.is_finished():
        raise brotli.error("brotli stream is truncated")
    return bytes(out)


_DECODERS: dict[str, Callable[[bytes, int | None], bytes]] = {
    "gzip": _gunzip,
    "x-gzip": _gunzip,
    "deflate": _inflate,
    "br": _unbrotli,
}


def decompress(data: bytes, content_encoding: str | None, max_size: int | None = None) -> bytes:
    """Undo the content codings named in a Content-Encoding header.

    Codings are applied by the sender left to right, so they are removed right
    to left. ``identity`` and unknown codings leave the data untouched. With
    ``max_size`` every stage stops once it has produced that many bytes, so the
    result is a prefix of the full body.

    Raises:
        DecodeFailure: a known coding failed to decompress.
    """
    if not content_encoding:
        return data
    codings = [c.strip().lower() for c in content_encoding.split(",") if c.strip()]
    for coding in reversed(codings):
        decoder = _DECODERS.get(coding)
        if decoder is None:
            continue
        try:
            data = decoder(data, max_size)
        except (OSError, EOFError, zlib.error, brotli.error) as e:
            raise DecodeFailure(f"{coding} decompression failed: {e}") from e
        if max_size is not None and len(data) >= max_size:
            logger.warning(
                "%s body decompressed past %d bytes, keeping the prefix", coding, max_size
            )
    return data


def is_binary_data(buffer: bytes) -> bool:
    """A NUL byte in the first 512 bytes marks the buffer as binary."""
    return b"\x00" in buffer[:BINARY_SNIFF_BYTES]


def decode(
    body: bytes, content_encoding: str | None = None, max_size: int | None = None
) -> str | BinaryMarker:
    """Decode a raw body to text.

    Never raises: bodies that fail to decompress or that look binary once
    decompressed come back as a :class:`BinaryMarker`. ``max_size`` bounds the
    decompressed size.
    """
    try:
        decoded = decompress(body, content_encoding, max_size)
    except DecodeFailure as e:
        logger.debug("Body of %d bytes not decodable: %s", len(body), e)
        return BinaryMarker(length=len(body), encoding=content_encoding, reason="decode-failed")

    if is_binary_data(decoded):
        return BinaryMarker(length=len(body), encoding=content_encoding)

    return decoded.decode("utf-8", errors="replace")


def is_json_content(text: str) -> bool:
    """Cheap shape check before attempting a JSON parse."""
    trimmed = text.strip()
    return (trimmed.startswith("{") and trimmed.endswith("}")) or (
        trimmed.startswith("[") and trimmed.endswith("]")
    )


def format_for_display(text: str, max_length: int = DISPLAY_MAX_CHARS) -> str:
    """Pretty-print JSON text and cap the result for raw display.

    Not used for conversation extraction, which needs the untruncated text.
    """
    if is_json_content(text):
        try:
            text = json.dumps(json.loads(text), indent=2, ensure_ascii=False)
        except json.JSONDecodeError:
            pass

    if len(text) > max_length:
        text = text[:max_length] + TRUNCATION_MARKER
    return text


def render_body(
    body: bytes,
    content_encoding: str | None = None,
    max_length: int = DISPLAY_MAX_CHARS,
    max_size: int | None = None,
) -> str:
    """Decode and format a body for display, or describe why it can't be shown."""
    decoded = decode(body, content_encoding, max_size)
    if isinstance(decoded, BinaryMarker):
        return str(decoded)
    return format_for_display(decoded, max_length)
