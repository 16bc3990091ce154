"""
Newline-delimited JSON framing for the MCP server's stdout.

The child writes one JSON document per line, but pipe reads return
arbitrary chunks: a read can end mid-document or carry several documents
at once. LineFramer keeps the incomplete tail between reads and hands out
complete lines only.

Oversized lines are dropped rather than buffered without bound; a single
bad line never stops the lines behind it.
"""

import json
import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_LINE_BYTES = 10 * 1024 * 1024  # 10 MB
READ_CHUNK_SIZE = 65536  # 64 KB


class LineFramer:
    """Splits a byte stream into complete text lines."""

    def __init__(self, max_line_bytes: int = DEFAULT_MAX_LINE_BYTES):
        """
        Initialize framer.

        Args:
            max_line_bytes: Longest line accepted; longer lines are discarded
        """
        self.max_line_bytes = max_line_bytes
        self._buffer = bytearray()
        self._discarding = False  # Inside an oversized line, skip to next newline
        self.dropped_lines = 0

    @property
    def pending_bytes(self) -> int:
        """Bytes buffered waiting for their newline."""
        return len(self._buffer)

    def feed(self, chunk: bytes) -> List[str]:
        """
        Add a chunk and return the lines it completed.

        Args:
            chunk: Raw bytes as read from the pipe

        Returns:
            Complete, non-blank lines in arrival order (without line endings)
        """
        lines: List[str] = []
        start = 0

        while True:
            newline_idx = chunk.find(b"\n", start)
            if newline_idx < 0:
                break

            piece = chunk[start:newline_idx]
            start = newline_idx + 1

            if self._discarding:
                # Tail of an oversized line - its newline ends the skip
                self._discarding = False
                continue

            self._buffer.extend(piece)
            if len(self._buffer) > self.max_line_bytes:
                self._drop_oversized()
                continue

            line = self._decode(bytes(self._buffer))
            self._buffer.clear()
            if line:
                lines.append(line)

        remainder = chunk[start:]
        if remainder and not self._discarding:
            self._buffer.extend(remainder)
            if len(self._buffer) > self.max_line_bytes:
                self._drop_oversized()
                self._discarding = True

        return lines

    def flush(self) -> Optional[str]:
        """
        Discard the unterminated tail at end of stream.

        Returns:
            The dropped tail (for diagnostics) or None if nothing was pending
        """
        self._discarding = False
        if not self._buffer:
            return None
        tail = self._decode(bytes(self._buffer))
        self._buffer.clear()
        if tail:
            logger.debug(f"Dropping unterminated line at end of stream ({len(tail)} chars)")
        return tail or None

    def _drop_oversized(self) -> None:
        logger.warning(
            f"MCP server line exceeds maximum length ({self.max_line_bytes} bytes), dropping it"
        )
        self._buffer.clear()
        self.dropped_lines += 1

    @staticmethod
    def _decode(raw: bytes) -> str:
        # CRLF from Windows servers
        return raw.decode("utf-8", errors="replace").rstrip("\r").strip()


def parse_line(line: str) -> Optional[Dict[str, Any]]:
    """
    Parse one framed line as a JSON object.

    Invalid JSON and non-object documents are logged and dropped.

    Args:
        line: Complete line from LineFramer

    Returns:
        Parsed document or None
    """
    try:
        document = json.loads(line)
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse MCP response line: {line[:200]!r} ({e})")
        return None

    if not isinstance(document, dict):
        logger.warning(f"Ignoring non-object JSON from MCP server: {line[:200]!r}")
        return None

    return document


async def iter_lines(
    stream: asyncio.StreamReader,
    framer: Optional[LineFramer] = None,
    chunk_size: int = READ_CHUNK_SIZE
) -> AsyncIterator[str]:
    """
    Lazily yield complete lines from a stream until EOF.

    Args:
        stream: Child stdout reader
        framer: Framer to use (a fresh one when None)
        chunk_size: Maximum bytes per read

    Yields:
        Complete lines in the order the child wrote them
    """
    framer = framer or LineFramer()
    while True:
        chunk = await stream.read(chunk_size)
        if not chunk:
            framer.flush()
            return
        for line in framer.feed(chunk):
            yield line


async def iter_messages(
    stream: asyncio.StreamReader,
    framer: Optional[LineFramer] = None
) -> AsyncIterator[Dict[str, Any]]:
    """Yield parsed JSON objects from a stream, skipping malformed lines."""
    async for line in iter_lines(stream, framer):
        document = parse_line(line)
        if document is not None:
            yield document
