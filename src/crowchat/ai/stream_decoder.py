"""Incremental newline-delimited JSON decoding for streamed chat responses."""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator

from .errors import ProtocolError

LOGGER = logging.getLogger(__name__)


class NDJSONStreamDecoder:
    """Splits a byte stream into JSON records at ``\\n`` boundaries.

    Records come out in arrival order regardless of how the bytes were split
    across reads; an unterminated tail is held until more bytes arrive.
    """

    def __init__(self, *, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="strict")
        self._buffer = ""
        self._line_number = 0

    @property
    def pending(self) -> str:
        """Return the buffered, not yet newline-terminated fragment."""

        return self._buffer

    def feed(self, data: bytes) -> list[Any]:
        """Consume ``data`` and return every record completed by it."""

        if not data:
            return []
        try:
            text = self._decoder.decode(data)
        except UnicodeDecodeError as exc:
            raise ProtocolError(f"Failed to decode response bytes: {exc}") from exc
        self._buffer += text
        if "\n" not in text:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        records: list[Any] = []
        for line in lines:
            self._line_number += 1
            if not line.strip():
                continue
            records.append(self._decode_line(line))
        return records

    def finish(self) -> list[Any]:
        """Signal end of stream; an unterminated leftover is dropped."""

        try:
            tail = self._buffer + self._decoder.decode(b"", final=True)
        except UnicodeDecodeError:
            tail = self._buffer + "\ufffd"
        self._buffer = ""
        if tail.strip():
            LOGGER.debug("Discarding %d unterminated trailing character(s) at end of stream", len(tail))
        return []

    def _decode_line(self, line: str) -> Any:
        try:
            return json.loads(line)
        except json.JSONDecodeError as exc:
            raise ProtocolError(f"Failed to parse stream line {self._line_number}: {exc.msg}") from exc


async def decode_stream(chunks: AsyncIterable[bytes], *, encoding: str = "utf-8") -> AsyncIterator[Any]:
    """Yield decoded records lazily from an async byte iterator."""

    decoder = NDJSONStreamDecoder(encoding=encoding)
    async for chunk in chunks:
        for record in decoder.feed(chunk):
            yield record
    for record in decoder.finish():
        yield record


__all__ = ["NDJSONStreamDecoder", "decode_stream"]
