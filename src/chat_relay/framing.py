"""Incremental decoder for the ``data:`` framed event stream.

The inference service streams text records separated by a blank line::

    data: {"response": "Hel"}

    data: {"response": "lo"}

    data: [DONE]

Bytes arrive at arbitrary boundaries, so :class:`FrameDecoder` keeps one
residual text buffer and an incremental UTF-8 decoder. Feeding the same bytes
in any chunking yields the same payload sequence.
"""
from __future__ import annotations

import codecs
from typing import AsyncIterable, AsyncIterator, List

DATA_MARKER = "data:"
RECORD_SEPARATOR = "\n\n"


def parse_record(record: str) -> str | None:
    """Return the joined ``data:`` payload of one record, or None if it has none."""
    data_lines: List[str] = []
    for line in record.split("\n"):
        if not line.startswith(DATA_MARKER):
            continue
        value = line[len(DATA_MARKER):]
        if value.startswith(" "):
            value = value[1:]
        data_lines.append(value)
    if not data_lines:
        return None
    return "\n".join(data_lines)


class FrameDecoder:
    """Turn raw byte chunks into event payload strings."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._pending_cr = False
        self._closed = False

    def feed(self, chunk: bytes) -> List[str]:
        """Consume one chunk and return every payload it completes."""
        if self._closed:
            raise RuntimeError("FrameDecoder is closed")
        return self._push(self._decoder.decode(chunk))

    def close(self) -> List[str]:
        """Flush the residual buffer, emitting a trailing unterminated record."""
        if self._closed:
            return []
        events = self._push(self._decoder.decode(b"", final=True))
        if self._pending_cr:
            self._buffer += "\n"
            self._pending_cr = False
        self._buffer += RECORD_SEPARATOR
        events.extend(self._drain())
        self._buffer = ""
        self._closed = True
        return events

    def _push(self, text: str) -> List[str]:
        if not text:
            return []
        if self._pending_cr:
            text = "\r" + text
            self._pending_cr = False
        # A trailing CR may be the first half of a CRLF pair.
        if text.endswith("\r"):
            text = text[:-1]
            self._pending_cr = True
        self._buffer += text.replace("\r\n", "\n").replace("\r", "\n")
        return self._drain()

    def _drain(self) -> List[str]:
        events: List[str] = []
        while True:
            idx = self._buffer.find(RECORD_SEPARATOR)
            if idx == -1:
                break
            record = self._buffer[:idx]
            self._buffer = self._buffer[idx + len(RECORD_SEPARATOR):]
            payload = parse_record(record)
            if payload is not None:
                events.append(payload)
        return events


async def iter_events(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Decode an async byte stream into payloads, flushing at end of input."""
    decoder = FrameDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
    for event in decoder.close():
        yield event
