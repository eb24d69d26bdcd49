"""Frame decoder: split an incremental response body into event records.

Records are separated by a blank line. Fragments arrive with arbitrary
boundaries, so anything after the last separator is buffered until the
next fragment (or the end of the stream) completes it.
"""

from __future__ import annotations

import codecs
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterable

RECORD_SEPARATOR = "\n\n"


class FrameDecoder:
    """Incremental blank-line record splitter.

    Accepts ``str`` or ``bytes`` fragments. Bytes are decoded as UTF-8
    incrementally, so a multi-byte character split across two fragments
    is reassembled. ``\\r\\n`` line endings are normalised to ``\\n``.

    Usage::

        decoder = FrameDecoder()
        for fragment in fragments:
            for record in decoder.feed(fragment):
                handle(record)
        for record in decoder.flush():
            handle(record)
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._bytes_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def pending(self) -> str:
        """Buffered text not yet terminated by a record separator."""
        return self._buffer

    def feed(self, fragment: str | bytes) -> list[str]:
        """Add a fragment and return every record it completes, in order."""
        if isinstance(fragment, bytes):
            fragment = self._bytes_decoder.decode(fragment)
        if not fragment:
            return []

        buffer = self._buffer + fragment
        # A trailing CR may be the first half of a CRLF split across fragments
        held = ""
        if buffer.endswith("\r"):
            buffer, held = buffer[:-1], "\r"
        buffer = buffer.replace("\r\n", "\n")

        *records, remainder = buffer.split(RECORD_SEPARATOR)
        self._buffer = remainder + held
        return [record for record in records if record.strip()]

    def flush(self) -> list[str]:
        """Return the final unterminated record, if any, and reset."""
        tail = self._bytes_decoder.decode(b"", final=True)
        remainder = (self._buffer + tail).replace("\r\n", "\n").strip("\r\n")
        self._buffer = ""
        if not remainder.strip():
            return []
        return [record for record in remainder.split(RECORD_SEPARATOR) if record.strip()]


async def decode_frames(
    fragments: AsyncIterable[str | bytes],
) -> AsyncGenerator[str, None]:
    """Yield complete raw records from an async stream of fragments.

    The generator ends when ``fragments`` is exhausted. Errors raised while
    reading ``fragments`` propagate unchanged; there are no retries here.

    Args:
        fragments: Text or byte chunks in arrival order.

    Yields:
        Raw record strings (field prefix still attached), in arrival order.
    """
    decoder = FrameDecoder()
    async for fragment in fragments:
        for record in decoder.feed(fragment):
            yield record
    for record in decoder.flush():
        yield record
