"""Unit tests for the frame decoder.

Covers record splitting across fragment boundaries, line ending
normalisation, byte input and end-of-stream handling.
"""

import pytest

from src.exceptions import TransportError
from src.streaming.frames import FrameDecoder, decode_frames
from tests.unit.streaming.conftest import async_iter, collect


class TestFrameDecoder:
    """FrameDecoder.feed() / flush()."""

    def test_single_fragment_with_two_records(self):
        decoder = FrameDecoder()

        records = decoder.feed('data: {"content":"a"}\n\ndata: {"content":"b"}\n\n')

        assert records == ['data: {"content":"a"}', 'data: {"content":"b"}']
        assert decoder.pending == ""

    def test_record_split_across_fragments(self):
        """A record is only emitted once its blank line arrives."""
        decoder = FrameDecoder()

        assert decoder.feed('data: {"cont') == []
        assert decoder.feed('ent":"ROAS"}\n') == []
        assert decoder.feed("\ndata: [DO") == ['data: {"content":"ROAS"}']
        assert decoder.pending == "data: [DO"

    def test_separator_split_between_fragments(self):
        decoder = FrameDecoder()

        assert decoder.feed("data: one\n") == []
        assert decoder.feed("\n") == ["data: one"]

    def test_crlf_line_endings(self):
        decoder = FrameDecoder()

        records = decoder.feed("data: one\r\n\r\ndata: two\r\n\r\n")

        assert records == ["data: one", "data: two"]

    def test_crlf_split_across_fragments(self):
        decoder = FrameDecoder()

        assert decoder.feed("data: one\r\n\r") == []
        assert decoder.feed("\ndata: two") == ["data: one"]

    def test_bytes_with_split_multibyte_character(self):
        decoder = FrameDecoder()
        encoded = 'data: {"content":"café"}\n\n'.encode()
        split = encoded.index(b"\xa9")  # second byte of "é"

        assert decoder.feed(encoded[:split]) == []
        assert decoder.feed(encoded[split:]) == ['data: {"content":"café"}']

    def test_blank_records_are_dropped(self):
        decoder = FrameDecoder()

        assert decoder.feed("\n\n\n\ndata: x\n\n") == ["data: x"]

    def test_flush_returns_unterminated_record(self):
        decoder = FrameDecoder()
        decoder.feed("data: [DONE]")

        assert decoder.flush() == ["data: [DONE]"]
        assert decoder.pending == ""

    def test_flush_on_empty_buffer(self):
        decoder = FrameDecoder()
        decoder.feed("data: x\n\n")

        assert decoder.flush() == []


class TestDecodeFrames:
    """decode_frames() over an async fragment stream."""

    @pytest.mark.asyncio
    async def test_records_in_arrival_order(self):
        fragments = ['data: {"content":"ROAS"}\n\nda', 'ta: {"content":" is a"}\n', "\ndata: [DONE]\n\n"]

        records = await collect(decode_frames(async_iter(fragments)))

        assert records == [
            'data: {"content":"ROAS"}',
            'data: {"content":" is a"}',
            "data: [DONE]",
        ]

    @pytest.mark.asyncio
    async def test_trailing_record_without_separator(self):
        records = await collect(decode_frames(async_iter(["data: a\n\n", "data: b"])))

        assert records == ["data: a", "data: b"]

    @pytest.mark.asyncio
    async def test_read_failure_propagates(self):
        """Errors from the underlying stream are not swallowed or retried."""

        async def failing():
            yield "data: a\n\n"
            raise TransportError("connection reset")

        received = []
        with pytest.raises(TransportError):
            async for record in decode_frames(failing()):
                received.append(record)

        assert received == ["data: a"]
