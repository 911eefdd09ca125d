# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for proxynode/runtime/demux.py."""

import io
import logging
import random
import threading

import pytest

from proxynode.errors import StreamCancelled
from proxynode.runtime.demux import (
    HEADER_SIZE,
    STDERR,
    STDIN,
    STDOUT,
    DemuxedOutput,
    FrameParser,
    demultiplex,
    drain_with_timeout,
)


def frame(stream: int, payload: bytes) -> bytes:
    """Build one frame of the multiplexed stream format."""
    header = bytes([stream, 0, 0, 0]) + len(payload).to_bytes(4, "big")
    return header + payload


class ChunkedReader:
    """Reader that returns at most ``chunk`` bytes per ``read`` call."""

    def __init__(self, data: bytes, chunk: int) -> None:
        self._data = data
        self._pos = 0
        self._chunk = chunk
        self.closed = False

    def read(self, size: int) -> bytes:
        size = min(size, self._chunk)
        piece = self._data[self._pos : self._pos + size]
        self._pos += len(piece)
        return piece

    def close(self) -> None:
        self.closed = True


class RandomChunkedReader(ChunkedReader):
    """Reader with seeded, variable read sizes."""

    def __init__(self, data: bytes, seed: int) -> None:
        super().__init__(data, chunk=1)
        self._rng = random.Random(seed)

    def read(self, size: int) -> bytes:
        self._chunk = self._rng.randint(1, 40)
        return super().read(size)


class FakeSocket:
    """Socket-like source exposing only ``recv_into``."""

    def __init__(self, data: bytes, chunk: int = 5) -> None:
        self._reader = ChunkedReader(data, chunk)

    def recv_into(self, buffer: memoryview) -> int:
        piece = self._reader.read(len(buffer))
        buffer[: len(piece)] = piece
        return len(piece)


class BlockingReader:
    """Reader that blocks until closed, then reports EOF."""

    def __init__(self) -> None:
        self._closed = threading.Event()

    def read(self, size: int) -> bytes:
        self._closed.wait(timeout=5)
        return b""

    def close(self) -> None:
        self._closed.set()


STDOUT_CHUNKS = [b"hello ", b"world\n", b"", b"line two\n", b"x" * 300]
STDERR_CHUNKS = [b"warn: one\n", b"warn: two\n", b"e" * 70]


def _interleaved() -> bytes:
    stream = b""
    for index in range(max(len(STDOUT_CHUNKS), len(STDERR_CHUNKS))):
        if index < len(STDOUT_CHUNKS):
            stream += frame(STDOUT, STDOUT_CHUNKS[index])
        if index < len(STDERR_CHUNKS):
            stream += frame(STDERR, STDERR_CHUNKS[index])
    return stream


class TestFrameParser:
    """Tests for the incremental frame parser."""

    def test_single_frame(self) -> None:
        """One complete frame yields one piece."""
        parser = FrameParser()
        assert parser.feed(frame(STDOUT, b"abc")) == [(STDOUT, b"abc")]
        assert parser.at_boundary()

    def test_header_split_across_feeds(self) -> None:
        """A header cut in the middle is completed by the next chunk."""
        data = frame(STDERR, b"payload")
        parser = FrameParser()
        assert parser.feed(data[:3]) == []
        assert parser.pending == 3
        assert parser.feed(data[3:HEADER_SIZE]) == []
        assert parser.feed(data[HEADER_SIZE:]) == [(STDERR, b"payload")]

    def test_payload_split_across_feeds(self) -> None:
        """A long payload comes back in pieces without loss."""
        data = frame(STDOUT, b"0123456789")
        parser = FrameParser()
        first = parser.feed(data[:12])
        second = parser.feed(data[12:])
        assert first == [(STDOUT, b"0123")]
        assert second == [(STDOUT, b"456789")]

    def test_multiple_frames_in_one_chunk(self) -> None:
        """Several frames in one chunk are returned in order."""
        data = frame(STDOUT, b"a") + frame(STDERR, b"b") + frame(STDOUT, b"c")
        parser = FrameParser()
        assert parser.feed(data) == [
            (STDOUT, b"a"),
            (STDERR, b"b"),
            (STDOUT, b"c"),
        ]

    def test_zero_length_frame(self) -> None:
        """An empty frame is skipped and parsing continues."""
        data = frame(STDOUT, b"") + frame(STDOUT, b"next")
        parser = FrameParser()
        assert parser.feed(data) == [(STDOUT, b"next")]

    def test_returned_bytes_are_copies(self) -> None:
        """Reusing the input buffer does not change returned pieces."""
        buffer = bytearray(frame(STDOUT, b"keep"))
        parser = FrameParser()
        pieces = parser.feed(buffer)
        buffer[HEADER_SIZE:] = b"XXXX"
        assert pieces == [(STDOUT, b"keep")]

    def test_partial_frame_reports_emitted(self) -> None:
        """partial_frame reports the stream and bytes already returned."""
        parser = FrameParser()
        parser.feed(frame(STDERR, b"abcdef")[:11])
        assert parser.partial_frame() == (STDERR, 3)
        assert parser.pending == 3
        assert not parser.at_boundary()


class TestDemultiplex:
    """Tests for demultiplex()."""

    @pytest.mark.parametrize("chunk", [1, 2, 3, 7, 8, 9, 13, 64, 4096])
    def test_reconstructs_streams_for_any_chunking(self, chunk: int) -> None:
        """Output is exact no matter how reads split the bytes."""
        result = demultiplex(ChunkedReader(_interleaved(), chunk))
        assert result.stdout == b"".join(STDOUT_CHUNKS).decode()
        assert result.stderr == b"".join(STDERR_CHUNKS).decode()

    @pytest.mark.parametrize("seed", range(5))
    def test_reconstructs_streams_for_random_chunking(self, seed: int) -> None:
        """Variable read sizes give the same output."""
        result = demultiplex(RandomChunkedReader(_interleaved(), seed))
        assert result.stdout == b"".join(STDOUT_CHUNKS).decode()
        assert result.stderr == b"".join(STDERR_CHUNKS).decode()

    def test_smallest_buffer(self) -> None:
        """A buffer of exactly one header still drains everything."""
        result = demultiplex(io.BytesIO(_interleaved()), buffer_size=8)
        assert result.stdout == b"".join(STDOUT_CHUNKS).decode()

    def test_readinto_source(self) -> None:
        """File objects are read with readinto."""
        data = frame(STDOUT, b"out") + frame(STDERR, b"err")
        assert demultiplex(io.BytesIO(data)) == DemuxedOutput("out", "err")

    def test_recv_into_source(self) -> None:
        """Sockets are read with recv_into."""
        data = frame(STDOUT, b"socket out") + frame(STDERR, b"socket err")
        result = demultiplex(FakeSocket(data, chunk=3))
        assert result == DemuxedOutput("socket out", "socket err")

    def test_multibyte_character_split_across_frames(self) -> None:
        """UTF-8 is decoded only after reassembly."""
        text = "päivää 🙂".encode()
        data = frame(STDOUT, text[:2]) + frame(STDOUT, text[2:])
        assert demultiplex(io.BytesIO(data)).stdout == "päivää 🙂"

    def test_invalid_utf8_replaced(self) -> None:
        """Undecodable bytes become replacement characters."""
        data = frame(STDOUT, b"ok \xff")
        assert demultiplex(io.BytesIO(data)).stdout == "ok �"

    def test_stdin_frames_discarded(self) -> None:
        """Frames on stream 0 are not part of the output."""
        data = frame(STDIN, b"echo") + frame(STDOUT, b"out")
        assert demultiplex(io.BytesIO(data)) == DemuxedOutput("out", "")

    def test_empty_stream(self) -> None:
        """Immediate EOF gives empty output."""
        assert demultiplex(io.BytesIO(b"")) == DemuxedOutput("", "")

    def test_trailing_partial_frame_discarded(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        """A truncated last frame is dropped and logged."""
        data = frame(STDOUT, b"complete") + frame(STDOUT, b"truncated")[:12]
        with caplog.at_level(logging.WARNING):
            result = demultiplex(io.BytesIO(data))
        assert result.stdout == "complete"
        assert "inside a frame" in caplog.text

    def test_trailing_partial_header_discarded(self) -> None:
        """A few stray header bytes at EOF are ignored."""
        data = frame(STDERR, b"err") + b"\x01\x00"
        assert demultiplex(io.BytesIO(data)) == DemuxedOutput("", "err")

    def test_cancel_before_read(self) -> None:
        """A set cancel event stops the drain."""
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(StreamCancelled):
            demultiplex(io.BytesIO(frame(STDOUT, b"x")), cancel=cancel)

    def test_buffer_too_small(self) -> None:
        """Buffers smaller than a header are rejected."""
        with pytest.raises(ValueError, match="buffer_size"):
            demultiplex(io.BytesIO(b""), buffer_size=4)


class TestDrainWithTimeout:
    """Tests for drain_with_timeout()."""

    def test_completes_before_deadline(self) -> None:
        """A stream that ends in time is returned normally."""
        data = frame(STDOUT, b"quick")
        assert drain_with_timeout(io.BytesIO(data), timeout=5).stdout == (
            "quick"
        )

    def test_silent_stream_cancelled(self) -> None:
        """A stream that never ends is closed and cancelled."""
        reader = BlockingReader()
        with pytest.raises(StreamCancelled, match="within"):
            drain_with_timeout(reader, timeout=0.05)

    def test_custom_close_called(self) -> None:
        """The close hook replaces source.close on timeout."""
        reader = BlockingReader()
        calls: list[str] = []

        def close() -> None:
            calls.append("close")
            reader.close()

        with pytest.raises(StreamCancelled):
            drain_with_timeout(reader, timeout=0.05, close=close)
        assert calls == ["close"]
