# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Demultiplexer for the container engine's framed log/exec stream.

When a container runs without a TTY the engine interleaves stdout and
stderr on one connection.  Each frame is an 8-byte header followed by the
payload::

    [stream id][0][0][0][size (4 bytes, big-endian)][payload ...]

Stream id 0 is stdin, 1 stdout, 2 stderr.  Frame boundaries have nothing
to do with read boundaries: one read may end in the middle of a header,
and one frame may span many reads.  ``FrameParser`` keeps the partial
state between reads so no byte is dropped or duplicated.

Bytes are reassembled per stream first and decoded as UTF-8 only at the
end, so a multi-byte character split across frames decodes intact.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from proxynode.errors import StreamCancelled


logger = logging.getLogger(__name__)

HEADER_SIZE = 8

STDIN = 0
STDOUT = 1
STDERR = 2

# Size of the single reusable read buffer.
DEFAULT_BUFFER_SIZE = 64 * 1024

_CANCELLED = "Stream read cancelled before EOF"


@dataclass(frozen=True)
class DemuxedOutput:
    """Reassembled output of one stream.

    Attributes:
        stdout: Decoded standard output.
        stderr: Decoded standard error.
    """

    stdout: str
    stderr: str


class FrameParser:
    """Incremental parser for the framed stream format.

    State alternates between collecting a header and collecting a
    payload.  ``feed`` accepts arbitrary chunks and returns the payload
    pieces completed by that chunk as ``(stream id, bytes)`` tuples, in
    stream order.  Large payloads come back in several pieces.
    """

    def __init__(self) -> None:
        self._header = bytearray()
        self._stream: int | None = None
        self._remaining = 0
        self._emitted = 0

    def feed(
        self, data: bytes | bytearray | memoryview
    ) -> list[tuple[int, bytes]]:
        """Consume a chunk and return the payload pieces it completes.

        The returned bytes are copies, so callers may reuse ``data``
        as soon as ``feed`` returns.
        """
        view = memoryview(data)
        pieces: list[tuple[int, bytes]] = []
        pos = 0
        end = len(view)

        while pos < end:
            if self._stream is None:
                need = HEADER_SIZE - len(self._header)
                chunk = view[pos : pos + need]
                self._header += chunk
                pos += len(chunk)
                if len(self._header) < HEADER_SIZE:
                    break
                stream = self._header[0]
                size = int.from_bytes(self._header[4:8], "big")
                self._header.clear()
                if size == 0:
                    continue
                self._stream = stream
                self._remaining = size
                self._emitted = 0
            else:
                chunk = view[pos : pos + self._remaining]
                pos += len(chunk)
                self._remaining -= len(chunk)
                self._emitted += len(chunk)
                pieces.append((self._stream, bytes(chunk)))
                if self._remaining == 0:
                    self._stream = None

        return pieces

    @property
    def pending(self) -> int:
        """Bytes belonging to an incomplete frame (header or payload)."""
        if self._stream is None:
            return len(self._header)
        return self._remaining

    def at_boundary(self) -> bool:
        """Return True when no frame is partially consumed."""
        return self._stream is None and not self._header

    def partial_frame(self) -> tuple[int | None, int]:
        """Return ``(stream id, bytes emitted)`` of an incomplete frame.

        Returns ``(None, 0)`` at a frame boundary.
        """
        if self._stream is None:
            return None, 0
        return self._stream, self._emitted


def _make_reader(source: Any):
    """Return a ``read_into(buffer) -> int`` callable for ``source``.

    Supports file-like objects (``readinto``), sockets (``recv_into``)
    and anything with a plain ``read(n)``.
    """
    if hasattr(source, "readinto"):
        return source.readinto
    if hasattr(source, "recv_into"):
        return source.recv_into

    def read_into(buffer: bytearray) -> int:
        data = source.read(len(buffer))
        if not data:
            return 0
        size = len(data)
        buffer[:size] = data
        return size

    return read_into


def demultiplex(
    source: Any,
    buffer_size: int = DEFAULT_BUFFER_SIZE,
    cancel: threading.Event | None = None,
) -> DemuxedOutput:
    """Drain a framed stream into separate stdout and stderr text.

    Args:
        source: Readable stream (file object, socket or response body).
        buffer_size: Size of the reusable read buffer.
        cancel: Optional event; checked between reads.

    Returns:
        Reassembled and decoded output.

    Raises:
        StreamCancelled: If ``cancel`` was set before EOF.
    """
    if buffer_size < HEADER_SIZE:
        raise ValueError(f"buffer_size must be >= {HEADER_SIZE}")

    read_into = _make_reader(source)
    buffer = bytearray(buffer_size)
    view = memoryview(buffer)
    parser = FrameParser()
    out = bytearray()
    err = bytearray()

    while True:
        if cancel is not None and cancel.is_set():
            raise StreamCancelled(_CANCELLED)
        try:
            count = read_into(view)
        except (OSError, ValueError) as e:
            # Reads on a source closed by a watchdog end up here.
            if cancel is not None and cancel.is_set():
                raise StreamCancelled(_CANCELLED) from e
            raise
        if not count:
            if cancel is not None and cancel.is_set():
                raise StreamCancelled(_CANCELLED)
            break
        for stream, payload in parser.feed(view[:count]):
            if stream == STDOUT:
                out += payload
            elif stream == STDERR:
                err += payload
            else:
                logger.debug(
                    "Discarding %d bytes on stream %d", len(payload), stream
                )

    if not parser.at_boundary():
        stream, emitted = parser.partial_frame()
        if emitted and stream == STDOUT:
            del out[-emitted:]
        elif emitted and stream == STDERR:
            del err[-emitted:]
        logger.warning(
            "Stream ended inside a frame, discarding %d received and "
            "%d missing bytes",
            emitted,
            parser.pending,
        )

    return DemuxedOutput(
        stdout=out.decode("utf-8", errors="replace"),
        stderr=err.decode("utf-8", errors="replace"),
    )


def drain_with_timeout(
    source: Any,
    timeout: float,
    buffer_size: int = DEFAULT_BUFFER_SIZE,
    close: Callable[[], None] | None = None,
) -> DemuxedOutput:
    """Demultiplex ``source`` but give up after ``timeout`` seconds.

    A watchdog timer sets the cancel event and closes the source, which
    unblocks a read waiting on a silent peer.  ``close`` replaces
    ``source.close`` for sources that need more than that (raw sockets).

    Raises:
        StreamCancelled: If the deadline passed before EOF.
    """
    cancel = threading.Event()

    def _expire() -> None:
        cancel.set()
        try:
            (close or source.close)()
        except OSError:
            logger.debug("Error closing stream on timeout", exc_info=True)

    timer = threading.Timer(timeout, _expire)
    timer.daemon = True
    timer.start()
    try:
        return demultiplex(source, buffer_size=buffer_size, cancel=cancel)
    except StreamCancelled:
        raise StreamCancelled(
            f"Stream not drained within {timeout}s"
        ) from None
    finally:
        timer.cancel()
