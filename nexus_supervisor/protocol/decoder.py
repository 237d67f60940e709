"""
Line decoder for the worker's output streams.

Pipe reads arrive in arbitrary chunks; this turns them back into the lines the
worker printed, independent of where the chunk boundaries fell.
"""

from typing import Iterator, List

from ..exceptions import LineTooLongError

DEFAULT_MAX_LINE_LENGTH = 1024 * 1024


class LineDecoder:
    """
    Incremental splitter of a byte stream into text lines.

    ``feed()`` buffers any trailing partial line across calls and ``flush()``
    returns it at end of stream. A line longer than ``max_line_length`` bytes
    is discarded in full (up to and including its newline) and reported with
    ``LineTooLongError``; the decoder stays usable afterwards.
    """

    def __init__(self, max_line_length: int = DEFAULT_MAX_LINE_LENGTH, encoding: str = "utf-8"):
        if max_line_length <= 0:
            raise ValueError("max_line_length must be positive")
        self.max_line_length = max_line_length
        self.encoding = encoding
        self._buffer = bytearray()
        self._discarding = False

    def feed(self, chunk: bytes) -> Iterator[str]:
        """
        Add a chunk and lazily yield every line it completes.

        Raises:
            LineTooLongError: when the buffered line outgrows the limit. Lines
                completed earlier in the same chunk have already been yielded;
                the rest of the chunk is kept and surfaces on the next call.
        """
        self._buffer.extend(chunk)
        return self._drain()

    def _drain(self) -> Iterator[str]:
        while True:
            newline = self._buffer.find(b"\n")

            if self._discarding:
                if newline < 0:
                    self._buffer.clear()
                    return
                del self._buffer[: newline + 1]
                self._discarding = False
                continue

            if newline < 0:
                if len(self._buffer) > self.max_line_length:
                    size = len(self._buffer)
                    self._buffer.clear()
                    self._discarding = True
                    raise LineTooLongError(
                        f"Line exceeds {self.max_line_length} bytes ({size} buffered)"
                    )
                return

            if newline > self.max_line_length:
                del self._buffer[: newline + 1]
                raise LineTooLongError(f"Line exceeds {self.max_line_length} bytes ({newline})")

            raw = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]
            yield self._decode(raw)

    def flush(self) -> List[str]:
        """Return the final unterminated line, if any, and clear the buffer."""
        if self._discarding:
            self._buffer.clear()
            self._discarding = False
            return []
        if not self._buffer:
            return []
        raw = bytes(self._buffer)
        self._buffer.clear()
        return [self._decode(raw)]

    def reset(self) -> None:
        """Drop buffered data; used when a new worker session starts."""
        self._buffer.clear()
        self._discarding = False

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def _decode(self, raw: bytes) -> str:
        if raw.endswith(b"\r"):
            raw = raw[:-1]
        return raw.decode(self.encoding, errors="replace")
