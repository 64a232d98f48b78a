"""Line framing for raw subprocess output."""

import logging
from typing import List, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_LINE_BYTES = 4 * 1024 * 1024


class LineFramer:
    """
    Incremental splitter turning byte chunks into text lines.

    Bytes after the last newline stay buffered until more data arrives or
    flush() is called at end of stream. Accepts both LF and CRLF endings.
    """

    def __init__(
        self,
        encoding: str = "utf-8",
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
    ):
        """
        Initialize framer.

        Args:
            encoding: Text encoding of the stream
            max_line_bytes: Buffered bytes after which a line is force-split
        """
        self.encoding = encoding
        self.max_line_bytes = max_line_bytes
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Number of buffered bytes without a trailing newline."""
        return len(self._buffer)

    def feed(self, data: bytes) -> List[str]:
        """
        Add a chunk and return every line it completed.

        Args:
            data: Raw bytes from the stream

        Returns:
            Complete lines, without line endings
        """
        self._buffer.extend(data)
        lines: List[str] = []

        while True:
            index = self._buffer.find(b"\n")
            if index < 0:
                break
            raw = bytes(self._buffer[:index])
            del self._buffer[: index + 1]
            lines.append(self._decode(raw))

        if len(self._buffer) > self.max_line_bytes:
            logger.warning(
                f"Line exceeded {self.max_line_bytes} bytes without newline, splitting"
            )
            lines.append(self._decode(bytes(self._buffer)))
            self._buffer.clear()

        return lines

    def flush(self) -> Optional[str]:
        """
        Return the unterminated remainder at end of stream.

        Returns:
            The final line, or None if nothing but whitespace was buffered
        """
        if not self._buffer:
            return None
        text = self._decode(bytes(self._buffer))
        self._buffer.clear()
        return text if text.strip() else None

    def _decode(self, raw: bytes) -> str:
        if raw.endswith(b"\r"):
            raw = raw[:-1]
        return raw.decode(self.encoding, errors="replace")
