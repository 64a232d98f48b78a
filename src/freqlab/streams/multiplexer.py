"""Merge subprocess output streams into one ordered line sequence."""

import asyncio
import itertools
import logging
from typing import Callable, Dict, List, Optional

from ..models.stream_models import StreamLine
from .channel import EventChannel, Subscription
from .framing import LineFramer

logger = logging.getLogger(__name__)

LineCallback = Callable[[StreamLine], None]


class LogStreamMultiplexer:
    """
    Frames one or more byte streams into tagged, sequenced lines.

    Each attached stream gets its own pump task. Lines from every source share
    one sequence counter, so consumers can restore the interleaving order.
    Lines go to the optional inline callback first, then to the channel.

    PATTERN: The owner consumes lines through on_line (never lossy); other
    observers subscribe to the bounded channel.
    """

    def __init__(
        self,
        capacity: int = 1000,
        on_line: Optional[LineCallback] = None,
        encoding: str = "utf-8",
        chunk_size: int = 65536,
        name: str = "mux",
    ):
        """
        Initialize multiplexer.

        Args:
            capacity: Per-subscriber channel capacity
            on_line: Inline callback invoked for every line
            encoding: Text encoding of the streams
            chunk_size: Bytes read per pump iteration
            name: Name used in log messages
        """
        self.name = name
        self.encoding = encoding
        self.chunk_size = chunk_size
        self.channel: EventChannel[StreamLine] = EventChannel(capacity, name=name)
        self._on_line = on_line
        self._seq = itertools.count(1)
        self._last_seq = 0
        self._pumps: Dict[str, asyncio.Task] = {}

    @property
    def last_seq(self) -> int:
        """Sequence number of the most recent line (0 before any line)."""
        return self._last_seq

    def attach(self, source: str, reader: asyncio.StreamReader) -> asyncio.Task:
        """
        Start pumping a stream.

        Args:
            source: Tag for lines read from this stream
            reader: Stream to read until EOF

        Returns:
            The pump task
        """
        if source in self._pumps:
            raise ValueError(f"Source '{source}' already attached to {self.name}")

        task = asyncio.create_task(self._pump(source, reader))
        self._pumps[source] = task
        return task

    def emit(self, source: str, text: str) -> StreamLine:
        """
        Inject a line that did not come from an attached stream.

        Args:
            source: Tag for the line
            text: Line text

        Returns:
            The sequenced line
        """
        seq = next(self._seq)
        self._last_seq = seq
        line = StreamLine(seq=seq, source=source, text=text)

        if self._on_line is not None:
            try:
                self._on_line(line)
            except Exception as e:
                logger.error(f"Line callback failed on {self.name}: {e}", exc_info=True)

        self.channel.publish(line)
        return line

    def subscribe(self, capacity: Optional[int] = None) -> Subscription[StreamLine]:
        """Subscribe to lines published from now on."""
        return self.channel.subscribe(capacity)

    async def _pump(self, source: str, reader: asyncio.StreamReader) -> None:
        framer = LineFramer(encoding=self.encoding)
        while True:
            chunk = await reader.read(self.chunk_size)
            if not chunk:
                break
            for text in framer.feed(chunk):
                self.emit(source, text)

        tail = framer.flush()
        if tail is not None:
            self.emit(source, tail)
        logger.debug(f"{self.name}: {source} reached EOF")

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for every attached stream to reach EOF.

        GOTCHA: A grandchild process that inherited the pipes can hold them
        open after the direct child exits. With a timeout, pumps still running
        at the deadline are cancelled.

        Args:
            timeout: Seconds to wait (None waits forever)

        Returns:
            True if every stream reached EOF
        """
        pumps = [task for task in self._pumps.values() if not task.done()]
        if pumps:
            _, pending = await asyncio.wait(pumps, timeout=timeout)
            if pending:
                logger.warning(
                    f"{self.name}: {len(pending)} stream(s) still open after "
                    f"{timeout}s, abandoning"
                )
                await self._cancel(list(pending))
                return False

        for source, task in self._pumps.items():
            if not task.cancelled() and task.exception() is not None:
                logger.warning(f"{self.name}: reading {source} failed: {task.exception()}")
        return True

    async def close(self) -> None:
        """Stop every pump and close the channel."""
        await self._cancel([task for task in self._pumps.values() if not task.done()])
        self.channel.close()

    async def _cancel(self, tasks: List[asyncio.Task]) -> None:
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
