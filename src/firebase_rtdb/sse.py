"""Server-sent event stream parsing.

Turns an arbitrarily chunked byte stream into complete frames:

    event: put
    data: {"path": "/", "data": {"a": 1}}

Chunks may split a line (or a multi-byte character) anywhere; the partial
tail is buffered until the next chunk completes it.
"""

from __future__ import annotations

import codecs
import logging
import re
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field

from .constants import DEFAULT_SSE_EVENT

logger = logging.getLogger(__name__)

_LINE_END = re.compile(r"\r\n?|\n")


@dataclass
class SseFrame:
    """A single server-sent event."""

    event_type: str = DEFAULT_SSE_EVENT
    data: list[str] = field(default_factory=list)
    id: str | None = None

    @property
    def data_text(self) -> str:
        """Data lines joined with newlines."""
        return "\n".join(self.data)


class EventStreamReader:
    """Incremental SSE parser, one instance per connection.

    ``feed()`` is the synchronous core and returns the frames completed by a
    chunk. ``frames()`` drives it from an async byte source.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        """Forget buffered state (call before reusing on a new connection)."""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        # pieces of the current line; joined once its line end arrives
        self._pending: list[str] = []
        # the last chunk ended in "\r", so a leading "\n" belongs to that line end
        self._skip_lf = False
        self._event_type: str | None = None
        self._data: list[str] = []
        self._id: str | None = None

    def feed(self, chunk: bytes | str) -> list[SseFrame]:
        """Consume a chunk and return every frame it completes.

        Only the new chunk is scanned, so a long line delivered in many
        small chunks costs time linear in its length.
        """
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        if self._skip_lf and chunk:
            self._skip_lf = False
            if chunk[0] == "\n":
                chunk = chunk[1:]
        if not chunk:
            return []

        frames: list[SseFrame] = []
        pos = 0
        for match in _LINE_END.finditer(chunk):
            self._pending.append(chunk[pos : match.start()])
            line = "".join(self._pending)
            self._pending = []
            pos = match.end()

            frame = self._process_line(line)
            if frame is not None:
                frames.append(frame)

        if pos < len(chunk):
            self._pending.append(chunk[pos:])
        self._skip_lf = chunk[-1] == "\r"
        return frames

    def _process_line(self, line: str) -> SseFrame | None:
        if not line:
            return self._dispatch()

        if line.startswith(":"):
            return None

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if name == "event":
            self._event_type = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            self._id = value
        elif name == "retry":
            pass
        else:
            logger.debug(f"Ignoring unknown SSE field: {name!r}")
        return None

    def _dispatch(self) -> SseFrame | None:
        if not self._data and self._event_type is None:
            self._id = None
            return None

        frame = SseFrame(
            event_type=self._event_type or DEFAULT_SSE_EVENT,
            data=self._data,
            id=self._id,
        )
        self._event_type = None
        self._data = []
        self._id = None
        return frame

    async def frames(self, source: AsyncIterable[bytes]) -> AsyncIterator[SseFrame]:
        """Yield frames until ``source`` is exhausted.

        An unterminated frame at end of stream is discarded.
        """
        async for chunk in source:
            for frame in self.feed(chunk):
                yield frame

        if self._pending or self._data:
            logger.debug("Event stream ended inside a frame; discarding partial frame")
