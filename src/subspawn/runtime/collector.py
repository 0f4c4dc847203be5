"""Output collection for subprocess streams.

This module provides:
- StreamSource: the single reader of one output pipe. Raw chunks are
  forwarded to pipeline sinks, decoded incrementally, and read faults are
  reported instead of raised.
- OutputCollector: buffers decoded stdout/stderr (plus their interleaving)
  into whole strings when the caller did not opt into line iteration.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from collections.abc import Callable, Sequence
from typing import Protocol

from ..errors import IGNORED_STREAM_ERRORS

__all__ = [
    "ChunkSink",
    "StreamSource",
    "OutputCollector",
    "strip_final_newline",
]

logger = logging.getLogger(__name__)


def strip_final_newline(text: str | None) -> str | None:
    """Remove exactly one trailing ``\\n`` or ``\\r\\n``."""
    if not text or text[-1] != "\n":
        return text
    return text[:-2] if text.endswith("\r\n") else text[:-1]


class ChunkSink(Protocol):
    """Receiver of raw output chunks (e.g. the stdin of a pipeline stage)."""

    async def send(self, chunk: bytes) -> bool:
        """Forward a chunk. Returns False once the sink stopped accepting data."""
        ...

    async def finish(self) -> None:
        """Signal that the source reached its end."""
        ...


class StreamSource:
    """Single reader of one subprocess output stream.

    Every consumer (collector, line iterator or drain) reads through this
    object, so each byte is read from the pipe exactly once and relayed to
    every registered sink before being handed to the consumer.

    Attributes:
        name: "stdout" or "stderr"
        at_eof: True once the end of the stream (or a fault) was reached
    """

    def __init__(
        self,
        name: str,
        reader: asyncio.StreamReader,
        *,
        encoding: str,
        chunk_size: int,
        on_fault: Callable[[BaseException], None],
        sinks: Sequence[ChunkSink] = (),
        on_sinks_closed: Callable[[], None] | None = None,
    ) -> None:
        self.name = name
        self.at_eof = False
        self._reader = reader
        self._chunk_size = chunk_size
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._on_fault = on_fault
        self._sinks = sinks
        self._on_sinks_closed = on_sinks_closed
        self._closed_sinks: set[int] = set()

    async def read(self) -> bytes:
        """Read the next raw chunk, b"" at the end of the stream."""
        if self.at_eof:
            return b""

        try:
            chunk = await self._reader.read(self._chunk_size)
        except IGNORED_STREAM_ERRORS:
            chunk = b""
        except Exception as e:
            logger.debug(f"{self.name} read failed: {e!r}")
            self._on_fault(e)
            chunk = b""

        if chunk:
            await self._relay(chunk)
            return chunk

        self.at_eof = True
        for sink in list(self._sinks):
            await sink.finish()
        return b""

    async def read_text(self) -> str:
        """Read and decode the next chunk, "" at the end of the stream.

        Multi-byte characters split across chunks are reassembled.
        """
        while not self.at_eof:
            chunk = await self.read()
            text = self._decoder.decode(chunk, final=self.at_eof)
            if text:
                return text
        return ""

    async def discard(self) -> None:
        """Read and drop everything left, so the process never blocks on us."""
        while await self.read():
            pass

    async def _relay(self, chunk: bytes) -> None:
        for sink in list(self._sinks):
            if id(sink) in self._closed_sinks:
                continue
            if not await sink.send(chunk):
                self._closed_sinks.add(id(sink))
                if len(self._closed_sinks) == len(self._sinks) and self._on_sinks_closed:
                    self._on_sinks_closed()


class OutputCollector:
    """Buffers decoded output of a subprocess.

    Inactive collectors (line iteration mode) keep empty buffers. Streams
    that were not piped produce None instead of "".
    """

    def __init__(self, piped: Sequence[str], *, enabled: bool = True) -> None:
        self.enabled = enabled
        self._buffers: dict[str, list[str]] = {name: [] for name in piped}
        self._output: list[str] = []

    def add(self, name: str, text: str) -> None:
        """Record a decoded chunk of the given stream."""
        if not self.enabled or not text:
            return
        self._buffers[name].append(text)
        self._output.append(text)

    async def collect(self, source: StreamSource) -> None:
        """Consume ``source`` until its end."""
        while text := await source.read_text():
            self.add(source.name, text)

    def get(self, name: str) -> str | None:
        """Finalized text of one stream."""
        chunks = self._buffers.get(name)
        if chunks is None:
            return None
        return strip_final_newline("".join(chunks))

    @property
    def output(self) -> str:
        """Finalized interleaved text of all streams."""
        return strip_final_newline("".join(self._output)) or ""
