"""Line sequences over subprocess output.

This module provides:
- iterate_lines(): split a text stream into lines (``\\n`` or ``\\r\\n``)
- merge_lines(): interleave several line sequences, first come first served
- LineStream: a line sequence opened lazily by its first read

Neither function buffers more than one pending read per source, so memory use
stays flat regardless of how much the subprocess prints.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator, Awaitable, Callable

__all__ = ["LineStream", "iterate_lines", "merge_lines"]

logger = logging.getLogger(__name__)

_LINE_BREAK = re.compile(r"\r?\n")


async def iterate_lines(read: Callable[[], Awaitable[str]]) -> AsyncIterator[str]:
    """Yield complete lines from successive ``read()`` calls.

    Args:
        read: Coroutine function returning the next text chunk, "" at the end

    Yields:
        Lines without their terminator. A trailing partial line is yielded
        at the end only if it is not empty.
    """
    buffer = ""
    while chunk := await read():
        *lines, buffer = _LINE_BREAK.split(buffer + chunk)
        for line in lines:
            yield line

    if buffer:
        yield buffer


async def merge_lines(*sources: AsyncIterator[str]) -> AsyncIterator[str]:
    """Interleave several async iterators, yielding values as they arrive.

    Exactly one ``__anext__()`` is outstanding per open source. Whichever
    completes first is yielded and re-armed; exhausted sources are dropped.
    When the consumer stops early or a source raises, outstanding reads are
    cancelled and every source is closed before returning.

    Args:
        sources: Async iterators to merge (async generators are closed)

    Yields:
        Values of all sources; each source's own order is preserved
    """
    pending: dict[asyncio.Future[str], AsyncIterator[str]] = {
        asyncio.ensure_future(source.__anext__()): source for source in sources
    }
    try:
        while pending:
            done, _ = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            # Keep source order among reads that completed together
            for future in [f for f in pending if f in done]:
                source = pending.pop(future)
                try:
                    value = future.result()
                except StopAsyncIteration:
                    continue
                pending[asyncio.ensure_future(source.__anext__())] = source
                yield value
    finally:
        for future in pending:
            future.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for source in sources:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()


class LineStream:
    """Async iterator that opens its line sequence on the first ``__anext__``.

    ``open_lines`` runs synchronously inside that first call, so an
    ``async for`` loop opens the sequence before it awaits anything. Merely
    creating a ``LineStream`` opens nothing.
    """

    def __init__(self, open_lines: Callable[[], AsyncIterator[str]]) -> None:
        self._open_lines = open_lines
        self._lines: AsyncIterator[str] | None = None

    def __aiter__(self) -> LineStream:
        return self

    def __anext__(self) -> Awaitable[str]:
        if self._lines is None:
            self._lines = self._open_lines()
        return self._lines.__anext__()

    async def aclose(self) -> None:
        aclose = getattr(self._lines, "aclose", None)
        if aclose is not None:
            await aclose()
