"""Pipelines: one stage's stdout feeding the next stage's stdin.

The relay forwards raw bytes with backpressure. Its own write errors are
swallowed because each stage already reports the errors of its streams.
When the destination stops reading, the source's stdout is closed so an
endless source gets EPIPE instead of blocking forever.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from .errors import IGNORED_STREAM_ERRORS, PipelineError
from .runtime.process_runner import ProcessHandle
from .types import Result, StringInput

if TYPE_CHECKING:
    from .handle import Subprocess

__all__ = ["StreamRelay", "connect", "run_pipeline", "close_stdin"]

logger = logging.getLogger(__name__)


class StreamRelay:
    """Writes the source's stdout chunks to the destination's stdin."""

    def __init__(self, destination: Subprocess) -> None:
        self.destination = destination
        self.closed = False
        self._handle: ProcessHandle | None = None

    async def send(self, chunk: bytes) -> bool:
        """Write one chunk; False once the destination stopped accepting input."""
        if self.closed:
            return False

        try:
            if self._handle is None:
                self._handle = await self.destination.process
            stdin = self._handle.stdin
            if stdin is None or stdin.is_closing():
                self.closed = True
                return False
            stdin.write(chunk)
            await stdin.drain()
        except IGNORED_STREAM_ERRORS:
            self.closed = True
        except Exception as e:
            logger.debug(f"Relay to {self.destination.command} stopped: {e!r}")
            self.closed = True
        else:
            return True

        logger.debug(f"Relay closed by {self.destination.command}")
        return False

    async def finish(self) -> None:
        """Close the destination's stdin once the source's stdout ended."""
        if self.closed:
            return
        self.closed = True
        await close_stdin(self.destination)

    def abandon(self) -> None:
        """Stop relaying without touching the destination."""
        self.closed = True


async def close_stdin(stage: Subprocess) -> None:
    """Close a stage's stdin, if it started and has one."""
    try:
        handle = await stage.process
    except Exception:
        return
    await handle.close_stdin()


async def connect(source: Subprocess, destination: Subprocess, relay: StreamRelay) -> None:
    """Check that both ends of a pipe can be connected.

    Raises:
        PipelineError: An end was redirected away from the pipe
        SubprocessError: A stage failed to start
    """
    try:
        source_handle = await source.process
        destination_handle = await destination.process
        if destination_handle.stdin is None or isinstance(destination.options.stdin, StringInput):
            raise PipelineError(
                f'The "stdin" option of "{destination.command}" must be "pipe" '
                "to receive the output of the previous command.",
                command=destination.command,
            )
        if source_handle.stdout is None:
            raise PipelineError(
                f'The "stdout" option of "{source.command}" must be "pipe" '
                "to be piped to the next command.",
                command=destination.command,
            )
    except Exception:
        relay.abandon()
        await asyncio.gather(close_stdin(source), close_stdin(destination))
        raise


async def run_pipeline(source: Subprocess, destination: Subprocess, relay: StreamRelay) -> Result:
    """Run the destination stage and settle once both stages settled.

    Returns:
        The destination's result

    Raises:
        The first failure of: connecting, the source, the destination
    """
    outcomes = await asyncio.gather(
        connect(source, destination, relay),
        asyncio.shield(source._task),
        destination._run_stage(),
        return_exceptions=True,
    )
    for outcome in outcomes:
        if isinstance(outcome, BaseException):
            raise outcome
    return outcomes[2]
