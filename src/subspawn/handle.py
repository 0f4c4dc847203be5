"""Result handle of a spawned command.

A ``Subprocess`` is both awaitable and async-iterable:

    result = await spawn("echo", ["hi"])        # buffered Result
    async for line in spawn("ls", ["-l"]):       # streamed lines
        ...

Which of both applies is decided once, on the first event-loop iteration
after creation. Starting to iterate lines before that switches the handle
to streaming; starting afterwards is a usage error, since buffering has
already consumed the output. Taking ``.stdout`` without iterating it changes
nothing.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import signal
from collections.abc import AsyncIterator, Generator, Sequence
from contextlib import aclosing
from typing import Any

from .command import Context
from .config import Config, get_config
from .errors import SubprocessError, UsageError
from .pipe import StreamRelay, run_pipeline
from .runtime.collector import OutputCollector, StreamSource
from .runtime.lines import LineStream, iterate_lines, merge_lines
from .runtime.process_runner import (
    ProcessHandle,
    ProcessRunner,
    observe,
    watch_termination,
)
from .types import ConsumptionMode, Result, SpawnOptions, StringInput

__all__ = ["Subprocess", "spawn"]

logger = logging.getLogger(__name__)

OUTPUT_NAMES = ("stdout", "stderr")


def _signal_name(number: int) -> str:
    try:
        return signal.Signals(number).name
    except ValueError:
        return f"signal {number}"


class Subprocess:
    """Handle of one spawned command (one stage of a pipeline).

    Attributes:
        file: Program as given by the caller
        arguments: Program arguments as given by the caller
        options: Normalized spawn options
        context: Command string and start time, shared along a pipeline
    """

    def __init__(
        self,
        file: str,
        arguments: Sequence[str] | None,
        options: SpawnOptions,
        *,
        previous: Subprocess | None = None,
        runner: ProcessRunner | None = None,
        config: Config | None = None,
    ) -> None:
        if isinstance(arguments, (str, bytes)):
            raise TypeError("arguments must be a sequence of strings, not a string")

        self._loop = asyncio.get_running_loop()
        self.file = file
        self.arguments = list(arguments or [])
        self.options = options
        self.context = Context.create(
            file, self.arguments, previous.context if previous is not None else None
        )
        self.config = config or get_config()
        self._runner = runner or ProcessRunner(self.config)

        self._mode = ConsumptionMode.UNDECIDED
        self._decided = False
        self._released: dict[str, asyncio.Event] = {}
        self._sources: dict[str, StreamSource] = {}
        self._collector: OutputCollector | None = None
        self._relays: list[StreamRelay] = []
        self._faults: list[BaseException] = []
        self._background: set[asyncio.Task[Any]] = set()
        self._process_future: asyncio.Future[ProcessHandle] = observe(self._loop.create_future())

        # Must run before the stage task's first step
        self._loop.call_soon(self._decide_mode)

        if previous is None:
            self._task = observe(self._loop.create_task(self._run_stage()))
        else:
            relay = StreamRelay(self)
            previous._add_relay(relay)
            self._task = observe(self._loop.create_task(run_pipeline(previous, self, relay)))

    def __repr__(self) -> str:
        return f"Subprocess(command={self.context.command!r}, mode={self._mode.value})"

    # ========================================================================
    # Public interface
    # ========================================================================

    def __await__(self) -> Generator[Any, None, Result]:
        return asyncio.shield(self._task).__await__()

    def __aiter__(self) -> AsyncIterator[str]:
        """Lines of stdout and stderr, in the order they arrive."""
        return LineStream(self._claim_merged)

    @property
    def stdout(self) -> AsyncIterator[str]:
        """Lines of stdout."""
        return LineStream(lambda: self._claim("stdout"))

    @property
    def stderr(self) -> AsyncIterator[str]:
        """Lines of stderr."""
        return LineStream(lambda: self._claim("stderr"))

    @property
    def process(self) -> asyncio.Future[ProcessHandle]:
        """Awaitable live process, available once it started."""
        return asyncio.shield(self._process_future)

    @property
    def mode(self) -> ConsumptionMode:
        return self._mode

    @property
    def command(self) -> str:
        return self.context.command

    def pipe(self, file: str, arguments: Sequence[str] | None = None, **options: Any) -> Subprocess:
        """Spawn ``file`` with this command's stdout as its stdin.

        Returns:
            Handle of the extended pipeline. It settles once every stage
            settled and reports the most upstream failure.
        """
        return Subprocess(
            file,
            arguments,
            SpawnOptions.from_kwargs(**options),
            previous=self,
            runner=self._runner,
            config=self.config,
        )

    # ========================================================================
    # Consumption mode
    # ========================================================================

    def _decide_mode(self) -> None:
        self._decided = True
        if self._mode is ConsumptionMode.UNDECIDED:
            self._mode = ConsumptionMode.BUFFERED

    def _check_claim(self, name: str) -> None:
        if self._decided:
            raise UsageError(
                f'The output of "{self.context.command}" must be iterated right away, '
                "before awaiting anything else."
            )
        if name in self._released:
            raise UsageError(f'The {name} of "{self.context.command}" can only be iterated once.')

    def _claim(self, name: str) -> AsyncIterator[str]:
        self._check_claim(name)
        self._mode = ConsumptionMode.STREAMED
        self._released[name] = asyncio.Event()
        return self._iterate(name)

    def _claim_merged(self) -> AsyncIterator[str]:
        for name in OUTPUT_NAMES:
            self._check_claim(name)
        return merge_lines(*(self._claim(name) for name in OUTPUT_NAMES))

    async def _iterate(self, name: str) -> AsyncIterator[str]:
        source: StreamSource | None = None
        try:
            await asyncio.shield(self._process_future)
            source = self._sources.get(name)
            if source is not None:
                async with aclosing(iterate_lines(source.read_text)) as lines:
                    async for line in lines:
                        yield line
        finally:
            self._release(name, source)

        # Failures surface from the loop once the output is exhausted
        await self

    def _release(self, name: str, source: StreamSource | None) -> None:
        released = self._released[name]
        if source is None or source.at_eof:
            released.set()
            return

        # Iteration stopped early: keep reading so the process never blocks
        async def discard() -> None:
            try:
                await source.discard()
            finally:
                released.set()

        logger.debug(f"Iteration of {name} stopped early, discarding the rest: {self.context.command}")
        task = self._loop.create_task(discard())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ========================================================================
    # Stage lifecycle
    # ========================================================================

    def _add_relay(self, relay: StreamRelay) -> None:
        self._relays.append(relay)
        source = self._sources.get("stdout")
        if source is not None and source.at_eof:
            task = self._loop.create_task(relay.finish())
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _launch(self) -> ProcessHandle:
        try:
            codecs.lookup(self._encoding)
            return await self._runner.launch(
                self.file, self.arguments, self.options, self.context.command
            )
        except Exception as e:
            logger.debug(f"Launch failed: {self.context.command}: {e!r}")
            error = SubprocessError(
                f"Command failed: {self.context.command}",
                command=self.context.command,
                duration_ms=self.context.duration_ms(),
            )
            error.__cause__ = e
            self._process_future.set_exception(error)
            raise error from e

    @property
    def _encoding(self) -> str:
        return self.options.encoding or self.config.encoding

    async def _run_stage(self) -> Result:
        handle = await self._launch()

        for name in OUTPUT_NAMES:
            reader = getattr(handle, name)
            if reader is None:
                continue
            is_stdout = name == "stdout"
            self._sources[name] = StreamSource(
                name,
                reader,
                encoding=self._encoding,
                chunk_size=self.config.chunk_size,
                on_fault=self._faults.append,
                sinks=self._relays if is_stdout else (),
                on_sinks_closed=(lambda: handle.close_output("stdout")) if is_stdout else None,
            )
        self._collector = OutputCollector(
            list(self._sources), enabled=self._mode is ConsumptionMode.BUFFERED
        )
        self._process_future.set_result(handle)

        watcher = None
        if self.options.timeout is not None or self.options.signal is not None:
            watcher = self._loop.create_task(watch_termination(handle, self.options))

        try:
            returncode = await self._consume(handle)
        finally:
            if watcher is not None:
                watcher.cancel()

        logger.debug(
            f"Subprocess exited pid={handle.pid} returncode={returncode} "
            f"command={self.context.command}"
        )
        return self._settle(returncode)

    async def _consume(self, handle: ProcessHandle) -> int:
        """Read every output stream and wait for the exit."""
        waits: list[Any] = [handle.wait()]
        if isinstance(self.options.stdin, StringInput):
            waits.append(self._feed_input(handle, self.options.stdin.string))

        for name, source in self._sources.items():
            if self._mode is ConsumptionMode.BUFFERED:
                waits.append(self._collector.collect(source))
            elif name in self._released:
                waits.append(self._released[name].wait())
            else:
                waits.append(source.discard())

        returncode, *_ = await asyncio.gather(*waits)
        return returncode

    async def _feed_input(self, handle: ProcessHandle, text: str) -> None:
        try:
            await handle.feed_stdin(text.encode(self._encoding))
        except Exception as e:
            logger.debug(f"Writing stdin failed: {e!r}")
            self._faults.append(e)

    def _settle(self, returncode: int) -> Result:
        collector = self._collector
        fields = {
            "stdout": collector.get("stdout"),
            "stderr": collector.get("stderr"),
            "output": collector.output,
            "command": self.context.command,
            "duration_ms": self.context.duration_ms(),
        }

        cause = self._faults[0] if self._faults else None
        if cause is not None:
            message = f"Command failed: {self.context.command}"
        elif returncode < 0:
            message = f"Command was terminated with {_signal_name(-returncode)}: {self.context.command}"
        elif returncode > 0:
            message = f"Command failed with exit code {returncode}: {self.context.command}"
        else:
            return Result(**fields)

        error = SubprocessError(
            message,
            **fields,
            exit_code=returncode if returncode >= 0 else None,
            signal_name=_signal_name(-returncode) if returncode < 0 else None,
        )
        raise error from cause


def spawn(file: str, arguments: Sequence[str] | None = None, **options: Any) -> Subprocess:
    """Spawn a command.

    Args:
        file: Program name or path
        arguments: Program arguments
        **options: See ``SpawnOptions``; unknown keywords are passed to
            the spawn primitive (e.g. ``start_new_session=True``)

    Returns:
        Handle to await (``Result``) or iterate (lines)

    Raises:
        RuntimeError: No event loop is running
    """
    return Subprocess(file, arguments, SpawnOptions.from_kwargs(**options))
