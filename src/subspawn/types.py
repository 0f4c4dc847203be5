"""subspawn type definitions.

Defines spawn options, stdio modes, the consumption mode of a subprocess
and the result record returned on success.
"""

from __future__ import annotations

import signal as signal_module
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import IO, Any, Protocol, Union

__all__ = [
    "ConsumptionMode",
    "StringInput",
    "StdioMode",
    "CancelSignal",
    "SpawnOptions",
    "Result",
    "STDIO_NAMES",
]

STDIO_NAMES = ("stdin", "stdout", "stderr")


class ConsumptionMode(str, Enum):
    """How a subprocess' output is consumed.

    - UNDECIDED: the first event-loop iteration has not run yet
    - BUFFERED: output is captured into whole strings (default)
    - STREAMED: output is delivered line by line, nothing is captured
    """

    UNDECIDED = "undecided"
    BUFFERED = "buffered"
    STREAMED = "streamed"


@dataclass(frozen=True)
class StringInput:
    """Literal text written to stdin, which is then closed.

    Attributes:
        string: Text to write
    """

    string: str


class CancelSignal(Protocol):
    """Anything that can be awaited until cancellation is requested.

    ``anyio.Event`` and ``asyncio.Event`` both qualify.
    """

    async def wait(self) -> Any: ...


# "pipe" | "ignore" | "inherit", a literal input (stdin only), a file
# descriptor or a file object.
StdioMode = Union[str, StringInput, int, IO[Any]]


def _normalize_stdin(value: Any) -> Any:
    if isinstance(value, Mapping) and "string" in value:
        return StringInput(str(value["string"]))
    return value


@dataclass(frozen=True)
class SpawnOptions:
    """Options for one spawned command.

    Attributes:
        stdin: Stdin mode; StringInput writes literal text
        stdout: Stdout mode
        stderr: Stderr mode
        cwd: Working directory (resolved to an absolute path)
        env: Environment overrides, merged over the current environment
        prefer_local: Prepend local virtualenv bin directories to PATH
        shell: Run through the shell; None lets the platform decide
        signal: Awaitable cancellation signal; terminates the process when set
        timeout: Seconds before the process is terminated
        kill_signal: Signal sent on timeout or cancellation
        encoding: Output text encoding (None = configured default)
        native: Extra keyword arguments for the spawn primitive
    """

    stdin: StdioMode = "pipe"
    stdout: StdioMode = "pipe"
    stderr: StdioMode = "pipe"
    cwd: Any = None
    env: Mapping[str, str] | None = None
    prefer_local: bool = False
    shell: bool | None = None
    signal: CancelSignal | None = None
    timeout: float | None = None
    kill_signal: int = signal_module.SIGTERM
    encoding: str | None = None
    native: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_kwargs(cls, **kwargs: Any) -> SpawnOptions:
        """Build options from ``spawn()`` keyword arguments.

        ``stdio`` (a single mode or a sequence of up to three modes) takes
        priority over ``stdin``/``stdout``/``stderr``. Unknown keywords are
        kept in ``native`` and forwarded to the spawn primitive.
        """
        stdio = kwargs.pop("stdio", None)
        if stdio is not None:
            modes = [stdio] * 3 if isinstance(stdio, str) else list(stdio)
            for name, mode in zip(STDIO_NAMES, modes):
                if mode is not None:
                    kwargs[name] = mode

        known = {item.name for item in fields(cls)} - {"native"}
        native = {key: kwargs.pop(key) for key in list(kwargs) if key not in known}
        if "stdin" in kwargs:
            kwargs["stdin"] = _normalize_stdin(kwargs["stdin"])
        options = {key: value for key, value in kwargs.items() if value is not None}
        return cls(**options, native=native)

    def with_stdin(self, stdin: StdioMode) -> SpawnOptions:
        """Return a copy with a different stdin mode."""
        return replace(self, stdin=stdin)

    def is_piped(self, name: str) -> bool:
        """Whether the given stdio channel is connected to a pipe we own."""
        mode = getattr(self, name)
        return mode == "pipe" or isinstance(mode, StringInput)


@dataclass
class Result:
    """Successful outcome of a command or pipeline.

    Attributes:
        stdout: Captured stdout without its final newline
        stderr: Captured stderr without its final newline
        output: Interleaved stdout + stderr without its final newline
        command: Human-readable command string
        duration_ms: Milliseconds since the first stage started
    """

    stdout: str | None
    stderr: str | None
    output: str
    command: str
    duration_ms: float
