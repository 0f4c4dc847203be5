"""subspawn exception classes.

Every failure of a spawned command is normalized into ``SubprocessError``,
which carries the same fields as a successful ``Result`` plus the exit
status. Configuration mistakes that prevent a pipeline from being wired are
reported as ``PipelineError``; API misuse as ``UsageError``.
"""

from __future__ import annotations

__all__ = [
    "SpawnError",
    "SubprocessError",
    "PipelineError",
    "UsageError",
    "IGNORED_STREAM_ERRORS",
]

# Raised by streams when the other side of a pipe goes away. These are
# expected when a subprocess exits or a pipeline is torn down.
IGNORED_STREAM_ERRORS: tuple[type[BaseException], ...] = (
    BrokenPipeError,
    ConnectionResetError,
)


class SpawnError(Exception):
    """Base exception for subspawn."""
    pass


class SubprocessError(SpawnError):
    """A command failed to start, failed while running, or exited abnormally.

    Attributes:
        command: Human-readable command string (``a | b`` for pipelines)
        stdout: Captured stdout, "" when streamed, None when not piped
        stderr: Captured stderr, same rules as stdout
        output: Interleaved stdout + stderr
        duration_ms: Milliseconds since the first stage started
        exit_code: Exit code, None when the process did not exit normally
        signal_name: Name of the terminating signal (e.g. "SIGTERM")
    """

    def __init__(
        self,
        message: str,
        *,
        command: str,
        stdout: str | None = "",
        stderr: str | None = "",
        output: str = "",
        duration_ms: float = 0.0,
        exit_code: int | None = None,
        signal_name: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.command = command
        self.stdout = stdout
        self.stderr = stderr
        self.output = output
        self.duration_ms = duration_ms
        self.exit_code = exit_code
        self.signal_name = signal_name

    @property
    def cause(self) -> BaseException | None:
        """Underlying error (launch or stream failure), if any."""
        return self.__cause__


class PipelineError(SpawnError):
    """Stdio of a pipeline end was redirected in a way that prevents piping.

    Attributes:
        command: Command string of the pipeline being wired
    """

    def __init__(self, message: str, command: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.command = command


class UsageError(SpawnError):
    """The subprocess API was used incorrectly (e.g. iterating too late)."""
    pass
