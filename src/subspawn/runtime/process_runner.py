"""Process launcher for subspawn.

This module provides:
- Option normalization (absolute cwd, environment merge, local bin paths)
- Re-invocation of the running Python with its interpreter flags
- Automatic cmd.exe forcing and escaping on Windows
- ProcessHandle: the live process plus its transport
- watch_termination(): timeout / cancellation signal handling

Key design points:
- Processes are created through ``loop.subprocess_exec`` so the transport
  stays reachable; pipelines need it to close a pipe early
- The ambient environment is only read (snapshot), never modified
- Termination requests are advisory: callers still wait for the exit event
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import anyio

from ..config import Config, get_config
from ..errors import IGNORED_STREAM_ERRORS
from ..types import SpawnOptions, StringInput
from ..windows import escape_arguments, needs_forced_shell

__all__ = [
    "ProcessHandle",
    "ProcessRunner",
    "interpreter_flags",
    "resolve_interpreter",
    "add_local_paths",
    "build_env",
    "observe",
    "watch_termination",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Short options of the interpreter that consume a value
_VALUE_OPTIONS = "WX"
# Short options that end interpreter option parsing
_TERMINAL_OPTIONS = "cm"
# Interactive inspection would make the child wait on the terminal
_DROPPED_OPTIONS = "i"

_FD_BY_NAME = {"stdin": 0, "stdout": 1, "stderr": 2}


def interpreter_flags(argv: Sequence[str]) -> list[str]:
    """Extract interpreter options from a full interpreter command line.

    Args:
        argv: Command line such as ``sys.orig_argv``

    Returns:
        Options given before the script/``-c``/``-m``, minus ``-i``
    """
    flags: list[str] = []
    remaining = iter(argv[1:])
    for argument in remaining:
        if argument in ("-", "--") or not argument.startswith("-"):
            break
        if argument.startswith("--"):
            flags.append(argument)
            if argument == "--check-hash-based-pycs":
                flags.append(next(remaining, ""))
            continue

        kept = ""
        letters = argument[1:]
        for position, letter in enumerate(letters):
            if letter in _TERMINAL_OPTIONS:
                if kept:
                    flags.append(f"-{kept}")
                return flags
            if letter in _VALUE_OPTIONS:
                if kept:
                    flags.append(f"-{kept}")
                    kept = ""
                flags.extend([f"-{letter}", letters[position + 1:] or next(remaining, "")])
                break
            if letter not in _DROPPED_OPTIONS:
                kept += letter
        if kept:
            flags.append(f"-{kept}")
    return flags


def _interpreter_names(executable: str) -> set[str]:
    major, minor = sys.version_info[:2]
    names = {"python", f"python{major}", f"python{major}.{minor}"}
    if executable:
        names.add(os.path.basename(executable).lower().removesuffix(".exe"))
    return names


def resolve_interpreter(
    file: str,
    arguments: Sequence[str],
    *,
    executable: str = sys.executable,
    argv: Sequence[str] | None = None,
) -> tuple[str, list[str]]:
    """Run ``python`` as the current interpreter, keeping its flags.

    Paths (``/usr/bin/python``, ``.venv/bin/python``) are left alone: they
    state a clear intent to use that specific interpreter.
    """
    if not executable or os.path.basename(file) != file:
        return file, list(arguments)
    if file.lower().removesuffix(".exe") not in _interpreter_names(executable):
        return file, list(arguments)

    orig_argv = sys.orig_argv if argv is None else argv
    return executable, [*interpreter_flags(orig_argv), *arguments]


def _ancestors(directory: str) -> list[str]:
    directories = [directory]
    while (parent := os.path.dirname(directories[-1])) != directories[-1]:
        directories.append(parent)
    return directories


def add_local_paths(
    env: Mapping[str, str], cwd: str, *, platform: str = sys.platform
) -> dict[str, str]:
    """Prepend ``.venv`` bin directories of ``cwd`` and its ancestors to PATH."""
    env = dict(env)
    path_value = env.pop("PATH", None)
    fallback = env.pop("Path", "")
    path_value = fallback if path_value is None else path_value

    path_parts = path_value.split(os.pathsep)
    bin_name = "Scripts" if platform == "win32" else "bin"
    local_paths = [
        os.path.join(directory, ".venv", bin_name)
        for directory in _ancestors(os.path.abspath(cwd))
    ]
    local_paths = [path for path in local_paths if path not in path_parts]
    env["PATH"] = os.pathsep.join(part for part in [*local_paths, path_value] if part)
    return env


def build_env(
    options: SpawnOptions, cwd: str, environ: Mapping[str, str] | None = None
) -> dict[str, str] | None:
    """Compute the child environment; None means inherit unchanged.

    Args:
        options: Spawn options (env overrides, prefer_local)
        cwd: Absolute working directory
        environ: Ambient environment snapshot (default: os.environ)
    """
    environ = os.environ if environ is None else environ
    env = None if options.env is None else {**environ, **options.env}
    if options.prefer_local:
        env = add_local_paths(environ if env is None else env, cwd)
    return env


def _stdio_argument(name: str, mode: Any) -> Any:
    if mode == "pipe" or isinstance(mode, StringInput):
        return asyncio.subprocess.PIPE
    if mode == "ignore":
        return asyncio.subprocess.DEVNULL
    if mode == "inherit":
        return None
    if isinstance(mode, str):
        raise ValueError(f'The "{name}" option must be "pipe", "ignore" or "inherit", not {mode!r}')
    return mode


def _ignore_failure(future: asyncio.Future[Any]) -> None:
    if not future.cancelled():
        future.exception()


def observe(future: asyncio.Future[Any]) -> asyncio.Future[Any]:
    """Mark a future's failure as handled, even if nobody awaits it."""
    future.add_done_callback(_ignore_failure)
    return future


@dataclass
class ProcessHandle:
    """A live subprocess.

    Attributes:
        process: asyncio process (stdin/stdout/stderr streams, wait())
        transport: Subprocess transport owning the pipes
    """

    process: asyncio.subprocess.Process
    transport: asyncio.SubprocessTransport

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def stdin(self) -> asyncio.StreamWriter | None:
        return self.process.stdin

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self.process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self.process.stderr

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    async def wait(self) -> int:
        """Wait for the process to exit and return its return code."""
        return await self.process.wait()

    def send_signal(self, sig: int) -> bool:
        """Send a signal; returns False if the process is already gone."""
        try:
            self.process.send_signal(sig)
        except ProcessLookupError:
            return False
        return True

    def terminate(self) -> bool:
        """Send the default termination signal."""
        return self.send_signal(signal.SIGTERM)

    def close_output(self, name: str) -> None:
        """Close our end of an output pipe; the child gets EPIPE on write."""
        pipe = self.transport.get_pipe_transport(_FD_BY_NAME[name])
        if pipe is not None:
            pipe.close()

    async def feed_stdin(self, data: bytes) -> None:
        """Write ``data`` to stdin, then close it.

        Broken pipes (the child exited or closed stdin) are ignored.

        Raises:
            Exception: Any other stream error
        """
        if self.stdin is None:
            return
        try:
            self.stdin.write(data)
            await self.stdin.drain()
        except IGNORED_STREAM_ERRORS:
            pass
        await self.close_stdin()

    async def close_stdin(self) -> None:
        """Close stdin, ignoring broken pipes."""
        if self.stdin is None:
            return
        try:
            self.stdin.close()
            await self.stdin.wait_closed()
        except IGNORED_STREAM_ERRORS:
            pass


class ProcessRunner:
    """Starts subprocesses with normalized options.

    Example:
        runner = ProcessRunner()
        handle = await runner.launch("ls", ["-l"], SpawnOptions(), "ls -l")
        await handle.wait()
    """

    def __init__(self, config: Config | None = None) -> None:
        self.config = config or get_config()

    async def launch(
        self,
        file: str,
        arguments: Sequence[str],
        options: SpawnOptions,
        command: str = "",
    ) -> ProcessHandle:
        """Start a subprocess.

        Args:
            file: Program name or path
            arguments: Program arguments
            options: Spawn options
            command: Command string, for logging

        Returns:
            Handle of the started process

        Raises:
            OSError: The program could not be started (not found, not
                executable, invalid cwd)
            ValueError, TypeError: Invalid options
        """
        loop = asyncio.get_running_loop()
        file, arguments = resolve_interpreter(file, arguments)

        cwd = os.path.abspath(os.fspath(options.cwd if options.cwd is not None else "."))
        env = build_env(options, cwd)
        forced_shell = needs_forced_shell(file, shell=options.shell, cwd=cwd, env=env)
        file, arguments = escape_arguments(file, arguments, forced_shell)

        kwargs = self._build_subprocess_kwargs(options, cwd, env)

        def protocol_factory() -> asyncio.subprocess.SubprocessStreamProtocol:
            return asyncio.subprocess.SubprocessStreamProtocol(
                limit=self.config.stream_limit, loop=loop
            )

        if options.shell or forced_shell:
            transport, protocol = await loop.subprocess_shell(
                protocol_factory, " ".join([file, *arguments]), **kwargs
            )
        else:
            transport, protocol = await loop.subprocess_exec(
                protocol_factory, file, *arguments, **kwargs
            )

        process = asyncio.subprocess.Process(transport, protocol, loop)
        logger.debug(
            f"Started subprocess pid={process.pid} "
            f"command={command or file} cwd={cwd} forced_shell={forced_shell}"
        )
        return ProcessHandle(process=process, transport=transport)

    def _build_subprocess_kwargs(
        self,
        options: SpawnOptions,
        cwd: str,
        env: dict[str, str] | None,
    ) -> dict[str, Any]:
        """Build kwargs for the spawn primitive.

        Native options come first so stdio/cwd/env always reflect
        the normalized values.
        """
        kwargs: dict[str, Any] = dict(options.native)
        for name in _FD_BY_NAME:
            kwargs[name] = _stdio_argument(name, getattr(options, name))
        kwargs["cwd"] = cwd
        if env is not None:
            kwargs["env"] = env
        return kwargs


async def watch_termination(handle: ProcessHandle, options: SpawnOptions) -> None:
    """Terminate the process on timeout or when the cancel signal fires.

    Runs until one of both happens; cancel the task once the process exits.
    The process is only asked to stop, its exit is observed elsewhere.
    """
    with anyio.move_on_after(options.timeout) as scope:
        if options.signal is None:
            await anyio.sleep_forever()
        else:
            await options.signal.wait()

    reason = "timeout" if scope.cancelled_caught else "cancel signal"
    if handle.send_signal(options.kill_signal):
        logger.debug(
            f"Sent signal {options.kill_signal} to pid={handle.pid} ({reason})"
        )
