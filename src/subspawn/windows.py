"""Windows shell forcing and cmd.exe escaping.

On Windows only ``*.exe`` and ``*.com`` files can be started without
``cmd.exe``. Everything else (``*.cmd``/``*.bat`` launchers such as
virtualenv or npm shims, scripts) needs the shell. This module decides
whether the shell must be forced and escapes the command line for it, so
that arguments are split exactly as given and cannot inject commands.

The decision is a pure function of its inputs (including the platform tag),
so both branches can be exercised on any OS.
"""

from __future__ import annotations

import os
import re
import sys
from collections.abc import Callable, Mapping, Sequence

__all__ = [
    "EXE_EXTENSIONS",
    "needs_forced_shell",
    "escape_arguments",
    "escape_file",
    "escape_argument",
]

EXE_EXTENSIONS = (".exe", ".com")

_METACHARACTERS = re.compile(r'([()\][%!^"`<>&|;, *?])')
_QUOTE_BACKSLASHES = re.compile(r'(\\*)"')
_TRAILING_BACKSLASHES = re.compile(r"(\\*)\Z")
_QUOTED_PATH_PART = re.compile(r'^"(.*)"$')


def _path_entries(env: Mapping[str, str], platform: str) -> list[str]:
    # Environment variables are case-insensitive on Windows
    path_value = env.get("PATH", env.get("Path", ""))
    delimiter = ";" if platform == "win32" else os.pathsep
    return [
        _QUOTED_PATH_PART.sub(r"\1", part)
        for part in path_value.split(delimiter)
        if part
    ]


def _is_exe(
    file: str,
    cwd: str,
    env: Mapping[str, str],
    platform: str,
    is_file: Callable[[str], bool],
) -> bool:
    if file.lower().endswith(EXE_EXTENSIONS):
        return True

    # The extension may be omitted (PATHEXT), so look for it on disk
    directories = [cwd, *_path_entries(env, platform)]
    return any(
        is_file(os.path.abspath(os.path.join(directory, file)) + extension)
        for extension in EXE_EXTENSIONS
        for directory in directories
    )


def needs_forced_shell(
    file: str,
    *,
    shell: bool | None = None,
    cwd: str = ".",
    env: Mapping[str, str] | None = None,
    platform: str = sys.platform,
    is_file: Callable[[str], bool] = os.path.isfile,
) -> bool:
    """Decide whether ``file`` can only be started through ``cmd.exe``.

    Args:
        file: Program name or path, as given by the caller
        shell: Caller's explicit shell option (truthy disables forcing)
        cwd: Working directory of the future process
        env: Environment of the future process (default: os.environ)
        platform: Platform tag, as in ``sys.platform``
        is_file: Synchronous regular-file check

    Returns:
        True if the shell must be forced and arguments escaped
    """
    if shell or platform != "win32":
        return False
    return not _is_exe(file, cwd, os.environ if env is None else env, platform, is_file)


def escape_file(file: str) -> str:
    """Escape cmd.exe metacharacters with ``^``."""
    return _METACHARACTERS.sub(r"^\1", file)


def escape_argument(argument: str) -> str:
    """Quote and escape one argument for cmd.exe running a ``.cmd`` shim."""
    escaped = _QUOTE_BACKSLASHES.sub(r'\1\1\\"', argument)
    escaped = _TRAILING_BACKSLASHES.sub(r"\1\1", escaped, count=1)
    return escape_file(escape_file(f'"{escaped}"'))


def escape_arguments(
    file: str, arguments: Sequence[str], forced_shell: bool
) -> tuple[str, list[str]]:
    """Escape file and arguments when the shell is being forced."""
    if not forced_shell:
        return file, list(arguments)
    return escape_file(file), [escape_argument(argument) for argument in arguments]
