"""Command strings and per-pipeline context.

The command string is for humans only (error messages, ``Result.command``);
it is never executed.
"""

from __future__ import annotations

import re
import time
from collections.abc import Sequence
from dataclasses import dataclass

__all__ = ["Context", "format_command", "format_command_part", "strip_vt_control_characters"]

# ANSI/VT100 escape sequences (colors, cursor movement, OSC titles)
_VT_CONTROL_PATTERN = re.compile(
    "[\u001b\u009b][\\[\\]()#;?]*"
    "(?:(?:(?:(?:;[-a-zA-Z\\d/#&.:=?%@~_]+)*"
    "|[a-zA-Z\\d]+(?:;[-a-zA-Z\\d/#&.:=?%@~_]*)*)?\u0007)"
    "|(?:(?:\\d{1,4}(?:;\\d{0,4})*)?[\\dA-PR-TZcf-ntqry=><~]))"
)

_UNSAFE_PATTERN = re.compile(r"[^A-Za-z0-9_./-]")

PIPE_SEPARATOR = " | "


def strip_vt_control_characters(text: str) -> str:
    """Remove terminal escape sequences from text."""
    return _VT_CONTROL_PATTERN.sub("", text)


def format_command_part(part: str) -> str:
    """Quote one token the way a POSIX shell user would read it."""
    part = strip_vt_control_characters(part)
    if _UNSAFE_PATTERN.search(part):
        return "'" + part.replace("'", "'\\''") + "'"
    return part


def format_command(file: str, arguments: Sequence[str] = ()) -> str:
    """Render ``file`` and ``arguments`` as a single command string."""
    return " ".join(format_command_part(part) for part in (file, *arguments))


@dataclass(frozen=True)
class Context:
    """State shared along a pipeline.

    Attributes:
        start: Monotonic timestamp of the first stage's launch
        command: Accumulated command string (``a | b | c``)
    """

    start: float
    command: str

    @classmethod
    def create(
        cls,
        file: str,
        arguments: Sequence[str] = (),
        previous: Context | None = None,
    ) -> Context:
        """Create the context of a new stage, chaining onto ``previous``."""
        command = format_command(file, arguments)
        if previous is None:
            return cls(start=time.monotonic(), command=command)
        return cls(start=previous.start, command=f"{previous.command}{PIPE_SEPARATOR}{command}")

    def duration_ms(self) -> float:
        """Milliseconds elapsed since the first stage started."""
        return (time.monotonic() - self.start) * 1000
