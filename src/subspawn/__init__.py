"""subspawn - small async subprocess layer.

Await a command for its buffered output, iterate it for its lines, or pipe
it into another command.

Environment variables:
    SUBSPAWN_ENCODING: Output encoding (default utf-8)
    SUBSPAWN_CHUNK_SIZE: Read size in bytes (default 65536)
    SUBSPAWN_STREAM_LIMIT: Stream buffer limit in bytes (default 65536)
    SUBSPAWN_LOG_DEBUG: Log to a debug file (default false)

Usage:
    result = await spawn("echo", ["Hello"])
    async for line in spawn("ls", ["-l"]):
        ...
"""

__version__ = "0.1.0"

from .errors import PipelineError, SpawnError, SubprocessError, UsageError
from .handle import Subprocess, spawn
from .logs import configure_logging
from .runtime import ProcessHandle
from .types import ConsumptionMode, Result, SpawnOptions, StringInput

__all__ = [
    "__version__",
    "spawn",
    "Subprocess",
    "Result",
    "SpawnOptions",
    "StringInput",
    "ConsumptionMode",
    "ProcessHandle",
    "SpawnError",
    "SubprocessError",
    "PipelineError",
    "UsageError",
    "configure_logging",
]
