"""subspawn environment variable configuration.

Environment variables:
    SUBSPAWN_ENCODING: Encoding used to decode subprocess output
        - default "utf-8"
        - undecodable bytes are replaced, never raised

    SUBSPAWN_CHUNK_SIZE: Bytes requested per read from an output pipe
        - default 65536
        - clamped to 1 KiB - 16 MiB

    SUBSPAWN_STREAM_LIMIT: Buffer limit of asyncio stream readers
        - default 65536
        - clamped to 1 KiB - 16 MiB

    SUBSPAWN_LOG_DEBUG: Debug logging mode
        - true/1/yes = on (DEBUG logs written to a temporary file)
        - false/0/no = off (default, INFO logs to stderr)
"""

from __future__ import annotations

import codecs
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config"]

DEFAULT_ENCODING = "utf-8"
DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_STREAM_LIMIT = 64 * 1024

_MIN_SIZE = 1024
_MAX_SIZE = 16 * 1024 * 1024


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_size(value: str | None, default: int) -> int:
    """Parse a byte size, clamped to a sane range."""
    if not value:
        return default
    try:
        size = int(value)
    except ValueError:
        return default
    return max(_MIN_SIZE, min(size, _MAX_SIZE))


def _parse_encoding(value: str | None) -> str:
    """Parse an encoding name, falling back to utf-8 for unknown codecs."""
    if not value or not value.strip():
        return DEFAULT_ENCODING
    try:
        return codecs.lookup(value.strip()).name
    except LookupError:
        return DEFAULT_ENCODING


@dataclass
class Config:
    """subspawn configuration.

    Attributes:
        encoding: Output text encoding
        chunk_size: Bytes per pipe read
        stream_limit: asyncio stream buffer limit
        log_debug: Log to a temporary file at DEBUG level
        log_file: Log file path (set when log_debug=True)
    """

    encoding: str = DEFAULT_ENCODING
    chunk_size: int = DEFAULT_CHUNK_SIZE
    stream_limit: int = DEFAULT_STREAM_LIMIT
    log_debug: bool = False
    log_file: str | None = None

    def __repr__(self) -> str:
        return (
            f"Config(encoding={self.encoding}, "
            f"chunk_size={self.chunk_size}, "
            f"stream_limit={self.stream_limit}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """Generate a log file path.

    Returns:
        Absolute path of a timestamped file under the system temp directory
    """
    log_dir = Path(tempfile.gettempdir()) / "subspawn"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"subspawn_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """Load configuration from environment variables."""
    log_debug = _parse_bool(os.environ.get("SUBSPAWN_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        encoding=_parse_encoding(os.environ.get("SUBSPAWN_ENCODING")),
        chunk_size=_parse_size(os.environ.get("SUBSPAWN_CHUNK_SIZE"), DEFAULT_CHUNK_SIZE),
        stream_limit=_parse_size(
            os.environ.get("SUBSPAWN_STREAM_LIMIT"), DEFAULT_STREAM_LIMIT
        ),
        log_debug=log_debug,
        log_file=log_file,
    )


# Global configuration instance (lazily loaded)
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Reload configuration (used by tests)."""
    global _config
    _config = load_config()
    return _config
