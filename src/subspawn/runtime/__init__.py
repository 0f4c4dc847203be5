"""Runtime module for subprocess launching and output streaming.

This module provides process launching with normalized options, single-reader
output streams, buffering and line sequences.
"""

from __future__ import annotations

from .collector import OutputCollector, StreamSource
from .lines import LineStream, iterate_lines, merge_lines
from .process_runner import ProcessHandle, ProcessRunner

__all__ = [
    "ProcessRunner",
    "ProcessHandle",
    "StreamSource",
    "OutputCollector",
    "iterate_lines",
    "merge_lines",
    "LineStream",
]
