"""Levelled log output in the ``[section][L] message`` format."""

from __future__ import annotations

import sys
from enum import IntEnum
from typing import TextIO


class LogLevel(IntEnum):
    """Verbosity levels, from critical errors only up to packet dumps."""

    ERROR = 0
    WARN = 1
    INFO = 2
    DEBUG = 3
    TRACE = 4


DEFAULT_LEVEL = LogLevel.INFO
DEFAULT_SECTION = "main"

_LETTERS = {
    LogLevel.ERROR: "E",
    LogLevel.WARN: "W",
    LogLevel.INFO: "I",
    LogLevel.DEBUG: "D",
    LogLevel.TRACE: "T",
}


def format_line(section: str, level: int, message: str) -> str:
    """Return one log line (without newline) for ``message`` at ``level``."""
    letter = _LETTERS.get(level, "?")
    return f"[{section}][{letter}] {message}"


class Logger:
    """Writes messages whose level does not exceed the configured verbosity."""

    def __init__(
        self,
        section: str = DEFAULT_SECTION,
        verbosity: int = DEFAULT_LEVEL,
        stream: TextIO | None = None,
    ) -> None:
        self.section = section
        self.verbosity = verbosity
        self._stream = stream

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stderr

    def enabled(self, level: int) -> bool:
        """Whether messages at ``level`` are written."""
        return self.verbosity >= level

    def log(self, level: int, message: str) -> None:
        if self.enabled(level):
            self.stream.write(format_line(self.section, level, message) + "\n")

    def trace(self, text: str) -> None:
        """Write raw text when tracing is enabled."""
        if self.enabled(LogLevel.TRACE):
            self.stream.write(text)

    def dump(self, prefix: str, data: bytes) -> None:
        """Write ``data`` as upper-case hex bytes after ``prefix`` when tracing."""
        if self.enabled(LogLevel.TRACE):
            hex_bytes = "".join(f"{byte:02X} " for byte in data)
            self.stream.write(f"{prefix}{hex_bytes}\n")