"""Level-filtered logger that prefixes each output line with its level."""

from __future__ import annotations

import re
import sys
from enum import IntEnum
from typing import TextIO

_LINE_PIECES = re.compile(r"[^\n]*\n|[^\n]+")


class Level(IntEnum):
    DEBUG = 0
    INFO = 1
    WARNING = 2
    ERROR = 3


class Logger:
    """Writes text to a stream, tagging every new line with ``[LEVEL] ``.

    Text may arrive in fragments; a prefix is written only at the start of
    a line, and line state is shared between all levels.
    """

    def __init__(self, level: Level | int = Level.INFO, out: TextIO | None = None):
        self.level = Level(level)
        self._out = out
        self._at_line_start = True

    @property
    def out(self) -> TextIO:
        return self._out if self._out is not None else sys.stderr

    def set_level(self, level: Level | int) -> None:
        self.level = Level(level)

    def write(self, level: Level | int, text: str) -> None:
        """Write ``text`` at ``level`` if that level is not filtered out."""
        level = Level(level)
        if self.level > level:
            return
        out = self.out
        for piece in _LINE_PIECES.findall(text):
            if self._at_line_start:
                out.write(f"[{level.name}] ")
            out.write(piece)
            self._at_line_start = piece.endswith("\n")

    def flush(self) -> None:
        self.out.flush()

    def debug(self, text: str) -> None:
        self.write(Level.DEBUG, text)

    def info(self, text: str) -> None:
        self.write(Level.INFO, text)

    def warning(self, text: str) -> None:
        self.write(Level.WARNING, text)

    def error(self, text: str) -> None:
        self.write(Level.ERROR, text)