"""A minimal printf-style logger writing timestamped lines to a stream."""

from __future__ import annotations

import sys
import threading
import time
from typing import IO, Any


class StdLogger:
    """Logger that writes ``INFO:`` and ``ERROR:`` lines to a text stream.

    When no stream is given, lines go to whatever ``sys.stderr`` is at the
    moment of writing.
    """

    def __init__(self, stream: IO[str] | None = None, timestamps: bool = True) -> None:
        self.stream = stream
        self.timestamps = timestamps
        self._lock = threading.Lock()

    def info(self, fmt: str, *args: Any) -> None:
        """Write an informational message formatted with ``%`` arguments."""
        self._write("INFO: ", fmt, args)

    def error(self, fmt: str, *args: Any) -> None:
        """Write an error message formatted with ``%`` arguments."""
        self._write("ERROR: ", fmt, args)

    def _write(self, level: str, fmt: str, args: tuple[Any, ...]) -> None:
        text = fmt % args if args else fmt
        if not text.endswith("\n"):
            text += "\n"
        prefix = time.strftime("%Y/%m/%d %H:%M:%S ") if self.timestamps else ""
        stream = self.stream if self.stream is not None else sys.stderr
        with self._lock:
            stream.write(f"{prefix}{level}{text}")
            stream.flush()


def default_logger() -> StdLogger:
    """Return a logger writing timestamped lines to standard error."""
    return StdLogger()