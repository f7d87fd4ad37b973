"""
replbridge.sink - Size-bounded output log shown by the editor

The log is a plain text file the editor displays in a split. Each completed
eval appends one block:

    ;; src/app/core.clj:12:1
    ;hello
    ;✖ a warning on stderr
    ;; (interrupted)
    3

Exceptions print their message lines with `;✖ ` and the trace with `;  `.
The file never holds more than max_lines lines; it is rewritten through a
temporary file and os.replace() so a reader never sees a torn write.
"""

import logging
import os
import tempfile
from datetime import datetime
from typing import Callable, Iterable, Optional

from replbridge.correlator import PendingEval
from replbridge.messages import FragmentKind, Request

logger = logging.getLogger(__name__)

DATEFMT = "%H:%M:%S %b %d %Y"

STDOUT_PREFIX = ";"
ERROR_PREFIX = ";✖ "
TRACE_PREFIX = ";  "
TRACE_MARKER = "-- Trace --"


class LogBuffer:
    """A line-bounded text file, rewritten atomically on every append."""

    def __init__(self, path: str, max_lines: int):
        if max_lines < 1:
            raise ValueError(f"max_lines must be at least 1, got {max_lines}")
        self.path = os.path.abspath(path)
        self.max_lines = max_lines
        self._dir = os.path.dirname(self.path)
        os.makedirs(self._dir, exist_ok=True)

        self._lines: list[str] = []
        if os.path.isfile(self.path):
            with open(self.path, encoding="utf-8", errors="replace") as f:
                self._lines = f.read().splitlines()[-max_lines:]

    @property
    def line_count(self) -> int:
        return len(self._lines)

    @property
    def lines(self) -> list[str]:
        return list(self._lines)

    def append(self, lines: Iterable[str]) -> int:
        """
        Append lines (embedded newlines split further) and enforce the bound.

        Returns:
            The number of evicted lines.
        """
        for line in lines:
            self._lines.extend(line.split("\n"))
        evicted = max(0, len(self._lines) - self.max_lines)
        if evicted:
            del self._lines[:evicted]
        self._write()
        return evicted

    def _write(self) -> None:
        fd, tmp_path = tempfile.mkstemp(prefix=".replbridge-", suffix=".tmp", dir=self._dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                if self._lines:
                    f.write("\n".join(self._lines) + "\n")
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


def _split(text: str) -> list[str]:
    if not text:
        return []
    return text.rstrip("\n").split("\n")


def format_result(
    request: Request, pending: PendingEval, incomplete: Optional[str] = None
) -> list[str]:
    """Render an eval as the block of lines written to the log."""
    header = f";; {request.location}"
    if incomplete:
        header += f" (incomplete: {incomplete})"
    lines = [header]

    for kind, text in pending.chunks:
        prefix = STDOUT_PREFIX if kind is FragmentKind.STDOUT else ERROR_PREFIX
        lines.extend(prefix + line for line in _split(text))

    lines.extend(f";; ({word})" for word in pending.status)

    if pending.exception is not None:
        prefix = ERROR_PREFIX
        for line in _split(pending.exception):
            if line.startswith(TRACE_MARKER):
                prefix = TRACE_PREFIX
            lines.append(prefix + line)
    elif pending.value is not None:
        lines.extend(_split(pending.value))
    return lines


class OutputSink:
    """Writes session markers and eval blocks to a LogBuffer."""

    def __init__(self, buffer: LogBuffer, clock: Callable[[], datetime] = datetime.now):
        self.buffer = buffer
        self.clock = clock
        self.opened = False
        self.closed = False

    def _now(self) -> str:
        return self.clock().strftime(DATEFMT)

    def open(self) -> None:
        if self.opened:
            return
        self.opened = True
        self.buffer.append([f";; Start {self._now()}"])

    def close(self) -> None:
        if not self.opened or self.closed:
            return
        self.closed = True
        self.buffer.append([f";; End   {self._now()}"])

    def message(self, text: str) -> None:
        self.buffer.append([f";; [{self._now()}] {text}"])

    def append(
        self, request: Request, pending: PendingEval, incomplete: Optional[str] = None
    ) -> None:
        lines = format_result(request, pending, incomplete)
        evicted = self.buffer.append(lines)
        if evicted:
            logger.debug("Evicted %d old log lines", evicted)
