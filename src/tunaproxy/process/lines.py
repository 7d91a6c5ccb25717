"""Line splitting for process diagnostic output."""

from __future__ import annotations

import codecs
from collections import deque


class LineSplitter:
    """Incremental decoder turning stderr chunks into text lines.

    Accepts ``\\n``, ``\\r\\n`` and a bare ``\\r`` as line terminators. A
    ``\\r`` at the very end of a chunk is held back until the next chunk
    shows whether it starts a ``\\r\\n`` pair, so a CRLF split across two
    reads still yields a single line.

    The last ``max_tail`` lines are kept in ``tail`` for diagnostics
    (e.g. logging what the process printed before it died).
    """

    def __init__(self, encoding: str = "utf-8", max_tail: int = 50) -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""
        self._held_cr = False
        self._tail: deque[str] = deque(maxlen=max_tail)
        self._total_lines = 0

    def feed(self, data: bytes | str) -> list[str]:
        """Consume a chunk and return every line it completes."""
        text = data if isinstance(data, str) else self._decoder.decode(data)
        if not text:
            return []

        if self._held_cr:
            self._held_cr = False
            if text.startswith("\n"):
                text = text[1:]

        if text.endswith("\r"):
            # Might be the first half of a CRLF
            self._held_cr = True

        buf = self._pending + text
        buf = buf.replace("\r\n", "\n").replace("\r", "\n")
        *complete, self._pending = buf.split("\n")
        return self._record(complete)

    def flush(self) -> list[str]:
        """Return the trailing partial line, if any (call at EOF)."""
        self._held_cr = False
        self._pending += self._decoder.decode(b"", final=True)
        if not self._pending:
            return []
        line, self._pending = self._pending, ""
        return self._record([line])

    def _record(self, lines: list[str]) -> list[str]:
        self._tail.extend(lines)
        self._total_lines += len(lines)
        return lines

    @property
    def tail(self) -> list[str]:
        return list(self._tail)

    @property
    def total_lines(self) -> int:
        """Total number of lines ever produced."""
        return self._total_lines
