"""Line buffering for streamed model output.

Deltas arrive at arbitrary chunk boundaries; consumers that parse
line-oriented output (list items, review directives) want whole lines.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class LineBuffer:
    """Accumulates deltas and hands complete lines to *on_line*.

    Any chunking of the same text yields the same line sequence. The
    trailing fragment is delivered by flush(), at most once.
    """

    def __init__(self, on_line: Callable[[str], None]) -> None:
        self._on_line = on_line
        self._pending = ""
        self._flushed = False

    def feed(self, delta: str) -> None:
        if self._flushed:
            logger.warning("LineBuffer fed after flush; ignoring %d chars", len(delta))
            return
        self._pending += delta
        *lines, self._pending = self._pending.split("\n")
        for line in lines:
            self._on_line(line)

    def flush(self) -> None:
        if self._flushed:
            return
        self._flushed = True
        fragment, self._pending = self._pending, ""
        if fragment.strip():
            self._on_line(fragment)
