"""Parsing of rsync ``--info=progress2`` output.

rsync rewrites its progress line in place with carriage returns instead of
emitting one line per update, e.g.::

    "   1,234,567  45%    2.31MB/s    0:01:23\\r   2,469,134  90% ..."

:class:`LineBuffer` turns the raw stdout stream into complete lines and
:func:`parse_progress_line` decodes the ones that carry progress.
"""

from __future__ import annotations

import codecs
import re

from server_uploader.models import TransferProgress
from server_uploader.utils.units import human_to_bytes

PROGRESS_RE = re.compile(
    r"^([\d.,]+[KMGTP]?B?)\s+(\d+)%\s+(\S+/s)\s+(\d+:\d+(?::\d+)?)",
    re.IGNORECASE,
)


def parse_progress_line(line: str) -> TransferProgress | None:
    """Decode one trimmed line of rsync stdout.

    Returns ``None`` for incidental lines (file lists, summaries); the caller
    forwards those to the log sink.
    """
    match = PROGRESS_RE.match(line.strip())
    if not match:
        return None
    token, percent, speed, eta = match.groups()
    return TransferProgress(
        transferred_bytes=human_to_bytes(token),
        percent=max(0, min(100, int(percent))),
        speed=speed,
        eta=eta,
    )


class LineBuffer:
    """Accumulates stdout chunks and yields complete, trimmed, non-empty lines.

    Carriage returns are treated as line breaks.  A trailing partial line is
    held back until a later chunk completes it (or :meth:`flush` at EOF).
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes | str) -> list[str]:
        """Add *chunk* and return the lines it completed, in order."""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._pending += chunk.replace("\r", "\n")
        *complete, self._pending = self._pending.split("\n")
        return [line.strip() for line in complete if line.strip()]

    def flush(self) -> list[str]:
        """Return whatever partial line remains once the stream has ended."""
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        tail = tail.replace("\r", "\n")
        return [line.strip() for line in tail.split("\n") if line.strip()]
