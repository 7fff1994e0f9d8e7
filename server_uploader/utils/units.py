"""Byte-quantity codec shared by the progress parser and the CLI."""

from __future__ import annotations

import math
import re

_UNITS = ("B", "KB", "MB", "GB", "TB")
_MULTIPLIERS = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4, "P": 1024**5}

# "12345", "12,345,678", "412.34M", "412.34MB", "11.2 KB"
_HUMAN_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*([KMGTP]?)(B)?$", re.IGNORECASE)


def bytes_to_human(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "412.34 MB").

    Scales by 1024 and stops at the largest unit the value reaches, capped
    at TB.  B has no decimals, KB one, larger units two.
    """
    try:
        value = float(size_bytes)
    except (TypeError, ValueError):
        return "0 B"
    if not math.isfinite(value) or value < 0:
        return "0 B"

    index = 0
    while value >= 1024 and index < len(_UNITS) - 1:
        value /= 1024
        index += 1
    decimals = 0 if index == 0 else (1 if index == 1 else 2)
    return f"{value:.{decimals}f} {_UNITS[index]}"


def human_to_bytes(token: str | None) -> int:
    """Parse an rsync-style size token back to bytes.

    Returns 0 for anything that does not match; callers treat 0 as
    "unknown", not as an error.
    """
    if not token:
        return 0
    plain = token.strip().replace(",", "")
    match = _HUMAN_RE.match(plain)
    if not match:
        return 0
    number = float(match.group(1))
    unit = match.group(2).upper()
    return int(round(number * _MULTIPLIERS[unit]))
