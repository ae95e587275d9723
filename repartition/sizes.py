"""Human size strings ("16G", "512MB") to byte counts."""
from __future__ import annotations

import re

from .errors import InvalidSizeFormat

_SIZE_UNITS = {
    "K": 1024,
    "M": 1024 ** 2,
    "G": 1024 ** 3,
    "T": 1024 ** 4,
}

_SIZE_RE = re.compile(r"^\s*([0-9]+)\s*([KMGT])B?\s*$", re.IGNORECASE)


def parse_size(text: str) -> int:
    """Return the number of bytes described by ``text``.

    Units are binary multiples and case-insensitive: ``K``/``KB``,
    ``M``/``MB``, ``G``/``GB`` and ``T``/``TB``. A unit is mandatory and the
    numeric part must be a positive integer.
    """

    if not isinstance(text, str):
        raise InvalidSizeFormat(f"invalid size: {text!r}", value=text)
    match = _SIZE_RE.match(text)
    if not match:
        raise InvalidSizeFormat(f"invalid size format: {text!r} (expected e.g. 16G)", value=text)
    value = int(match.group(1))
    if value <= 0:
        raise InvalidSizeFormat(f"size must be positive: {text!r}", value=text)
    return value * _SIZE_UNITS[match.group(2).upper()]


def format_size(num_bytes: int) -> str:
    value = float(num_bytes)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024:
            return f"{value:.1f} {unit}" if unit != "B" else f"{int(value)} B"
        value /= 1024
    return f"{value:.1f} TiB"
