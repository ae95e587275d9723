from __future__ import annotations

import re
from typing import Dict

from .model import Step

# 24: files vanished during transfer. The source is an offline filesystem,
# so this only happens for transient entries and is not fatal.
RSYNC_OK = (0, 24)

RSYNC_FLAGS = [
    "-aHAXx",
    "--numeric-ids",
    "--stats",
]

_SIZE_UNITS = {
    "": 1,
    "b": 1,
    "k": 1024,
    "m": 1024 ** 2,
    "g": 1024 ** 3,
    "t": 1024 ** 4,
}

_SIZE_RE = re.compile(r"([0-9][0-9,]*(?:\.[0-9]+)?)\s*([KMGT]?)(?:i?B|bytes?)?", re.IGNORECASE)


def _parse_size_field(fragment: str):
    match = _SIZE_RE.search(fragment.strip())
    if not match:
        return None
    value = float(match.group(1).replace(",", ""))
    return int(round(value * _SIZE_UNITS[match.group(2).lower()]))


def _parse_int(fragment: str):
    match = re.search(r"(\d[\d,]*)", fragment)
    if not match:
        return None
    return int(match.group(1).replace(",", ""))


_STAT_FIELDS = {
    "number of files:": ("files_total", _parse_int),
    "number of regular files transferred:": ("files_transferred", _parse_int),
    "number of files transferred:": ("files_transferred", _parse_int),
    "total file size:": ("total_file_size_bytes", _parse_size_field),
    "total transferred file size:": ("transferred_size_bytes", _parse_size_field),
    "total bytes sent:": ("bytes_sent_bytes", _parse_size_field),
    "total bytes received:": ("bytes_received_bytes", _parse_size_field),
}


def parse_rsync_stats(text: str) -> dict:
    """Pick the ``--stats`` summary numbers out of rsync output."""

    if not isinstance(text, str):
        return {}
    stats: Dict[str, int] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        lower = line.lower()
        for prefix, (key, parser) in _STAT_FIELDS.items():
            if lower.startswith(prefix) and key not in stats:
                value = parser(line.split(":", 1)[1])
                if value is not None:
                    stats[key] = value
                break
    return stats


def migrate_step(source: str, target: str) -> Step:
    """Copy the contents of ``source`` into ``target``.

    Ownership, permissions, hard links, ACLs and xattrs are preserved and
    the source is left in place.
    """

    src = source.rstrip("/") + "/"
    dst = target.rstrip("/") + "/"
    return Step(("rsync", *RSYNC_FLAGS, src, dst), ok_codes=RSYNC_OK, timeout=24 * 3600.0)
