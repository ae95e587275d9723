"""Sector arithmetic on a 512-byte sector, 2048-sector (1 MiB) grid.

All helpers are integer-only. Results must stay within an unsigned 64-bit
sector address; anything outside that range raises ``ArithmeticOverflow``.
"""
from __future__ import annotations

from .errors import ArithmeticOverflow

SECTOR_SIZE = 512
ALIGNMENT = 2048
MAX_SECTOR = 2 ** 64 - 1


def _checked(value: int, what: str) -> int:
    if value < 0 or value > MAX_SECTOR:
        raise ArithmeticOverflow(f"{what} out of range: {value}", value=value)
    return value


def bytes_to_sectors(num_bytes: int) -> int:
    _checked(num_bytes, "byte count")
    return _checked(-(-num_bytes // SECTOR_SIZE), "sector count")


def sectors_to_bytes(sectors: int) -> int:
    return _checked(sectors, "sector count") * SECTOR_SIZE


def align_down(sector: int) -> int:
    _checked(sector, "sector")
    return (sector // ALIGNMENT) * ALIGNMENT


def align_up(sector: int) -> int:
    _checked(sector, "sector")
    return _checked(((sector + ALIGNMENT - 1) // ALIGNMENT) * ALIGNMENT, "aligned sector")


def is_aligned(sector: int) -> bool:
    return sector % ALIGNMENT == 0
