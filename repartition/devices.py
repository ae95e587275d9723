"""Device inspection: geometry, removable classification, live-root detection."""
from __future__ import annotations

import json
import os
import re
import stat
import subprocess

from .errors import DeviceNotFound, DeviceQueryFailed
from .executil import run, trace, udev_settle
from .model import DeviceGeometry
from .sectors import SECTOR_SIZE


def normalize_device(device: str) -> str:
    device = device.strip()
    if not device.startswith("/"):
        device = "/dev/" + device
    return device


def partition_path(device: str, number: int) -> str:
    # mmcblk0 / nvme0n1 style names need a ``p`` before the index; sda does not.
    base = device.rstrip("/") or device
    suffix = "p" if base[-1:].isdigit() else ""
    return f"{base}{suffix}{number}"


def is_block_device(path: str) -> bool:
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return False
    except OSError as exc:
        trace("devices.stat_error", path=path, error=str(exc))
        return False
    return stat.S_ISBLK(st.st_mode)


def _parse_sectors(field: str) -> int:
    field = field.strip()
    if not field.endswith("s"):
        raise ValueError(f"expected sector value, got {field!r}")
    return int(field[:-1])


def parse_parted_machine(text: str) -> dict:
    """Parse ``parted -sm <dev> unit s print`` output.

    Returns ``total_sectors``, ``sector_size``, ``table`` and a mapping of
    partition number to ``(start, end)`` sectors.
    """

    lines = [line.strip().rstrip(";") for line in text.splitlines() if line.strip()]
    disk = None
    partitions: dict[int, tuple[int, int]] = {}
    for line in lines:
        fields = line.split(":")
        if fields[0] in ("BYT", "CHS", "CYL"):
            continue
        if fields[0].startswith("/"):
            disk = fields
            continue
        if fields[0].isdigit() and len(fields) >= 3:
            partitions[int(fields[0])] = (_parse_sectors(fields[1]), _parse_sectors(fields[2]))
    if disk is None or len(disk) < 6:
        raise ValueError("parted output has no disk line")
    return {
        "total_sectors": _parse_sectors(disk[1]),
        "sector_size": int(disk[3]),
        "table": disk[5],
        "partitions": partitions,
    }


def _lsblk_node(device: str) -> dict:
    result = run(
        ["lsblk", "-J", "-b", "-d", "-o", "NAME,PATH,TYPE,SIZE,RM,TRAN,SUBSYSTEMS", device],
        check=False,
    )
    if result.rc != 0:
        raise DeviceQueryFailed(
            f"lsblk failed for {device}: {(result.err or '').strip()}",
            device=device,
        )
    try:
        payload = json.loads(result.out or "{}")
    except json.JSONDecodeError as exc:
        raise DeviceQueryFailed(f"failed to parse lsblk output for {device}: {exc}") from exc
    for entry in payload.get("blockdevices") or []:
        if entry.get("path") == device or entry.get("name") == device.rsplit("/", 1)[-1]:
            return entry
    raise DeviceQueryFailed(f"lsblk did not report device {device}", device=device)


def _flag(value) -> bool:
    # lsblk >= 2.33 emits JSON booleans, older releases "0"/"1" strings.
    if isinstance(value, str):
        return value.strip() in ("1", "true")
    return bool(value)


def is_removable(node: dict) -> bool:
    """Classify flash-card style media from lsblk metadata.

    The kernel's removable flag covers card readers; SD/eMMC slots wired to
    an MMC host report ``mmc`` as transport or subsystem instead.
    """

    if _flag(node.get("rm")):
        return True
    tran = (node.get("tran") or "").lower()
    subsystems = (node.get("subsystems") or "").lower().split(":")
    return tran == "mmc" or "mmc" in subsystems


def inspect(device: str, root_partition_number: int = 2) -> DeviceGeometry:
    device = normalize_device(device)
    if not os.path.exists(device):
        raise DeviceNotFound(f"device {device} does not exist", device=device)

    udev_settle()
    node = _lsblk_node(device)
    removable = is_removable(node)

    result = run(["parted", "-sm", device, "unit", "s", "print"], check=False)
    if result.rc != 0:
        raise DeviceQueryFailed(
            f"parted could not read {device}: {(result.err or result.out or '').strip()}",
            device=device,
        )
    try:
        table = parse_parted_machine(result.out or "")
    except ValueError as exc:
        raise DeviceQueryFailed(f"failed to parse partition table of {device}: {exc}") from exc

    if table["sector_size"] != SECTOR_SIZE:
        raise DeviceQueryFailed(
            f"{device} uses {table['sector_size']}-byte logical sectors; only {SECTOR_SIZE} is supported",
            device=device,
        )
    partitions = table["partitions"]
    if root_partition_number not in partitions:
        raise DeviceQueryFailed(
            f"root partition {partition_path(device, root_partition_number)} not found",
            device=device,
            partitions=sorted(partitions),
        )

    geometry = DeviceGeometry(
        device=device,
        total_sectors=table["total_sectors"],
        root_partition_start=partitions[root_partition_number][0],
        is_removable_media=removable,
        sector_size=table["sector_size"],
        root_partition_number=root_partition_number,
        last_partition_number=max(partitions),
        partition_table=table["table"],
        root_partition_end=partitions[root_partition_number][1],
        existing_partitions=tuple((num, start, end) for num, (start, end) in sorted(partitions.items())),
    )
    trace(
        "devices.inspect",
        device=device,
        total_sectors=geometry.total_sectors,
        root_start=geometry.root_partition_start,
        removable=removable,
        tran=node.get("tran"),
        table=geometry.partition_table,
        partitions=sorted(partitions),
    )
    return geometry


def _capture(cmd: list[str]) -> str:
    try:
        return subprocess.check_output(cmd, text=True).strip()
    except (OSError, subprocess.CalledProcessError):
        return ""


LIVE_MOUNTS = ("/", "/boot/firmware", "/boot")


def _parent_disk(source: str) -> str:
    # btrfs subvolume mounts report e.g. /dev/sda2[/@]
    source = source.split("[", 1)[0].strip()
    if not source.startswith("/dev/"):
        return ""
    pk = _capture(["lsblk", "-no", "PKNAME", source])
    if pk:
        return pk.splitlines()[0].strip()
    # Fallback: cut the partition number off the node name
    return re.sub(r"(?<=\d)p\d+$|(?<=[a-z])\d+$", "", os.path.basename(source))


def live_disks() -> dict[str, str]:
    """Map each mounted live mount point (root, boot) to its backing disk."""

    disks = {}
    for mountpoint in LIVE_MOUNTS:
        disk = _parent_disk(_capture(["findmnt", "-no", "SOURCE", mountpoint]))
        if disk:
            disks[mountpoint] = disk
    return disks


def is_active_disk(device: str) -> tuple[bool, str]:
    """Return ``(active, live_disk)`` for ``device``.

    Compares the target's kernel name with the disks backing the live root
    and boot mounts; ``live_disk`` is the matching disk, else the root disk
    (empty when it cannot be resolved). Identity is resolved through
    symlinks so ``/dev/disk/by-id`` paths compare equal to kernel names.
    """

    disks = live_disks()
    target = os.path.basename(os.path.realpath(normalize_device(device)))
    for disk in disks.values():
        if disk == target:
            return True, disk
    return False, disks.get("/", "")
