"""Pre-flight guards; every check runs before anything mutates the device."""

from __future__ import annotations

import os
import shutil
from typing import Callable, Optional

from . import devices
from .errors import ActiveDiskRejected, DeviceNotFound, MissingDependency, PermissionDenied
from .executil import trace, warn
from .layout import validate_plan
from .model import Plan, Role, RunConfig

# tool -> package that provides it
REQUIRED_TOOLS = {
    "parted": "parted",
    "partprobe": "parted",
    "e2fsck": "e2fsprogs",
    "resize2fs": "e2fsprogs",
    "mkfs.ext4": "e2fsprogs",
    "blkid": "util-linux",
    "lsblk": "util-linux",
    "mount": "mount",
    "umount": "mount",
    "rsync": "rsync",
}
SWAP_TOOLS = {"mkswap": "util-linux"}
VAR_TOOLS = {"mkfs.btrfs": "btrfs-progs"}


def required_tools(swap: bool = False, var: bool = False) -> dict[str, str]:
    tools = dict(REQUIRED_TOOLS)
    if swap:
        tools.update(SWAP_TOOLS)
    if var:
        tools.update(VAR_TOOLS)
    return tools


def check_privilege(euid: Optional[int] = None) -> None:
    euid = os.geteuid() if euid is None else euid
    if euid != 0:
        raise PermissionDenied("this program must be run as root", euid=euid)


def check_block_device(device: str) -> None:
    if not os.path.exists(device):
        raise DeviceNotFound(f"device {device} does not exist", device=device)
    if not devices.is_block_device(device):
        raise DeviceNotFound(f"{device} is not a block device", device=device)


def guard_not_live_disk(device: str) -> tuple[bool, str]:
    """Return ``(ok, reason)``; not ok when ``device`` backs the live root or boot mount."""

    active, live = devices.is_active_disk(device)
    if active:
        return False, f"Target {device} backs a live system mount ({live})."
    if not live:
        warn("safety.live_root_unknown", device=device)
    return True, ""


def check_active_disk(device: str, allow: bool = False) -> None:
    ok, reason = guard_not_live_disk(device)
    if ok:
        return
    if allow:
        warn("safety.active_disk_override", device=device, reason=reason)
        return
    raise ActiveDiskRejected(
        f"{reason} Refusing to repartition a mounted root disk (override: --allow-active-disk)",
        device=device,
    )


def check_dependencies(tools: dict[str, str], which: Callable = shutil.which) -> None:
    for tool, package in tools.items():
        if not which(tool):
            raise MissingDependency(tool, package)


def check_plan(plan: Plan, which: Optional[Callable] = None) -> None:
    """Validate the layout, then require the tools for the partitions it creates."""

    validate_plan(plan)
    check_dependencies(
        required_tools(swap=plan.get(Role.SWAP) is not None, var=plan.get(Role.VAR) is not None),
        which=which or shutil.which,
    )


def preflight(config: RunConfig, euid: Optional[int] = None, which: Optional[Callable] = None) -> None:
    """Environment checks in order: privilege, device, live disk, base tools.

    mkswap and mkfs.btrfs are only required once the plan keeps a swap or
    /var partition (see :func:`check_plan`).
    """

    check_privilege(euid)
    check_block_device(config.device)
    check_active_disk(config.device, allow=config.allow_active_disk)
    check_dependencies(required_tools(), which=which or shutil.which)
    trace("safety.preflight_ok", device=config.device)
