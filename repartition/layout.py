"""Partition layout planning.

``plan_layout`` is a pure function of the device geometry and the requested
sizes. It never touches a device, so every decision it makes can be tested
against a hand-written :class:`DeviceGeometry`.

Layout order is fixed: Root (existing, shrunk in place), optional Swap,
optional /var, then /home taking the rest of the disk. Root keeps its
inherited start sector and its end is rounded *down* to the alignment grid;
every new partition starts on the next boundary after its predecessor.
"""
from __future__ import annotations

from typing import Optional

from .errors import (
    InsufficientHomeSpace,
    InvalidPlan,
    RemovableMediaPolicyViolation,
    RootSizeExceedsDevice,
    RootSizeOutOfRange,
)
from .model import DeviceGeometry, FsKind, PartitionSpec, Plan, RemovablePolicy, Role
from .sectors import align_down, align_up, bytes_to_sectors, is_aligned
from .sizes import format_size

GIB = 1024 ** 3
MIN_ROOT_BYTES = 8 * GIB
MAX_ROOT_BYTES = 64 * GIB

FS_KINDS = {
    Role.ROOT: FsKind.UNCHANGED,
    Role.SWAP: FsKind.SWAP,
    Role.VAR: FsKind.BTRFS,
    Role.HOME: FsKind.EXT4,
}


def removable_root_limit(geometry: DeviceGeometry) -> int:
    """Largest root span, in sectors, a removable card can hold.

    Root has to end inside the first half of the card so /home keeps at
    least half of it.
    """

    limit = align_down(geometry.total_sectors // 2) - geometry.root_partition_start
    return max(0, limit)


def _extra_requests(
    geometry: DeviceGeometry,
    swap_size: Optional[int],
    var_size: Optional[int],
    policy: RemovablePolicy,
) -> tuple[list[tuple[Role, int]], list[str]]:
    requested = [(role, size) for role, size in ((Role.SWAP, swap_size), (Role.VAR, var_size)) if size]
    warnings: list[str] = []
    if not requested or not geometry.is_removable_media:
        return requested, warnings
    names = ", ".join(role.value for role, _ in requested)
    if policy is RemovablePolicy.DENY:
        raise RemovableMediaPolicyViolation(
            f"{names} partition(s) not allowed on removable media {geometry.device} "
            "(use --removable-policy allow or --force)",
            roles=[role.value for role, _ in requested],
            policy=policy.value,
        )
    if policy is RemovablePolicy.SKIP:
        warnings.append(f"removable media: skipping requested {names} partition(s)")
        return [], warnings
    warnings.append(f"removable media: creating {names} partition(s) on a high-wear device")
    return requested, warnings


def plan_layout(
    geometry: DeviceGeometry,
    root_size: int,
    swap_size: Optional[int] = None,
    var_size: Optional[int] = None,
    policy: RemovablePolicy = RemovablePolicy.DENY,
) -> Plan:
    if not MIN_ROOT_BYTES <= root_size <= MAX_ROOT_BYTES:
        raise RootSizeOutOfRange(
            f"root size {format_size(root_size)} outside allowed range 8G..64G",
            root_size=root_size,
        )
    extras, warnings = _extra_requests(geometry, swap_size, var_size, policy)

    total = geometry.total_sectors
    root_sectors = bytes_to_sectors(root_size)
    if geometry.is_removable_media:
        limit = removable_root_limit(geometry)
        if root_sectors > limit:
            raise RootSizeExceedsDevice(
                f"root size {format_size(root_size)} does not fit on removable media "
                f"{geometry.device} (max {format_size(limit * geometry.sector_size)})",
                root_sectors=root_sectors,
                limit=limit,
            )

    start = geometry.root_partition_start
    root_end = align_down(start + root_sectors) - 1
    if root_end < start or root_end >= total:
        raise RootSizeExceedsDevice(
            f"root size {format_size(root_size)} does not fit on {geometry.device}",
            root_sectors=root_sectors,
            total_sectors=total,
        )
    if geometry.root_partition_end is not None and root_end > geometry.root_partition_end:
        raise RootSizeExceedsDevice(
            f"root size {format_size(root_size)} is larger than the current root partition "
            f"(ends at sector {geometry.root_partition_end}); root can only be shrunk",
            root_sectors=root_sectors,
            root_partition_end=geometry.root_partition_end,
        )
    partitions = [PartitionSpec(Role.ROOT, start, root_end, FS_KINDS[Role.ROOT], geometry.root_partition_number)]

    prev_end = root_end
    number = geometry.last_partition_number
    for role, size in extras:
        part_start = align_up(prev_end + 1)
        part_end = align_up(part_start + bytes_to_sectors(size)) - 1
        number += 1
        partitions.append(PartitionSpec(role, part_start, part_end, FS_KINDS[role], number))
        prev_end = part_end

    home_start = align_up(prev_end + 1)
    home_end = total - 1
    home_sectors = home_end - home_start + 1
    if home_sectors <= 0 or home_sectors * 2 < total:
        raise InsufficientHomeSpace(
            f"/home would get {format_size(max(0, home_sectors) * geometry.sector_size)}, "
            f"needs at least half of {format_size(geometry.size_bytes)}",
            home_sectors=max(0, home_sectors),
            total_sectors=total,
        )
    number += 1
    partitions.append(PartitionSpec(Role.HOME, home_start, home_end, FS_KINDS[Role.HOME], number))

    return Plan(geometry=geometry, partitions=tuple(partitions), policy=policy, warnings=tuple(warnings))


def validate_plan(plan: Plan) -> None:
    """Re-check the layout invariants of ``plan``; raise ``InvalidPlan``."""

    geo = plan.geometry
    parts = plan.partitions
    if len(parts) < 2 or parts[0].role is not Role.ROOT or parts[-1].role is not Role.HOME:
        raise InvalidPlan("plan must start with root and end with home")
    roles = [spec.role for spec in parts]
    if roles != sorted(roles, key=list(Role).index) or len(set(roles)) != len(roles):
        raise InvalidPlan(f"unexpected partition order: {[r.value for r in roles]}")
    if parts[0].start != geo.root_partition_start:
        raise InvalidPlan("root must keep its existing start sector")
    prev = None
    for spec in parts:
        if spec.start > spec.end:
            raise InvalidPlan(f"{spec.role.value}: start {spec.start} after end {spec.end}")
        if spec.role is not Role.ROOT and not is_aligned(spec.start):
            raise InvalidPlan(f"{spec.role.value}: start {spec.start} not aligned")
        if spec.role is not Role.HOME and not is_aligned(spec.end + 1):
            raise InvalidPlan(f"{spec.role.value}: end {spec.end} not aligned")
        if prev is not None and spec.start <= prev.end:
            raise InvalidPlan(f"{spec.role.value} overlaps {prev.role.value}")
        prev = spec
    for spec in plan.created:
        for number, start, end in geo.existing_partitions:
            if number != geo.root_partition_number and spec.start <= end and start <= spec.end:
                raise InvalidPlan(
                    f"{spec.role.value} overlaps existing partition {number} (sectors {start}-{end})",
                    partition=number,
                )
    if plan.home.end != geo.total_sectors - 1:
        raise InvalidPlan("home must end on the last sector of the device")
    if plan.home.sectors * 2 < geo.total_sectors:
        raise InsufficientHomeSpace("home is smaller than half the device")
    if geo.partition_table == "msdos" and max(spec.number for spec in parts) > 4:
        raise InvalidPlan(
            f"msdos partition table on {geo.device} holds at most 4 primary partitions; "
            f"plan needs partition {max(spec.number for spec in parts)}",
            partition_table=geo.partition_table,
        )


def describe_plan(plan: Plan) -> list[str]:
    geo = plan.geometry
    lines = [
        f"Device: {geo.device} ({format_size(geo.size_bytes)}, {geo.total_sectors} sectors, "
        f"{geo.partition_table}, removable={geo.is_removable_media})",
        "Partition layout:",
    ]
    for spec in plan.partitions:
        fs = "existing" if spec.fs_kind is FsKind.UNCHANGED else spec.fs_kind.value
        lines.append(
            f"  #{spec.number} {spec.mount_point:<6} {fs:<8} sectors {spec.start}-{spec.end} "
            f"({format_size(spec.size_bytes)})"
        )
    for warning in plan.warnings:
        lines.append(f"[WARN] {warning}")
    return lines
