"""Partition-table and filesystem commands for a plan (no execution here)."""
from __future__ import annotations

from .devices import partition_path
from .model import FsKind, PartitionSpec, Plan, Role, Step

# e2fsck: 0 clean, 1 errors corrected; anything else needs an operator.
FSCK_OK = (0, 1)
FS_BLOCK = 4096

PARTED_FS_TYPES = {
    FsKind.SWAP: "linux-swap",
    FsKind.BTRFS: "btrfs",
    FsKind.EXT4: "ext4",
}

LABELS = {
    Role.SWAP: "swap",
    Role.VAR: "var",
    Role.HOME: "home",
}


def root_path(plan: Plan) -> str:
    return partition_path(plan.geometry.device, plan.root.number)


def check_filesystem(plan: Plan) -> list[Step]:
    return [Step(("e2fsck", "-f", "-y", root_path(plan)), ok_codes=FSCK_OK, timeout=3600.0)]


def shrink_target_kib(plan: Plan) -> int:
    # Whole 4 KiB blocks that fit inside the (rounded-down) root span.
    return plan.root.size_bytes // FS_BLOCK * FS_BLOCK // 1024


def shrink_filesystem(plan: Plan) -> list[Step]:
    return [Step(("resize2fs", root_path(plan), f"{shrink_target_kib(plan)}K"), timeout=7200.0)]


def _reread(plan: Plan, wait_for: str | None = None) -> Step:
    return Step(("partprobe", plan.geometry.device), wait_for=wait_for)


def resize_root_partition(plan: Plan) -> list[Step]:
    # parted asks for confirmation when shrinking; answer it on a pretend tty.
    root = plan.root
    script = f"unit s\nresizepart {root.number} {root.end}s\nYes\nquit\n"
    return [
        Step(("parted", "---pretend-input-tty", plan.geometry.device), input=script),
        _reread(plan, wait_for=root_path(plan)),
    ]


def _format_command(spec: PartitionSpec, path: str) -> tuple[str, ...]:
    label = LABELS[spec.role]
    if spec.fs_kind is FsKind.SWAP:
        return ("mkswap", "-L", label, path)
    if spec.fs_kind is FsKind.BTRFS:
        return ("mkfs.btrfs", "-f", "-L", label, path)
    return ("mkfs.ext4", "-F", "-L", label, path)


def create_partition(plan: Plan, spec: PartitionSpec) -> list[Step]:
    device = plan.geometry.device
    path = partition_path(device, spec.number)
    name = "primary" if plan.geometry.partition_table == "msdos" else spec.role.value
    mkpart = (
        "parted", "-s", "-a", "none", device, "unit", "s",
        "mkpart", name, PARTED_FS_TYPES[spec.fs_kind], f"{spec.start}s", f"{spec.end}s",
    )
    return [
        Step(mkpart),
        _reread(plan, wait_for=path),
        Step(_format_command(spec, path), timeout=600.0),
    ]
