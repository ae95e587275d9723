from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .sectors import SECTOR_SIZE


class Role(str, Enum):
    ROOT = "root"
    SWAP = "swap"
    VAR = "var"
    HOME = "home"


class FsKind(str, Enum):
    EXT4 = "ext4"
    BTRFS = "btrfs"
    SWAP = "swap"
    UNCHANGED = "unchanged"


class RemovablePolicy(str, Enum):
    """What to do with swap/var requests on removable media."""

    DENY = "deny"
    SKIP = "skip"
    ALLOW = "allow"


MOUNT_POINTS = {
    Role.ROOT: "/",
    Role.SWAP: "none",
    Role.VAR: "/var",
    Role.HOME: "/home",
}


@dataclass(frozen=True)
class DeviceGeometry:
    device: str
    total_sectors: int
    root_partition_start: int
    is_removable_media: bool = False
    sector_size: int = SECTOR_SIZE
    root_partition_number: int = 2
    last_partition_number: int = 2
    partition_table: str = "msdos"
    root_partition_end: Optional[int] = None
    # (number, start, end) of every partition present before repartitioning
    existing_partitions: tuple[tuple[int, int, int], ...] = ()

    @property
    def size_bytes(self) -> int:
        return self.total_sectors * self.sector_size


@dataclass(frozen=True)
class PartitionSpec:
    role: Role
    start: int
    end: int
    fs_kind: FsKind
    number: int

    @property
    def sectors(self) -> int:
        return self.end - self.start + 1

    @property
    def size_bytes(self) -> int:
        return self.sectors * SECTOR_SIZE

    @property
    def mount_point(self) -> str:
        return MOUNT_POINTS[self.role]


@dataclass(frozen=True)
class Plan:
    geometry: DeviceGeometry
    partitions: tuple[PartitionSpec, ...]
    policy: RemovablePolicy = RemovablePolicy.DENY
    warnings: tuple[str, ...] = ()

    def get(self, role: Role) -> Optional[PartitionSpec]:
        for spec in self.partitions:
            if spec.role is role:
                return spec
        return None

    @property
    def root(self) -> PartitionSpec:
        return self.partitions[0]

    @property
    def home(self) -> PartitionSpec:
        return self.partitions[-1]

    @property
    def created(self) -> tuple[PartitionSpec, ...]:
        return tuple(spec for spec in self.partitions if spec.role is not Role.ROOT)

    def to_dict(self) -> dict:
        geo = self.geometry
        return {
            "device": geo.device,
            "total_sectors": geo.total_sectors,
            "removable": geo.is_removable_media,
            "partition_table": geo.partition_table,
            "policy": self.policy.value,
            "warnings": list(self.warnings),
            "partitions": [
                {
                    "number": spec.number,
                    "role": spec.role.value,
                    "fs": spec.fs_kind.value,
                    "start": spec.start,
                    "end": spec.end,
                    "sectors": spec.sectors,
                }
                for spec in self.partitions
            ],
        }


@dataclass(frozen=True)
class RunConfig:
    device: str
    root_size: int
    swap_size: Optional[int] = None
    var_size: Optional[int] = None
    allow_active_disk: bool = False
    removable_policy: RemovablePolicy = RemovablePolicy.DENY
    dry_run: bool = False
    assume_yes: bool = False
    root_partition_number: int = 2
    mount_base: str = "/mnt/repartition"


@dataclass
class PipelineOutcome:
    ok: bool
    plan: Plan
    stages: list[str] = field(default_factory=list)
    uuids: dict[str, str] = field(default_factory=dict)
    migrations: dict[str, dict] = field(default_factory=dict)
    partition_table: str = ""
    failed_stage: Optional[str] = None
    cause: Optional[str] = None
    output: str = ""

    def to_dict(self) -> dict:
        payload = {
            "ok": self.ok,
            "stages": list(self.stages),
            "uuids": dict(self.uuids),
        }
        if self.migrations:
            payload["migrations"] = dict(self.migrations)
        if self.ok:
            payload["partition_table"] = self.partition_table.splitlines()
        else:
            payload["failed_stage"] = self.failed_stage
            payload["cause"] = self.cause
        return payload


@dataclass(frozen=True)
class Step:
    """One external command issued by a pipeline stage.

    ``wait_for`` names a device node that must exist once the command has
    succeeded; ``acquires``/``releases`` track mount points.
    """

    argv: tuple[str, ...]
    ok_codes: tuple[int, ...] = (0,)
    input: Optional[str] = None
    timeout: float = 60.0
    wait_for: Optional[str] = None
    acquires: Optional[str] = None
    releases: Optional[str] = None
