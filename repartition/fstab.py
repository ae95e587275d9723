"""Rewrite /etc/fstab of the migrated root with UUID-keyed entries."""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from typing import Iterable

from .model import FsKind, PartitionSpec, Role

OPTIONS = {
    Role.SWAP: ("sw", 0, 0),
    Role.VAR: ("defaults,noatime", 0, 0),
    Role.HOME: ("defaults,noatime", 0, 2),
}


@dataclass(frozen=True)
class FstabEntry:
    uuid: str
    mount_point: str
    fstype: str
    options: str
    dump: int
    passno: int

    def line(self) -> str:
        return f"UUID={self.uuid}  {self.mount_point}  {self.fstype}  {self.options}  {self.dump}  {self.passno}"


def entry_for(spec: PartitionSpec, uuid: str) -> FstabEntry:
    if not uuid:
        raise ValueError(f"no filesystem UUID for {spec.role.value} partition")
    options, dump, passno = OPTIONS[spec.role]
    fstype = spec.fs_kind.value if spec.fs_kind is not FsKind.UNCHANGED else "auto"
    return FstabEntry(uuid, spec.mount_point, fstype, options, dump, passno)


def _replaced(fields: list[str], entries: Iterable[FstabEntry]) -> bool:
    mount_point, fstype = fields[1], fields[2]
    for entry in entries:
        if entry.fstype == "swap":
            if fstype == "swap":
                return True
        elif mount_point.rstrip("/") == entry.mount_point:
            return True
    return False


def merge_fstab(existing: str, entries: list[FstabEntry]) -> str:
    """Return ``existing`` with stale /var, /home and swap entries replaced.

    Comments, blank lines and unrelated entries keep their order; the new
    entries are appended.
    """

    preserved: list[str] = []
    for line in existing.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            preserved.append(line)
            continue
        fields = stripped.split()
        if len(fields) >= 3 and _replaced(fields, entries):
            preserved.append(f"# replaced by repartition: {stripped}")
            continue
        preserved.append(line)
    while preserved and not preserved[-1].strip():
        preserved.pop()
    preserved.extend(entry.line() for entry in entries)
    return "\n".join(preserved) + "\n"


def update_fstab(root_mnt: str, entries: list[FstabEntry]) -> str:
    """Merge ``entries`` into ``<root_mnt>/etc/fstab``; return the file path.

    The pre-existing file is copied to ``fstab.orig`` once and the new
    content replaces the old atomically.
    """

    fstab = os.path.join(root_mnt, "etc", "fstab")
    os.makedirs(os.path.dirname(fstab), exist_ok=True)
    current = ""
    if os.path.isfile(fstab):
        with open(fstab, "r", encoding="utf-8") as fh:
            current = fh.read()
        backup = fstab + ".orig"
        if not os.path.exists(backup):
            shutil.copy2(fstab, backup)

    data = merge_fstab(current, entries)
    tmp = fstab + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, fstab)
    return fstab
