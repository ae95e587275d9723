"""Mount points for the new layout and their guaranteed release."""
from __future__ import annotations

import os
import posixpath
import time

from .devices import is_block_device, partition_path
from .executil import run, trace, udev_settle
from .model import Plan, Role, Step

MOUNT_TYPES = {
    Role.ROOT: None,
    Role.VAR: "btrfs",
    Role.HOME: "ext4",
}


def mount_point(mount_base: str, role: Role) -> str:
    return posixpath.join(mount_base, role.value)


def mount_steps(plan: Plan, mount_base: str) -> list[Step]:
    """Root first, then /var, then /home, each on its own staging directory."""

    steps: list[Step] = []
    for role in (Role.ROOT, Role.VAR, Role.HOME):
        spec = plan.get(role)
        if spec is None:
            continue
        target = mount_point(mount_base, role)
        cmd = ["mount"]
        fstype = MOUNT_TYPES[role]
        if fstype:
            cmd += ["-t", fstype]
        cmd += [partition_path(plan.geometry.device, spec.number), target]
        steps.append(Step(("mkdir", "-p", target)))
        steps.append(Step(tuple(cmd), acquires=target))
    return steps


def unmount_steps(mounted: list[str]) -> list[Step]:
    return [Step(("umount", path), releases=path) for path in reversed(mounted)]


class MountSet:
    """Mount points acquired during a run, released in reverse order."""

    def __init__(self, mnt: str):
        self.mnt = mnt
        self.mounted_paths: list[str] = []

    def acquired(self, path: str) -> None:
        self.mounted_paths.append(path)

    def released(self, path: str) -> None:
        if path in self.mounted_paths:
            self.mounted_paths.remove(path)

    def release_all(self, runner=run) -> list[str]:
        """Best-effort lazy unmount of everything still mounted.

        Used on failure paths only; returns the paths that could not be
        unmounted.
        """

        stuck: list[str] = []
        for path in reversed(list(self.mounted_paths)):
            try:
                r = runner(["umount", "-l", path], check=False)
            except OSError as exc:
                trace("mounts.release_error", path=path, error=str(exc))
                stuck.append(path)
                continue
            if r.rc == 0:
                self.released(path)
            else:
                trace("mounts.release_failed", path=path, rc=r.rc, err=(r.err or "").strip())
                stuck.append(path)
        return stuck


def await_block_device(path: str, timeout: float = 15.0, settle: bool = True) -> None:
    """Wait until ``path`` resolves to a block device.

    Partition nodes appear asynchronously after ``partprobe``; poll for up
    to ``timeout`` seconds, letting udev settle between attempts.
    """

    deadline = time.monotonic() + timeout
    trace("mounts.await_block.start", path=path, timeout=timeout)
    while True:
        if is_block_device(path):
            trace("mounts.await_block.ready", path=path)
            return
        if time.monotonic() >= deadline:
            break
        if settle:
            udev_settle()
        time.sleep(0.2)

    if not os.path.exists(path):
        raise RuntimeError(f"block device {path!r} did not appear within {timeout:.1f}s")
    raise RuntimeError(f"{path!r} exists but is not a block device")
