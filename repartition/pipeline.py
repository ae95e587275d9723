"""Ordered execution of a validated plan.

Each stage maps the plan to a fixed list of :class:`Step` commands (pure,
see :func:`stage_steps`); :class:`Pipeline` is the only place that runs
them. The first failing step ends the run: later stages are never started,
mounts taken so far are released, and nothing already written to the
partition table or to a filesystem is rolled back. A failed run can leave
the device shrunk and partially repartitioned but unmigrated, and it needs
manual inspection before a re-run.
"""
from __future__ import annotations

import posixpath
import subprocess
from enum import Enum
from typing import Callable, Optional

from . import partitioning
from .devices import partition_path
from .errors import PipelineFailed
from .executil import info, run, trace, warn
from .fstab import entry_for, update_fstab
from .migrate import migrate_step, parse_rsync_stats
from .model import PipelineOutcome, Plan, Role, Step
from .mounts import MountSet, await_block_device, mount_point, mount_steps, unmount_steps
from .paths import default_mount_base


class Stage(str, Enum):
    CHECK_FILESYSTEM = "CheckFilesystem"
    SHRINK_FILESYSTEM = "ShrinkFilesystem"
    RESIZE_ROOT_PARTITION = "ResizeRootPartition"
    CREATE_SWAP = "CreateSwap"
    CREATE_VAR = "CreateVar"
    CREATE_HOME = "CreateHome"
    MOUNT_ALL = "MountAll"
    MIGRATE_VAR = "MigrateVar"
    MIGRATE_HOME = "MigrateHome"
    UPDATE_PERSISTED_MOUNTS = "UpdatePersistedMounts"
    UNMOUNT_ALL = "UnmountAll"


# Stages that only exist when the plan has the partition.
CONDITIONAL = {
    Stage.CREATE_SWAP: Role.SWAP,
    Stage.CREATE_VAR: Role.VAR,
    Stage.MIGRATE_VAR: Role.VAR,
}

MIGRATIONS = {
    Stage.MIGRATE_VAR: Role.VAR,
    Stage.MIGRATE_HOME: Role.HOME,
}


def stages_for(plan: Plan) -> list[Stage]:
    return [stage for stage in Stage if stage not in CONDITIONAL or plan.get(CONDITIONAL[stage]) is not None]


def _mounted_roles(plan: Plan) -> list[Role]:
    return [role for role in (Role.ROOT, Role.VAR, Role.HOME) if plan.get(role) is not None]


def stage_steps(stage: Stage, plan: Plan, mount_base: str) -> list[Step]:
    if stage is Stage.CHECK_FILESYSTEM:
        return partitioning.check_filesystem(plan)
    if stage is Stage.SHRINK_FILESYSTEM:
        return partitioning.shrink_filesystem(plan)
    if stage is Stage.RESIZE_ROOT_PARTITION:
        return partitioning.resize_root_partition(plan)
    if stage is Stage.CREATE_SWAP:
        return partitioning.create_partition(plan, plan.get(Role.SWAP))
    if stage is Stage.CREATE_VAR:
        return partitioning.create_partition(plan, plan.get(Role.VAR))
    if stage is Stage.CREATE_HOME:
        return partitioning.create_partition(plan, plan.home)
    if stage is Stage.MOUNT_ALL:
        return mount_steps(plan, mount_base)
    if stage in MIGRATIONS:
        role = MIGRATIONS[stage]
        source = posixpath.join(mount_point(mount_base, Role.ROOT), role.value)
        return [migrate_step(source, mount_point(mount_base, role))]
    if stage is Stage.UPDATE_PERSISTED_MOUNTS:
        device = plan.geometry.device
        return [
            Step(("blkid", "-s", "UUID", "-o", "value", partition_path(device, spec.number)))
            for spec in plan.created
        ]
    if stage is Stage.UNMOUNT_ALL:
        return unmount_steps([mount_point(mount_base, role) for role in _mounted_roles(plan)])
    raise ValueError(f"unknown stage {stage!r}")


class Pipeline:
    def __init__(
        self,
        plan: Plan,
        runner: Callable = run,
        mount_base: Optional[str] = None,
        await_device: Optional[Callable] = None,
    ):
        self.plan = plan
        self.runner = runner
        self.mount_base = mount_base or default_mount_base()
        self.await_device = await_device or await_block_device
        self.mounts = MountSet(self.mount_base)

    def _exec(self, stage: Stage, step: Step):
        argv = list(step.argv)
        try:
            result = self.runner(argv, check=False, timeout=step.timeout, input=step.input)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise PipelineFailed(stage, f"{argv[0]}: {exc}") from exc
        if result.rc not in step.ok_codes:
            msg = (result.err or result.out or "").strip() or f"exit status {result.rc}"
            raise PipelineFailed(stage, f"{argv[0]} exited {result.rc}: {msg}", output=result.out or "")
        if step.acquires:
            self.mounts.acquired(step.acquires)
        if step.releases:
            self.mounts.released(step.releases)
        if step.wait_for:
            try:
                self.await_device(step.wait_for)
            except RuntimeError as exc:
                raise PipelineFailed(stage, str(exc)) from exc
        return result

    def _run_stage(self, stage: Stage, outcome: PipelineOutcome) -> None:
        results = [self._exec(stage, step) for step in stage_steps(stage, self.plan, self.mount_base)]
        if stage in MIGRATIONS:
            outcome.migrations[MIGRATIONS[stage].value] = parse_rsync_stats(results[-1].out or "")
        elif stage is Stage.UPDATE_PERSISTED_MOUNTS:
            self._persist_mounts(stage, results, outcome)

    def _persist_mounts(self, stage: Stage, results: list, outcome: PipelineOutcome) -> None:
        entries = []
        for spec, result in zip(self.plan.created, results):
            uuid = (result.out or "").strip()
            try:
                entries.append(entry_for(spec, uuid))
            except ValueError as exc:
                raise PipelineFailed(stage, str(exc)) from exc
            outcome.uuids[spec.role.value] = uuid
        try:
            path = update_fstab(mount_point(self.mount_base, Role.ROOT), entries)
        except OSError as exc:
            raise PipelineFailed(stage, f"writing fstab failed: {exc}") from exc
        trace("pipeline.fstab", path=path, uuids=outcome.uuids)

    def _final_table(self) -> str:
        try:
            result = self.runner(
                ["parted", "-sm", self.plan.geometry.device, "unit", "s", "print"], check=False
            )
        except OSError:
            return ""
        return result.out or ""

    def execute(self) -> PipelineOutcome:
        outcome = PipelineOutcome(ok=False, plan=self.plan)
        for stage in stages_for(self.plan):
            trace("pipeline.stage.start", stage=stage.value)
            try:
                self._run_stage(stage, outcome)
            except PipelineFailed as exc:
                stuck = self.mounts.release_all(self.runner)
                warn(
                    "pipeline.failed",
                    stage=stage.value,
                    cause=exc.cause,
                    completed=outcome.stages,
                    stuck_mounts=stuck,
                )
                outcome.failed_stage = stage.value
                outcome.cause = exc.cause
                outcome.output = exc.output
                return outcome
            except BaseException:
                self.mounts.release_all(self.runner)
                raise
            outcome.stages.append(stage.value)
            info("pipeline.stage.done", stage=stage.value)
        outcome.partition_table = self._final_table()
        outcome.ok = True
        return outcome
