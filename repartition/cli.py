"""CLI entrypoint: shrink the root filesystem and split the rest of the disk."""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from typing import Any, Callable, Dict, Optional

from . import safety
from .devices import inspect, normalize_device
from .errors import PipelineFailed, RepartitionError
from .executil import append_jsonl, resolve_log_path, run, trace
from .layout import describe_plan, plan_layout
from .model import Plan, PipelineOutcome, RemovablePolicy, RunConfig
from .paths import default_mount_base
from .pipeline import Pipeline, stages_for
from .sizes import parse_size

RESULT_CODES: Dict[str, int] = {
    "PLAN_OK": 0,
    "DRYRUN_OK": 0,
    "REPARTITION_OK": 0,
    "ABORTED": 1,
    "FAIL_INPUT": 2,
    "FAIL_INVALID_SIZE": 2,
    "FAIL_ARITHMETIC_OVERFLOW": 2,
    "FAIL_ROOT_SIZE": 2,
    "FAIL_HOME_SPACE": 2,
    "FAIL_PLAN": 2,
    "FAIL_SAFETY_GUARD": 3,
    "FAIL_PERMISSION": 3,
    "FAIL_INVALID_DEVICE": 3,
    "FAIL_DEVICE_QUERY": 3,
    "FAIL_LIVE_DISK_GUARD": 3,
    "FAIL_MISSING_DEPENDENCY": 3,
    "FAIL_REMOVABLE_POLICY": 3,
    "FAIL_EXECUTION": 4,
    "FAIL_GENERIC": 5,
    "FAIL_UNHANDLED": 5,
}

NO_ROLLBACK_WARNING = (
    "Partition and filesystem changes are not rolled back on failure. "
    "A failed run can leave the device shrunk and partially repartitioned "
    "without migrated data; inspect it manually before re-running."
)

CLI_START_MONO = time.perf_counter()
JSON_OUTPUT_ENABLED = True


def _say(msg: str) -> None:
    print(msg, file=sys.stderr)


def _emit_result(kind: str, extra: Optional[Dict[str, Any]] = None) -> None:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time())}
    if extra:
        payload.update(extra)
    payload["timing_total_ms"] = int(max(0.0, (time.perf_counter() - CLI_START_MONO) * 1000))
    log_path = resolve_log_path()
    if log_path:
        payload.setdefault("log_path", log_path)
        append_jsonl(log_path, payload)
    if JSON_OUTPUT_ENABLED:
        print(json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str))
    else:
        why = payload.get("reason") or ""
        _say(f"result={kind}" + (f" why={why}" if why else ""))
    raise SystemExit(RESULT_CODES.get(kind, 1))


def _policy(value: str) -> RemovablePolicy:
    try:
        return RemovablePolicy(value.strip().lower())
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"invalid policy {value!r} (choose from {', '.join(p.value for p in RemovablePolicy)})"
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rpi-repartition",
        description="Shrink the root filesystem and create swap, /var and /home partitions.",
    )
    parser.add_argument("-d", "--device", required=True, help="target device, e.g. /dev/mmcblk0 or sda")
    parser.add_argument("-r", "--root-size", required=True, help="root filesystem size, 8G..64G")
    parser.add_argument("-s", "--swap-size", default=None, help="swap partition size, e.g. 4G")
    parser.add_argument("-v", "--var-size", default=None, help="/var partition size (btrfs), e.g. 8G")
    parser.add_argument("--dry-run", action="store_true", help="compute and print the plan only")
    parser.add_argument(
        "--removable-policy",
        type=_policy,
        default=os.environ.get("REPART_REMOVABLE_POLICY", "deny"),
        help="swap/var on removable media: deny (default), skip, allow",
    )
    parser.add_argument(
        "-f", "--force", action="store_true",
        help="same as --removable-policy allow",
    )
    parser.add_argument("--allow-active-disk", action="store_true", help="operate on the live root disk")
    parser.add_argument("--root-partition", type=int, default=2, help="number of the root partition")
    parser.add_argument("--mount-base", default=default_mount_base(), help="staging directory for mounts")
    parser.add_argument("-y", "--yes", dest="assume_yes", action="store_true", help="skip confirmation")
    parser.add_argument("--json", dest="json", action="store_true", default=True)
    parser.add_argument("--no-json", dest="json", action="store_false")
    return parser


def config_from_args(args: argparse.Namespace) -> RunConfig:
    """Parse sizes and flags into a :class:`RunConfig`; may raise InvalidSizeFormat."""

    return RunConfig(
        device=normalize_device(args.device),
        root_size=parse_size(args.root_size),
        swap_size=parse_size(args.swap_size) if args.swap_size else None,
        var_size=parse_size(args.var_size) if args.var_size else None,
        allow_active_disk=args.allow_active_disk,
        removable_policy=RemovablePolicy.ALLOW if args.force else args.removable_policy,
        dry_run=args.dry_run,
        assume_yes=args.assume_yes,
        root_partition_number=args.root_partition,
        mount_base=args.mount_base,
    )


def build_plan(config: RunConfig, euid: Optional[int] = None) -> Plan:
    safety.preflight(config, euid=euid)
    geometry = inspect(config.device, root_partition_number=config.root_partition_number)
    plan = plan_layout(
        geometry,
        config.root_size,
        swap_size=config.swap_size,
        var_size=config.var_size,
        policy=config.removable_policy,
    )
    safety.check_plan(plan)
    trace("cli.plan", **plan.to_dict())
    return plan


def confirm(plan: Plan, assume_yes: bool, ask: Callable[[str], str] = input) -> bool:
    if assume_yes:
        return True
    _say(f"WARNING: this will modify the partitions on {plan.geometry.device}!")
    _say(NO_ROLLBACK_WARNING)
    try:
        answer = ask("Type 'yes' to continue: ")
    except EOFError:
        return False
    return answer.strip().lower() in ("yes", "y")


def next_steps(plan: Plan) -> list[str]:
    steps = ["Reboot and verify that the new mounts come up from /etc/fstab."]
    if plan.created:
        steps.append(
            "Old copies of migrated data remain on the root filesystem "
            "(hidden under the new mounts); remove them once verified."
        )
    return steps


def _report_outcome(outcome: PipelineOutcome) -> None:
    payload = {"device": outcome.plan.geometry.device, "plan": outcome.plan.to_dict(), **outcome.to_dict()}
    if outcome.ok:
        payload["next_steps"] = next_steps(outcome.plan)
        _emit_result("REPARTITION_OK", payload)
    error = PipelineFailed(outcome.failed_stage, outcome.cause or "unknown error", output=outcome.output)
    payload["reason"] = str(error)
    payload["warning"] = NO_ROLLBACK_WARNING
    _emit_result(error.result, payload)


def _main_impl(argv: Optional[list[str]] = None, runner: Optional[Callable] = None) -> int:
    global JSON_OUTPUT_ENABLED
    args = build_parser().parse_args(argv)
    JSON_OUTPUT_ENABLED = bool(args.json)

    try:
        config = config_from_args(args)
        trace(
            "cli.args",
            device=config.device,
            root_size=config.root_size,
            swap_size=config.swap_size,
            var_size=config.var_size,
            dry_run=config.dry_run,
            policy=config.removable_policy.value,
            allow_active_disk=config.allow_active_disk,
        )
        plan = build_plan(config)
    except RepartitionError as exc:
        _emit_result(exc.result, {"device": args.device, "reason": str(exc), **exc.details})

    for line in describe_plan(plan):
        _say(line)

    if config.dry_run:
        _say("=== DRY RUN: no changes made ===")
        _emit_result(
            "DRYRUN_OK",
            {"device": config.device, "plan": plan.to_dict(), "stages": [s.value for s in stages_for(plan)]},
        )

    if not confirm(plan, config.assume_yes):
        _emit_result("ABORTED", {"device": config.device, "reason": "not confirmed"})

    pipeline = Pipeline(plan, runner=runner or run, mount_base=config.mount_base)
    _report_outcome(pipeline.execute())
    return 0


def main(argv: Optional[list[str]] = None) -> int:  # pragma: no cover - exercised via manual CLI
    try:
        return _main_impl(argv)
    except SystemExit:
        raise
    except KeyboardInterrupt:
        _emit_result("ABORTED", {"reason": "interrupted"})
    except Exception as exc:  # noqa: BLE001
        trace("cli.unhandled", error=repr(exc))
        _emit_result("FAIL_UNHANDLED", {"reason": repr(exc)})
    return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
