"""Subprocess wrapper and JSON-lines trace log."""

from __future__ import annotations

import datetime as _dt
import json
import os
import shlex
import subprocess
import time
from typing import Sequence

from .paths import logs_dir


LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "repartition.jsonl"


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    return [
        logs_dir(),
        "/var/log/rpi-repartition",
        "/tmp/rpi-repartition-logs",
    ]


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        d_expanded = os.path.expanduser(d)
        try:
            os.makedirs(d_expanded, exist_ok=True)
        except OSError:
            continue
        LOG_PATH = os.path.join(d_expanded, LOG_NAME)
        return LOG_PATH
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration

    def __repr__(self) -> str:
        return f"Result(rc={self.rc}, duration={self.duration:.3f})"


LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_LEVEL = os.environ.get("REPART_LOG_LEVEL", "TRACE").upper()


def _utc_now() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat().replace("+00:00", "Z")


def append_jsonl(path: str, obj: dict):
    try:
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
    except OSError:
        pass


def log(level: str, event: str, **fields):
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(LOG_LEVEL, 100)
    if lvl < cur:
        return
    rec = {"ts": _utc_now(), "level": level.upper(), "event": event}
    rec.update(fields)
    path = _ensure_logger()
    if path:
        append_jsonl(path, rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


def info(event: str, **fields):
    log("INFO", event, **fields)


def warn(event: str, **fields):
    log("WARN", event, **fields)


def run(
    cmd: Sequence[str],
    check: bool = True,
    dry_run: bool = False,
    timeout: float = 60.0,
    env: dict | None = None,
    input: str | None = None,
) -> Result:
    """Run ``cmd`` and capture its output.

    Commands are never retried here: a timed-out or failed mutation is
    reported to the caller as-is. With ``check`` a non-zero exit raises
    :class:`subprocess.CalledProcessError`.
    """

    argv = list(cmd)
    trace("exec.start", cmd=argv, dry_run=dry_run)
    if dry_run:
        text = "DRY-RUN: " + " ".join(shlex.quote(c) for c in argv)
        return Result(0, text, "", 0.0)
    started = time.monotonic()
    env2 = (env or os.environ).copy()
    env2.setdefault("LC_ALL", "C")
    proc = subprocess.run(
        argv,
        capture_output=True,
        text=True,
        timeout=timeout,
        env=env2,
        input=input,
    )
    dur = time.monotonic() - started
    trace("exec.done", cmd=argv, rc=proc.returncode, dur=dur, out=proc.stdout, err=proc.stderr)
    if check and proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, argv, proc.stdout, proc.stderr)
    return Result(proc.returncode, proc.stdout, proc.stderr, dur)


def udev_settle():
    try:
        subprocess.run(["udevadm", "settle"], check=False)
    except OSError:
        pass
