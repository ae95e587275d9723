import ast
import sys
import threading
from collections import defaultdict
from pathlib import Path
from typing import Dict, Set

import pytest

from repartition import executil
from repartition.executil import Result
from repartition.model import DeviceGeometry

_ROOT_DIR = Path(__file__).absolute().parent.parent
_PACKAGE_DIR = (_ROOT_DIR / "repartition").absolute()

_EXECUTED_LINES: Dict[Path, Set[int]] = defaultdict(set)
_CANDIDATE_LINES: Dict[Path, Set[int]] = {}
_PREVIOUS_TRACE = None


def _statement_lines(path: Path) -> Set[int]:
    source = path.read_text(encoding="utf-8")
    try:
        tree = ast.parse(source, filename=str(path))
    except SyntaxError:
        return set()
    # Only lines that start a statement; docstrings and comments never execute.
    return {
        node.lineno
        for node in ast.walk(tree)
        if isinstance(node, ast.stmt) and not (isinstance(node, ast.Expr) and isinstance(node.value, ast.Constant))
    }


for _path in sorted(_PACKAGE_DIR.glob("*.py")):
    _CANDIDATE_LINES[_path] = _statement_lines(_path)


def _trace(frame, event, arg):
    path = Path(frame.f_code.co_filename)
    if path not in _CANDIDATE_LINES:
        return None
    if event == "line":
        _EXECUTED_LINES[path].add(frame.f_lineno)
    return _trace


def pytest_sessionstart(session):
    global _PREVIOUS_TRACE
    _PREVIOUS_TRACE = sys.gettrace()
    if _PREVIOUS_TRACE is not None:
        # another tracer (pytest-cov, a debugger) owns the hook
        return
    sys.settrace(_trace)
    threading.settrace(_trace)


def pytest_sessionfinish(session, exitstatus):
    if _PREVIOUS_TRACE is not None:
        return
    sys.settrace(None)
    threading.settrace(None)
    terminal = session.config.pluginmanager.get_plugin("terminalreporter")
    write_line = terminal.write_line if terminal else print
    total = covered = 0
    write_line("")
    write_line("Coverage summary for 'repartition':")
    for path, candidates in _CANDIDATE_LINES.items():
        if not candidates:
            continue
        hit = len(_EXECUTED_LINES.get(path, set()) & candidates)
        total += len(candidates)
        covered += hit
        write_line(f"{str(path.relative_to(_ROOT_DIR)):<40} {len(candidates):>6} {hit / len(candidates) * 100:>6.1f}%")
    if total:
        write_line(f"{'TOTAL':<40} {total:>6} {covered / total * 100:>6.1f}%")


@pytest.fixture(autouse=True)
def _isolated_log(tmp_path, monkeypatch):
    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path / "logs")])
    monkeypatch.setattr(executil, "LOG_PATH", None)


class FakeRunner:
    """Stand-in for ``executil.run`` that records argv lists.

    ``responses`` maps a program name (argv[0]) or a full argv tuple to a
    ``Result`` or a callable returning one. Unknown commands succeed with
    empty output; ``blkid`` answers with ``uuid-<partition name>``.
    """

    def __init__(self, responses=None):
        self.calls: list[list[str]] = []
        self.inputs: list = []
        self.responses = dict(responses or {})

    def __call__(self, cmd, check=True, dry_run=False, timeout=60.0, env=None, input=None):
        argv = list(cmd)
        self.calls.append(argv)
        self.inputs.append(input)
        response = self.responses.get(tuple(argv), self.responses.get(argv[0]))
        if callable(response):
            response = response(argv)
        if response is None:
            out = ""
            if argv[0] == "blkid":
                out = "uuid-" + argv[-1].rsplit("/", 1)[-1] + "\n"
            response = Result(0, out, "", 0.0)
        return response

    def programs(self) -> list[str]:
        return [argv[0] for argv in self.calls]


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def geometry():
    # 64 GB USB SSD with the stock two-partition Raspberry Pi OS layout.
    return DeviceGeometry(
        device="/dev/sda",
        total_sectors=125_042_688,
        root_partition_start=1_056_768,
        is_removable_media=False,
        root_partition_number=2,
        last_partition_number=2,
        partition_table="gpt",
    )
