"""Shared test fixtures for proc-lifecycle."""

import tempfile
import time
from collections.abc import Iterator
from contextlib import ExitStack
from pathlib import Path
from unittest.mock import patch

import pytest

from proc_lifecycle.cgroups import CgroupController
from proc_lifecycle.config import CgroupConfig, Config
from proc_lifecycle.registry import ProcessRecord
from proc_lifecycle.ringbuffer import ResourceHistory
from proc_lifecycle.states import ProcessState


def make_record(
    pid: int = 1234,
    name: str = "test_proc",
    state: ProcessState = ProcessState.BACKGROUND,
    cpu: list[float] | None = None,
    memory: list[float] | None = None,
    last_active: float | None = None,
    last_foreground: float = 0.0,
    parent_pid: int = 1,
    requested_priority: int = 0,
    history_size: int = 10,
    **kwargs,
) -> ProcessRecord:
    """Create a ProcessRecord for testing with optional CPU/memory samples."""
    history = ResourceHistory.create(history_size)
    for value in cpu or []:
        history.cpu.push(value)
    for value in memory or []:
        history.memory.push(value)
    return ProcessRecord(
        pid=pid,
        name=name,
        cmdline=name,
        history=history,
        state=state,
        last_active_time=time.time() if last_active is None else last_active,
        last_foreground_time=last_foreground,
        parent_pid=parent_pid,
        requested_priority=requested_priority,
        **kwargs,
    )


class FakeCollector:
    """Stands in for SignalCollector with scripted host state."""

    def __init__(
        self,
        processes: list[tuple[int, str, str]] | None = None,
        focused: int | None = None,
        pressure: bool = False,
    ) -> None:
        self.processes = processes or []
        self.focused = focused
        self.pressure = pressure
        self.alive: set[int] = {pid for pid, _, _ in self.processes}
        self.parents: dict[int, int] = {}
        self.forgotten: list[int] = []

    def iter_processes(self):
        yield from self.processes

    def focused_pid(self) -> int | None:
        return self.focused

    def memory_pressure(self) -> bool:
        return self.pressure

    def parent_pid(self, pid: int) -> int:
        return self.parents.get(pid, 0)

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive

    def forget(self, pid: int) -> None:
        self.forgotten.append(pid)

    def refresh(self, record: ProcessRecord, now: float, focused_pid: int | None = None) -> None:
        record.parent_pid = self.parents.get(record.pid, record.parent_pid)
        if record.pid == focused_pid:
            record.last_active_time = now


@pytest.fixture
def fake_collector() -> FakeCollector:
    return FakeCollector()


@pytest.fixture
def short_tmp_path() -> Iterator[Path]:
    """Create a short temporary path for Unix sockets.

    Unix socket paths are limited to ~108 characters and pytest's
    tmp_path is often longer, so we use /tmp directly.
    """
    with tempfile.TemporaryDirectory(dir="/tmp", prefix="pl_") as tmpdir:
        yield Path(tmpdir)


def _patch_config_paths(stack: ExitStack, base_path: Path) -> None:
    """Point every Config path property at base_path."""
    paths = {
        "config_dir": base_path / "config",
        "config_path": base_path / "config" / "config.toml",
        "state_dir": base_path / "state",
        "log_path": base_path / "state" / "daemon.log",
        "runtime_dir": base_path,
        "pid_path": base_path / "daemon.pid",
        "socket_path": base_path / "daemon.sock",
    }
    for name, value in paths.items():
        stack.enter_context(
            patch.object(Config, name, new_callable=lambda v=value: property(lambda self: v))
        )


@pytest.fixture
def patched_config_paths(short_tmp_path: Path) -> Iterator[Path]:
    """Patch all Config path properties to live under a short /tmp dir."""
    with ExitStack() as stack:
        _patch_config_paths(stack, short_tmp_path)
        yield short_tmp_path


@pytest.fixture
def cgroup_tree(tmp_path: Path) -> tuple[Path, Path]:
    """Fake cgroup root with one directory per state, plus a fake /proc."""
    root = tmp_path / "cgroup"
    root.mkdir()
    for state in ProcessState:
        (root / state.policy.cgroup).mkdir()
    proc = tmp_path / "proc"
    proc.mkdir()
    return root, proc


def add_proc(proc_root: Path, pid: int) -> Path:
    """Create /proc/<pid>/ in a fake proc tree."""
    path = proc_root / str(pid)
    path.mkdir(exist_ok=True)
    return path


@pytest.fixture
def cgroups(cgroup_tree: tuple[Path, Path]) -> CgroupController:
    root, proc = cgroup_tree
    return CgroupController(CgroupConfig(root=str(root)), proc_root=proc)
