"""Tests for cgroup and OOM score writes."""

from pathlib import Path

from proc_lifecycle.cgroups import CgroupController
from proc_lifecycle.config import CgroupConfig
from proc_lifecycle.states import ProcessState

from tests.conftest import add_proc


def test_path_for_state(cgroups, cgroup_tree):
    root, _ = cgroup_tree
    assert cgroups.path_for(ProcessState.CACHED) == str(root / "cached")
    assert cgroups.default_path == str(root)


def test_setup_creates_groups_and_enables_controllers(tmp_path):
    root = tmp_path / "cg"
    root.mkdir()
    controller = CgroupController(CgroupConfig(root=str(root)))

    assert controller.setup() is True
    for state in ProcessState:
        assert (root / state.value).is_dir()
    assert (root / "cgroup.subtree_control").read_text() == "+cpu +memory"


def test_setup_missing_root_fails(tmp_path):
    controller = CgroupController(CgroupConfig(root=str(tmp_path / "missing")))
    assert controller.setup() is False


def test_assign_writes_pid(cgroups, cgroup_tree):
    root, _ = cgroup_tree
    path = cgroups.path_for(ProcessState.FOREGROUND)
    assert cgroups.assign(path, 1234) is True
    assert (root / "foreground" / "cgroup.procs").read_text() == "1234"


def test_assign_missing_group_fails(cgroups, cgroup_tree):
    root, _ = cgroup_tree
    assert cgroups.assign(str(root / "nonexistent"), 1234) is False


def test_set_weight_and_memory_limit(cgroups, cgroup_tree):
    root, _ = cgroup_tree
    path = cgroups.path_for(ProcessState.BACKGROUND)

    assert cgroups.set_weight(path, 25) is True
    assert cgroups.set_memory_limit(path, 1_048_576) is True
    assert (root / "background" / "cpu.weight").read_text() == "25"
    assert (root / "background" / "memory.max").read_text() == "1048576"

    assert cgroups.set_memory_limit(path, None) is True
    assert (root / "background" / "memory.max").read_text() == "max"


def test_set_oom_score(cgroups, cgroup_tree):
    _, proc = cgroup_tree
    add_proc(proc, 4321)
    assert cgroups.set_oom_score(4321, -900) is True
    assert (proc / "4321" / "oom_score_adj").read_text() == "-900"


def test_set_oom_score_vanished_process(cgroups):
    assert cgroups.set_oom_score(99999, 500) is False


def test_disabled_controller_writes_nothing(tmp_path):
    """Dry run reports success without touching the filesystem."""
    root = tmp_path / "cg"
    controller = CgroupController(
        CgroupConfig(root=str(root), enabled=False), proc_root=tmp_path / "proc"
    )

    assert controller.setup() is True
    assert controller.assign(controller.path_for(ProcessState.CACHED), 1) is True
    assert controller.set_oom_score(1, 500) is True
    assert not root.exists()
    assert not Path(tmp_path / "proc").exists()
