"""Control group (cgroup v2) and OOM score writes.

Every write is a single small file write. Failures (missing path,
permission denied, a pid the kernel refuses to move) are logged and
reported as False; nothing here raises.
"""

from __future__ import annotations

from pathlib import Path

import structlog

from proc_lifecycle.config import CgroupConfig
from proc_lifecycle.states import ProcessState

log = structlog.get_logger()

SUBTREE_CONTROLLERS = "+cpu +memory"


class CgroupController:
    """Writes resource-control directives under a cgroup v2 root."""

    def __init__(self, config: CgroupConfig, proc_root: Path = Path("/proc")) -> None:
        self.root = Path(config.root)
        self.enabled = config.enabled
        self.proc_root = proc_root

    @property
    def default_path(self) -> str:
        """Root group that processes return to on shutdown."""
        return str(self.root)

    def path_for(self, state: ProcessState) -> str:
        """Group directory for a lifecycle state."""
        return str(self.root / state.policy.cgroup)

    def _write(self, path: Path, value: str, event: str, **context: object) -> bool:
        if not self.enabled:
            log.debug("cgroup_write_skipped", path=str(path), value=value)
            return True
        try:
            with open(path, "w") as f:
                f.write(value)
            return True
        except FileNotFoundError:
            log.warning(event, path=str(path), reason="path not found", **context)
        except PermissionError:
            log.warning(event, path=str(path), reason="permission denied", **context)
        except OSError as e:
            log.warning(event, path=str(path), reason=str(e), **context)
        return False

    def setup(self) -> bool:
        """Create one group per state and enable the cpu and memory controllers."""
        if not self.enabled:
            log.info("cgroup_setup_skipped", root=str(self.root))
            return True

        ok = self._write(
            self.root / "cgroup.subtree_control", SUBTREE_CONTROLLERS, "cgroup_controllers_failed"
        )
        for state in ProcessState:
            path = Path(self.path_for(state))
            try:
                path.mkdir(exist_ok=True)
            except OSError as e:
                log.warning("cgroup_create_failed", path=str(path), error=str(e))
                ok = False
        log.info("cgroups_ready", root=str(self.root), ok=ok)
        return ok

    def assign(self, path: str, pid: int) -> bool:
        """Move a process into a group."""
        return self._write(Path(path) / "cgroup.procs", str(pid), "cgroup_assign_failed", pid=pid)

    def set_weight(self, path: str, weight: int) -> bool:
        """Set a group's cpu.weight (1..10000)."""
        return self._write(Path(path) / "cpu.weight", str(weight), "cgroup_weight_failed")

    def set_memory_limit(self, path: str, limit: int | None) -> bool:
        """Set a group's memory.max in bytes, None for unlimited."""
        value = "max" if limit is None else str(limit)
        return self._write(Path(path) / "memory.max", value, "cgroup_memory_limit_failed")

    def set_oom_score(self, pid: int, score: int) -> bool:
        """Write a process's oom_score_adj (-1000..1000)."""
        path = self.proc_root / str(pid) / "oom_score_adj"
        return self._write(path, str(score), "oom_score_failed", pid=pid)
