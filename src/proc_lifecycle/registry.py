# src/proc_lifecycle/registry.py
"""Process registry: tracked records, attachment, launching and reaping."""

from __future__ import annotations

import shlex
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from proc_lifecycle.collector import SignalCollector
from proc_lifecycle.config import Config
from proc_lifecycle.ringbuffer import ResourceHistory
from proc_lifecycle.states import IMPORTANCE_MAX, IMPORTANCE_MIN, ProcessState

log = structlog.get_logger()

# Launch group name -> initial state
LAUNCH_GROUPS: dict[str, ProcessState] = {
    "foreground": ProcessState.FOREGROUND,
    "background": ProcessState.BACKGROUND,
}


class RegistryError(Exception):
    """Base class for registry errors."""


class CapacityError(RegistryError):
    """Raised when the registry is full."""


class LaunchError(RegistryError):
    """Raised when a process can't be launched."""


class InvalidGroupError(LaunchError):
    """Raised for a launch group other than foreground or background."""


class InvalidPriorityError(RegistryError):
    """Raised for a requested priority outside [-20, 20]."""


class ProcessNotFoundError(RegistryError):
    """Raised when a pid isn't tracked."""


@dataclass
class ProcessRecord:
    """Everything the manager knows about one tracked process."""

    pid: int
    name: str
    cmdline: str
    history: ResourceHistory
    state: ProcessState = ProcessState.BACKGROUND
    importance_score: float = 0.0
    requested_priority: int = 0  # 0 = no override
    is_system_service: bool = False
    is_playing_audio: bool = False
    parent_pid: int = 0
    last_active_time: float = 0.0
    last_foreground_time: float = 0.0
    # Last directives written successfully, None = never enforced
    cgroup_path: str | None = None
    oom_score: int | None = None
    # Last computed tuning values
    cpu_weight: int = 0
    memory_limit: int | None = None
    popen: subprocess.Popen | None = field(default=None, repr=False, compare=False)

    @property
    def launched(self) -> bool:
        """True for processes spawned by this manager."""
        return self.popen is not None

    def idle_seconds(self, now: float) -> float:
        """Seconds since the process last showed activity."""
        return max(0.0, now - self.last_active_time)

    def to_dict(self, now: float | None = None) -> dict[str, Any]:
        """Summary used by status replies and dumps."""
        now = time.time() if now is None else now
        return {
            "pid": self.pid,
            "name": self.name,
            "cmdline": self.cmdline,
            "state": self.state.value,
            "importance": round(self.importance_score, 2),
            "requested_priority": self.requested_priority,
            "idle_seconds": round(self.idle_seconds(now), 1),
            "cpu_avg": round(self.history.average_cpu(), 1),
            "memory_kb": int(self.history.average_memory()),
            "cgroup": self.cgroup_path,
            "oom_score": self.oom_score,
            "launched": self.launched,
        }


class ProcessRegistry:
    """Owns the set of tracked processes, keyed by pid.

    Records are created by attach_existing() and launch() and removed only
    by reap(), once the OS confirms the process is gone.
    """

    def __init__(self, config: Config, collector: SignalCollector) -> None:
        self.config = config
        self.collector = collector
        self.capacity = config.system.max_processes
        self._records: dict[int, ProcessRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, pid: object) -> bool:
        return pid in self._records

    @property
    def is_full(self) -> bool:
        return len(self._records) >= self.capacity

    def _create(
        self,
        pid: int,
        name: str,
        cmdline: str,
        state: ProcessState,
        popen: subprocess.Popen | None = None,
    ) -> ProcessRecord:
        """Create and store a record. Caller checks capacity."""
        now = time.time()
        record = ProcessRecord(
            pid=pid,
            name=name,
            cmdline=cmdline,
            history=ResourceHistory.create(self.config.system.history_size),
            state=state,
            last_active_time=now,
            last_foreground_time=now if state is ProcessState.FOREGROUND else 0.0,
            popen=popen,
        )
        self._records[pid] = record
        return record

    def attach_existing(self) -> int:
        """Start tracking every live process not already tracked.

        Attached processes start in BACKGROUND and are reclassified on the
        next tick. Returns the number of new records.
        """
        added = 0
        skipped = 0
        for pid, name, cmdline in self.collector.iter_processes():
            if pid in self._records:
                continue
            if self.is_full:
                skipped += 1
                continue
            self._create(pid, name, cmdline, ProcessState.BACKGROUND)
            added += 1

        if skipped:
            log.warning("registry_capacity_reached", capacity=self.capacity, untracked=skipped)
        log.info("processes_attached", added=added, tracked=len(self._records))
        return added

    def launch(self, group: str, argv: list[str]) -> ProcessRecord:
        """Spawn a program and track it in the given group.

        Raises:
            InvalidGroupError: group is not foreground or background
            CapacityError: registry is full
            LaunchError: argv is empty or the spawn failed
        """
        state = LAUNCH_GROUPS.get(group)
        if state is None:
            raise InvalidGroupError(f"Unsupported group '{group}' (use foreground or background)")
        if not argv:
            raise LaunchError("No command given")
        if self.is_full:
            raise CapacityError(f"Registry full ({self.capacity} processes)")

        try:
            popen = subprocess.Popen(argv)
        except OSError as e:
            log.warning("launch_failed", argv=argv, error=str(e))
            raise LaunchError(f"Failed to launch {argv[0]}: {e}") from e

        record = self._create(popen.pid, Path(argv[0]).name, shlex.join(argv), state, popen=popen)
        log.info("process_launched", pid=record.pid, name=record.name, state=state.value)
        return record

    def _has_exited(self, record: ProcessRecord) -> bool:
        if record.popen is not None:
            # poll() also reaps the child
            return record.popen.poll() is not None
        return not self.collector.is_alive(record.pid)

    def reap(self) -> list[int]:
        """Remove records whose processes have exited.

        All records are checked before any is removed.
        """
        exited = [pid for pid, record in self._records.items() if self._has_exited(record)]
        for pid in exited:
            record = self._records.pop(pid)
            self.collector.forget(pid)
            log.debug("process_reaped", pid=pid, name=record.name)
        return exited

    def find_by_id(self, pid: int) -> ProcessRecord | None:
        return self._records.get(pid)

    def all(self) -> list[ProcessRecord]:
        """Snapshot of tracked records in insertion order."""
        return list(self._records.values())

    def validate_priority(self, pid: int, value: int) -> None:
        """Check an override without applying it.

        Raises:
            InvalidPriorityError: value outside [-20, 20]
            ProcessNotFoundError: pid not tracked
        """
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidPriorityError(f"Priority must be an integer, got {value!r}")
        if not IMPORTANCE_MIN <= value <= IMPORTANCE_MAX:
            raise InvalidPriorityError(f"Priority {value} outside [-20, 20]")
        if pid not in self._records:
            raise ProcessNotFoundError(f"PID {pid} is not tracked")

    def set_requested_priority(self, pid: int, value: int) -> ProcessRecord:
        """Set a manual priority override (0 clears it)."""
        self.validate_priority(pid, value)
        record = self._records[pid]
        record.requested_priority = value
        log.info("priority_override_set", pid=pid, name=record.name, priority=value)
        return record
