"""State transitions and their enforcement.

apply() moves a record to the state its importance maps to and writes the
state's cgroup and OOM directives. The record caches the last directives
written successfully, so an unchanged, fully enforced record causes no
writes and a failed write is retried on the next tick.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

import structlog

from proc_lifecycle.cgroups import CgroupController
from proc_lifecycle.config import MemoryConfig
from proc_lifecycle.registry import ProcessRecord
from proc_lifecycle.states import MEMORY_LIMITED_STATES, ProcessState, state_for_importance

log = structlog.get_logger()

MAX_CPU_WEIGHT = 10000
HEAVY_CPU_PERCENT = 50.0
HEAVY_CPU_BOOST = 1.2


@dataclass
class EnforcementResult:
    """Outcome of applying an importance value to one record."""

    previous: ProcessState
    state: ProcessState
    warnings: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.previous is not self.state


@dataclass
class GroupTuning:
    """Aggregated tuning values for one cgroup."""

    weight: int = 0
    limit: int | None = 0
    members: int = 0

    def add(self, weight: int, limit: int | None) -> None:
        self.weight = max(self.weight, weight)
        # Any unlimited member leaves the whole group unlimited
        if limit is None or self.limit is None:
            self.limit = None
        else:
            self.limit += limit
        self.members += 1

    @property
    def ceiling(self) -> int | None:
        """memory.max value, None when unlimited or no member has measured usage."""
        return self.limit or None


class StateEnforcer:
    """Applies lifecycle states through a CgroupController."""

    def __init__(self, cgroups: CgroupController, config: MemoryConfig) -> None:
        self.cgroups = cgroups
        self.config = config

    def apply(self, record: ProcessRecord, importance: float) -> EnforcementResult:
        """Store the score, transition the state and enforce it where needed."""
        record.importance_score = importance
        target = state_for_importance(importance)
        result = EnforcementResult(previous=record.state, state=target)
        record.state = target

        policy = target.policy
        path = self.cgroups.path_for(target)

        if record.cgroup_path != path:
            if self.cgroups.assign(path, record.pid):
                record.cgroup_path = path
            else:
                result.warnings.append(f"cgroup assignment to {path} failed")

        if record.oom_score != policy.oom_score:
            if self.cgroups.set_oom_score(record.pid, policy.oom_score):
                record.oom_score = policy.oom_score
            else:
                result.warnings.append(f"OOM score {policy.oom_score} not applied")

        if result.changed:
            log.info(
                "state_changed",
                pid=record.pid,
                name=record.name,
                old=result.previous.value,
                new=target.value,
                importance=round(importance, 2),
            )
        return result

    def cpu_weight(self, record: ProcessRecord) -> int:
        """State weight, boosted for processes averaging heavy CPU use."""
        weight = record.state.policy.cpu_weight
        if record.history.average_cpu() > HEAVY_CPU_PERCENT:
            weight = min(round(weight * HEAVY_CPU_BOOST), MAX_CPU_WEIGHT)
        return weight

    def memory_limit(self, record: ProcessRecord, memory_pressure: bool) -> int | None:
        """Memory ceiling in bytes, None for unlimited.

        Zero for a limited record with no measured usage.
        """
        if not memory_pressure or record.state not in MEMORY_LIMITED_STATES:
            return None
        # No measured usage contributes nothing to the group ceiling
        average_kb = max(record.history.average_memory(), 0.0)
        return int(average_kb * 1024 * self.config.limit_multiplier)

    def tune(self, records: Iterable[ProcessRecord], memory_pressure: bool) -> list[str]:
        """Compute per-record tuning and write it to each state's group.

        Returns warnings for groups whose files couldn't be written.
        """
        groups: dict[str, GroupTuning] = {}
        for record in records:
            record.cpu_weight = self.cpu_weight(record)
            record.memory_limit = self.memory_limit(record, memory_pressure)
            path = self.cgroups.path_for(record.state)
            groups.setdefault(path, GroupTuning()).add(record.cpu_weight, record.memory_limit)

        warnings = []
        for path, tuning in groups.items():
            if not self.cgroups.set_weight(path, tuning.weight):
                warnings.append(f"cpu.weight {tuning.weight} not applied to {path}")
            if not self.cgroups.set_memory_limit(path, tuning.ceiling):
                warnings.append(f"memory.max not applied to {path}")
        return warnings

    def reset(self, records: Iterable[ProcessRecord]) -> None:
        """Return records to the root group, clear OOM overrides and ceilings."""
        default = self.cgroups.default_path
        count = 0
        for record in records:
            if self.cgroups.assign(default, record.pid):
                record.cgroup_path = default
            if self.cgroups.set_oom_score(record.pid, 0):
                record.oom_score = 0
            count += 1
        for state in ProcessState:
            self.cgroups.set_memory_limit(self.cgroups.path_for(state), None)
        log.info("enforcement_reset", records=count)
