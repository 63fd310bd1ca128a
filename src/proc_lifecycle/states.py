"""Lifecycle states and their enforcement policy tables."""

from dataclasses import dataclass
from enum import Enum


class ProcessState(Enum):
    """Lifecycle state of a tracked process, most important first."""

    FOREGROUND = "foreground"
    VISIBLE = "visible"
    SERVICE = "service"
    BACKGROUND = "background"
    CACHED = "cached"

    @property
    def rank(self) -> int:
        """0 for FOREGROUND up to 4 for CACHED."""
        return _RANKS[self]

    @property
    def policy(self) -> "StatePolicy":
        """Enforcement policy for this state."""
        return STATE_POLICIES[self]


_RANKS = {state: i for i, state in enumerate(ProcessState)}


@dataclass(frozen=True)
class StatePolicy:
    """Resource-control directives enforced for one state."""

    cgroup: str  # Group name under the cgroup root
    oom_score: int  # Written to /proc/<pid>/oom_score_adj
    cpu_weight: int  # Written to cpu.weight


STATE_POLICIES: dict[ProcessState, StatePolicy] = {
    ProcessState.FOREGROUND: StatePolicy(cgroup="foreground", oom_score=-900, cpu_weight=100),
    ProcessState.VISIBLE: StatePolicy(cgroup="visible", oom_score=-800, cpu_weight=75),
    ProcessState.SERVICE: StatePolicy(cgroup="service", oom_score=-500, cpu_weight=50),
    ProcessState.BACKGROUND: StatePolicy(cgroup="background", oom_score=0, cpu_weight=25),
    ProcessState.CACHED: StatePolicy(cgroup="cached", oom_score=500, cpu_weight=10),
}

# States that receive a memory ceiling under pressure
MEMORY_LIMITED_STATES = frozenset({ProcessState.BACKGROUND, ProcessState.CACHED})

IMPORTANCE_MIN = -20.0
IMPORTANCE_MAX = 20.0


def state_for_importance(importance: float) -> ProcessState:
    """Map an importance value onto a lifecycle state.

    Lower importance means more important:
    - > 10        CACHED
    - (0, 10]     BACKGROUND
    - (-10, 0]    SERVICE
    - (-15, -10]  VISIBLE
    - <= -15      FOREGROUND
    """
    if importance > 10:
        return ProcessState.CACHED
    if importance > 0:
        return ProcessState.BACKGROUND
    if importance > -10:
        return ProcessState.SERVICE
    if importance > -15:
        return ProcessState.VISIBLE
    return ProcessState.FOREGROUND
