"""Importance scoring.

Each signal adds a fixed weight to a raw score; the raw total is mapped
onto [-20, 20] where lower means more important. A manual override is
blended in with twice the weight of the computed value.
"""

from __future__ import annotations

import time

from proc_lifecycle.config import ScoringConfig
from proc_lifecycle.registry import ProcessRecord
from proc_lifecycle.states import IMPORTANCE_MAX, IMPORTANCE_MIN


def _decay(weight: float, elapsed: float, window: float) -> float:
    """Linear decay from weight at elapsed=0 to 0 at the window edge."""
    if elapsed < 0 or elapsed >= window:
        return 0.0
    return weight * (1.0 - elapsed / window)


class ImportanceScorer:
    """Computes a process's importance from its record and the focus context."""

    def __init__(self, config: ScoringConfig) -> None:
        self.config = config

    def is_related(
        self, record: ProcessRecord, focused_pid: int | None, focused_parent: int | None
    ) -> bool:
        """True for the parent or a child of the focused process."""
        if focused_pid is None or record.pid == focused_pid:
            return False
        if record.parent_pid == focused_pid:
            return True
        return focused_parent is not None and record.pid == focused_parent

    def raw_score(
        self,
        record: ProcessRecord,
        focused_pid: int | None,
        *,
        focused_parent: int | None = None,
        memory_pressure: bool = False,
        now: float | None = None,
    ) -> float:
        """Sum the weighted signals. Refreshes last_foreground_time when focused."""
        c = self.config
        now = time.time() if now is None else now
        history = record.history
        raw = 0.0

        if focused_pid is not None and record.pid == focused_pid:
            raw += c.focused
            record.last_foreground_time = now
        elif self.is_related(record, focused_pid, focused_parent):
            raw += c.related

        if record.is_system_service:
            raw += c.system_service
        if record.is_playing_audio:
            raw += c.audio
        if history.last_gpu_activity and now - history.last_gpu_activity < c.gpu_window:
            raw += c.gpu
        if history.last_network_activity and now - history.last_network_activity < c.network_window:
            raw += c.network

        raw += _decay(c.idle, now - record.last_active_time, c.idle_window)
        if record.last_foreground_time:
            raw += _decay(
                c.recent_foreground, now - record.last_foreground_time, c.foreground_window
            )

        raw += history.average_cpu() / c.cpu_divisor

        if memory_pressure and history.average_memory() > c.memory_penalty_kb:
            raw -= c.memory_penalty

        return raw

    def normalize(self, raw: float) -> float:
        """Map a raw score onto [-20, 20]; higher raw gives lower importance."""
        n = min(max(raw / self.config.normalization, 0.0), 1.0)
        return IMPORTANCE_MAX - (IMPORTANCE_MAX - IMPORTANCE_MIN) * n

    @staticmethod
    def blend(importance: float, requested: int) -> float:
        """Weighted average with a manual override, which counts twice."""
        if requested == 0:
            return importance
        return (importance + 2 * requested) / 3

    def score(
        self,
        record: ProcessRecord,
        focused_pid: int | None,
        *,
        focused_parent: int | None = None,
        memory_pressure: bool = False,
        now: float | None = None,
    ) -> float:
        """Final importance for a record."""
        raw = self.raw_score(
            record,
            focused_pid,
            focused_parent=focused_parent,
            memory_pressure=memory_pressure,
            now=now,
        )
        return self.blend(self.normalize(raw), record.requested_priority)
