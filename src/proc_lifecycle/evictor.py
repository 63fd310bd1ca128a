"""Memory-pressure eviction of idle cached processes."""

from __future__ import annotations

import os
import time
from collections.abc import Callable, Iterable

import psutil
import structlog

from proc_lifecycle.config import MemoryConfig
from proc_lifecycle.registry import ProcessRecord
from proc_lifecycle.states import ProcessState

log = structlog.get_logger()


def send_sigterm(pid: int) -> bool:
    """Send SIGTERM to a process. False if it's gone or can't be signalled."""
    try:
        psutil.Process(pid).terminate()
        return True
    except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
        log.warning("terminate_failed", pid=pid, error=str(e))
        return False


class MemoryPressureEvictor:
    """Terminates the least recently active idle CACHED processes.

    Records stay in the registry; reap() removes them once they exit.
    """

    def __init__(
        self,
        config: MemoryConfig,
        terminate: Callable[[int], bool] = send_sigterm,
        own_pid: int | None = None,
    ) -> None:
        self.config = config
        self._terminate = terminate
        self.own_pid = os.getpid() if own_pid is None else own_pid

    @staticmethod
    def rank(records: Iterable[ProcessRecord]) -> list[ProcessRecord]:
        """Most recently active first."""
        return sorted(records, key=lambda r: r.last_active_time, reverse=True)

    def is_victim(self, record: ProcessRecord, now: float) -> bool:
        return (
            record.state is ProcessState.CACHED
            and record.pid != self.own_pid
            and record.idle_seconds(now) > self.config.eviction_idle_seconds
        )

    def run(
        self, records: Iterable[ProcessRecord], memory_pressure: bool, now: float | None = None
    ) -> list[int]:
        """Evict idle CACHED processes when under memory pressure.

        Returns the pids that were signalled.
        """
        if not memory_pressure:
            return []
        now = time.time() if now is None else now
        limit = self.config.max_evictions

        evicted: list[int] = []
        for record in reversed(self.rank(records)):
            if limit and len(evicted) >= limit:
                break
            if not self.is_victim(record, now):
                continue
            if self._terminate(record.pid):
                evicted.append(record.pid)
                log.info(
                    "process_evicted",
                    pid=record.pid,
                    name=record.name,
                    idle=round(record.idle_seconds(now), 1),
                )
        return evicted
