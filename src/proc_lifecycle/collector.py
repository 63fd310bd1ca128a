"""Per-process signal collection using psutil.

All probes are fail-soft: a process that vanished or can't be inspected
yields neutral values. Absence is detected separately at reap time.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import psutil
import structlog

from proc_lifecycle.config import Config

if TYPE_CHECKING:
    from proc_lifecycle.registry import ProcessRecord

log = structlog.get_logger()

# Errors psutil raises for processes that exited or can't be inspected
_PROBE_ERRORS = (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess, OSError)

AUDIO_DEVICE_PREFIXES = ("/dev/snd/",)
GPU_DEVICE_PREFIXES = ("/dev/dri/", "/dev/nvidia", "/dev/kgsl", "/dev/mali")


@dataclass
class ProcessSignals:
    """One sample of live signals for a process."""

    pid: int
    cpu_percent: float = 0.0
    memory_kb: int = 0
    audio: bool = False
    gpu: bool = False
    network: bool = False
    disk: bool = False
    parent_pid: int = 0
    is_system_service: bool = False

    @property
    def any_activity(self) -> bool:
        """True when an I/O or device signal is present."""
        return self.audio or self.gpu or self.network or self.disk


class SignalCollector:
    """Collects process signals through psutil and /proc fd links.

    Keeps one psutil.Process handle per pid so cpu_percent() measures the
    delta since the previous tick.
    """

    def __init__(self, config: Config, proc_root: Path = Path("/proc")) -> None:
        self.config = config
        self.proc_root = proc_root
        self._service_names = frozenset(config.services.names)
        self._handles: dict[int, psutil.Process] = {}
        self._prev_io: dict[int, int] = {}
        self._xdotool = shutil.which("xdotool")

    def _handle(self, pid: int) -> psutil.Process:
        """Return the cached psutil handle for a pid, creating it on first use."""
        proc = self._handles.get(pid)
        if proc is None:
            proc = psutil.Process(pid)
            # First call primes the CPU counters and always returns 0.0
            proc.cpu_percent(interval=None)
            self._handles[pid] = proc
        return proc

    def forget(self, pid: int) -> None:
        """Drop cached state for a pid that is no longer tracked."""
        self._handles.pop(pid, None)
        self._prev_io.pop(pid, None)

    # ─────────────────────────────────────────────────────────────────────
    # Per-process probes
    # ─────────────────────────────────────────────────────────────────────

    def sample(self, pid: int) -> ProcessSignals:
        """Sample all signals for one process."""
        signals = ProcessSignals(pid=pid)
        try:
            proc = self._handle(pid)
        except _PROBE_ERRORS:
            return signals

        signals.cpu_percent = self._cpu_percent(proc)
        signals.memory_kb = self._memory_kb(proc)
        signals.parent_pid = self.parent_pid(pid)
        signals.is_system_service = self._is_system_service(proc)
        signals.network = self._has_network(proc)
        signals.disk = self._has_disk_activity(proc)

        devices = self._device_paths(pid)
        signals.audio = any(d.startswith(AUDIO_DEVICE_PREFIXES) for d in devices)
        signals.gpu = any(d.startswith(GPU_DEVICE_PREFIXES) for d in devices)
        return signals

    def _cpu_percent(self, proc: psutil.Process) -> float:
        try:
            return proc.cpu_percent(interval=None)
        except _PROBE_ERRORS:
            return 0.0

    def _memory_kb(self, proc: psutil.Process) -> int:
        try:
            return proc.memory_info().rss // 1024
        except _PROBE_ERRORS:
            return 0

    def _is_system_service(self, proc: psutil.Process) -> bool:
        try:
            return proc.name() in self._service_names
        except _PROBE_ERRORS:
            return False

    def _has_network(self, proc: psutil.Process) -> bool:
        try:
            return len(proc.net_connections(kind="inet")) > 0
        except _PROBE_ERRORS:
            return False

    def _has_disk_activity(self, proc: psutil.Process) -> bool:
        """True when read+write bytes grew since the previous sample."""
        try:
            io = proc.io_counters()
        except (*_PROBE_ERRORS, AttributeError):
            return False
        total = io.read_bytes + io.write_bytes
        prev = self._prev_io.get(proc.pid)
        self._prev_io[proc.pid] = total
        return prev is not None and total > prev

    def _device_paths(self, pid: int) -> list[str]:
        """Resolve the process's open descriptors under /proc/<pid>/fd.

        psutil.Process.open_files() only reports regular files, so device
        descriptors (sound cards, GPUs) are read from the fd links directly.
        """
        fd_dir = self.proc_root / str(pid) / "fd"
        paths = []
        try:
            entries = os.listdir(fd_dir)
        except OSError:
            return paths
        for entry in entries:
            try:
                paths.append(os.readlink(fd_dir / entry))
            except OSError:
                continue
        return paths

    def parent_pid(self, pid: int) -> int:
        """Parent pid, 0 when unknown."""
        try:
            return self._handle(pid).ppid()
        except _PROBE_ERRORS:
            return 0

    def is_alive(self, pid: int) -> bool:
        """True while the pid resolves to a running, non-zombie process."""
        try:
            proc = self._handles.get(pid) or psutil.Process(pid)
            return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
        except _PROBE_ERRORS:
            return False

    def refresh(self, record: ProcessRecord, now: float, focused_pid: int | None = None) -> None:
        """Sample a process and fold the result into its record."""
        signals = self.sample(record.pid)
        history = record.history
        history.cpu.push(signals.cpu_percent)
        history.memory.push(signals.memory_kb)
        if signals.network:
            history.last_network_activity = now
        if signals.disk:
            history.last_disk_activity = now
        if signals.gpu:
            history.last_gpu_activity = now

        record.is_playing_audio = signals.audio
        record.is_system_service = signals.is_system_service
        record.parent_pid = signals.parent_pid

        busy = signals.cpu_percent > self.config.scoring.activity_cpu_threshold
        if busy or signals.any_activity or record.pid == focused_pid:
            record.last_active_time = now

    # ─────────────────────────────────────────────────────────────────────
    # Global queries
    # ─────────────────────────────────────────────────────────────────────

    def iter_processes(self) -> Iterator[tuple[int, str, str]]:
        """Yield (pid, name, cmdline) for every live process on the host."""
        for proc in psutil.process_iter(attrs=["pid", "name", "cmdline"]):
            info = proc.info
            pid = info.get("pid", 0)
            # Skip kernel PID 0
            if not pid:
                continue
            name = info.get("name") or f"pid_{pid}"
            cmdline = info.get("cmdline") or []
            yield pid, name, " ".join(cmdline) if cmdline else name

    def focused_pid(self) -> int | None:
        """Pid owning the active window, None when it can't be determined."""
        if self._xdotool is None:
            return None
        try:
            result = subprocess.run(
                [self._xdotool, "getactivewindow", "getwindowpid"],
                capture_output=True,
                text=True,
                timeout=1.0,
                check=True,
            )
            return int(result.stdout.strip())
        except (OSError, subprocess.SubprocessError, ValueError):
            return None

    def memory_available_percent(self) -> float:
        """Available memory as a percentage of total."""
        mem = psutil.virtual_memory()
        if mem.total <= 0:
            return 100.0
        return mem.available / mem.total * 100.0

    def memory_pressure(self) -> bool:
        """True when available memory falls below the low-memory threshold."""
        try:
            available = self.memory_available_percent()
        except OSError as e:
            log.warning("memory_probe_failed", error=str(e))
            return False
        return available < self.config.memory.low_memory_threshold
