"""Lifecycle daemon: the tick loop and its control surface."""

import asyncio
import os
import signal
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version
from typing import Any

import psutil
import structlog

from proc_lifecycle import logging as console
from proc_lifecycle.cgroups import CgroupController
from proc_lifecycle.collector import SignalCollector
from proc_lifecycle.config import Config
from proc_lifecycle.enforcer import StateEnforcer
from proc_lifecycle.evictor import MemoryPressureEvictor
from proc_lifecycle.registry import (
    ProcessNotFoundError,
    ProcessRecord,
    ProcessRegistry,
    RegistryError,
)
from proc_lifecycle.scoring import ImportanceScorer
from proc_lifecycle.socket_server import SocketServer, error_response
from proc_lifecycle.states import ProcessState

log = structlog.get_logger()


@dataclass
class DaemonState:
    """Runtime state of the daemon."""

    running: bool = False
    tick_count: int = 0
    last_tick_time: datetime | None = None
    memory_pressure: bool = False

    def update_tick(self, memory_pressure: bool) -> None:
        """Update state after a tick."""
        self.tick_count += 1
        self.memory_pressure = memory_pressure
        self.last_tick_time = datetime.now()


@dataclass
class TickReport:
    """What one tick did."""

    tracked: int = 0
    changed: int = 0
    memory_pressure: bool = False
    evicted: list[int] = field(default_factory=list)
    reaped: list[int] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _package_version() -> str:
    try:
        return version("proc-lifecycle")
    except PackageNotFoundError:
        return "unknown"


class Daemon:
    """Main daemon class running the observe, score, enforce, evict cycle."""

    def __init__(
        self,
        config: Config,
        *,
        collector: SignalCollector | None = None,
        cgroups: CgroupController | None = None,
        evictor: MemoryPressureEvictor | None = None,
    ):
        self.config = config
        self.state = DaemonState()

        self.collector = collector or SignalCollector(config)
        self.registry = ProcessRegistry(config, self.collector)
        self.scorer = ImportanceScorer(config.scoring)
        self.cgroups = cgroups or CgroupController(config.cgroups)
        self.enforcer = StateEnforcer(self.cgroups, config.memory)
        self.evictor = evictor or MemoryPressureEvictor(config.memory)

        # Validated overrides waiting for the next tick
        self._pending_priorities: deque[tuple[int, int]] = deque()
        self._shutdown_event = asyncio.Event()
        self._socket_server: SocketServer | None = None
        self._owns_pid_file = False
        # Set once this instance owns the PID file and enforces states
        self._started = False

    # ─────────────────────────────────────────────────────────────────────
    # Requests
    # ─────────────────────────────────────────────────────────────────────

    def request_priority(self, pid: int, priority: int) -> None:
        """Validate an override now and queue it for the next tick.

        Raises:
            InvalidPriorityError: priority outside [-20, 20]
            ProcessNotFoundError: pid not tracked
        """
        self.registry.validate_priority(pid, priority)
        self._pending_priorities.append((pid, priority))
        log.info("priority_override_queued", pid=pid, priority=priority)

    def _apply_pending_priorities(self) -> int:
        applied = 0
        while self._pending_priorities:
            pid, priority = self._pending_priorities.popleft()
            try:
                self.registry.set_requested_priority(pid, priority)
                applied += 1
            except ProcessNotFoundError:
                # Reaped after the request was accepted
                log.info("priority_override_dropped", pid=pid, priority=priority)
        return applied

    def launch(self, group: str, argv: list[str]) -> ProcessRecord:
        """Spawn and track a program. Raises RegistryError subclasses."""
        record = self.registry.launch(group, argv)
        console.process_launched(record.name, record.pid, record.state)
        return record

    def handle_request(self, msg: dict[str, Any]) -> dict[str, Any]:
        """Answer one control-socket request."""
        kind = msg.get("type")

        if kind == "set_priority":
            pid = msg.get("pid")
            priority = msg.get("priority")
            if isinstance(pid, bool) or not isinstance(pid, int):
                return error_response("'pid' must be an integer")
            try:
                self.request_priority(pid, priority)  # type: ignore[arg-type]
            except RegistryError as e:
                return error_response(str(e))
            return {"ok": True, "pid": pid, "priority": priority}

        if kind == "launch":
            group = msg.get("group")
            argv = msg.get("argv")
            if not isinstance(group, str):
                return error_response("'group' must be a string")
            if not isinstance(argv, list) or not all(isinstance(a, str) for a in argv):
                return error_response("'argv' must be a list of strings")
            try:
                record = self.launch(group, argv)
            except RegistryError as e:
                return error_response(str(e))
            return {"ok": True, "pid": record.pid, "state": record.state.value}

        if kind == "status":
            now = time.time()
            return {
                "ok": True,
                "version": _package_version(),
                "tick_count": self.state.tick_count,
                "memory_pressure": self.state.memory_pressure,
                "capacity": self.registry.capacity,
                "processes": [r.to_dict(now) for r in self.registry.all()],
            }

        if kind == "dump":
            return {"ok": True, "records": len(self.dump())}

        return error_response(f"Unknown request type: {kind}")

    def dump(self) -> list[dict[str, Any]]:
        """Log every tracked record. Read-only."""
        now = time.time()
        entries = [r.to_dict(now) for r in self.registry.all()]
        for entry in entries:
            log.info("dump_record", **entry)
        log.info("diagnostic_dump", records=len(entries), tick_count=self.state.tick_count)
        console.info(f"Dumped [cyan]{len(entries)}[/] records to {self.config.log_path}")
        return entries

    # ─────────────────────────────────────────────────────────────────────
    # Tick
    # ─────────────────────────────────────────────────────────────────────

    def tick(self, now: float | None = None) -> TickReport:
        """Run one observe, score, enforce, evict and reap cycle.

        Exited processes are reaped even when an earlier step raises.
        """
        now = time.time() if now is None else now
        report = TickReport()
        try:
            self._apply_pending_priorities()
            self._run_cycle(report, now)
        finally:
            report.reaped = self.registry.reap()
            if report.reaped:
                log.info("processes_reaped", count=len(report.reaped), pids=report.reaped)
        return report

    def _run_cycle(self, report: TickReport, now: float) -> None:
        memory_pressure = self.collector.memory_pressure()
        focused = self.collector.focused_pid()
        focused_parent = self.collector.parent_pid(focused) if focused is not None else None

        records = self.registry.all()
        report.tracked = len(records)
        report.memory_pressure = memory_pressure

        for record in records:
            self.collector.refresh(record, now, focused_pid=focused)
            importance = self.scorer.score(
                record,
                focused,
                focused_parent=focused_parent,
                memory_pressure=memory_pressure,
                now=now,
            )
            result = self.enforcer.apply(record, importance)
            if result.changed:
                report.changed += 1
                console.state_changed(
                    record.name, record.pid, result.previous, result.state, importance
                )
                for warning in result.warnings:
                    console.enforcement_failed(record.name, record.pid, warning)
            report.warnings.extend(result.warnings)

        report.warnings.extend(self.enforcer.tune(records, memory_pressure))

        report.evicted = self.evictor.run(records, memory_pressure, now)
        for pid in report.evicted:
            record = self.registry.find_by_id(pid)
            if record is not None:
                console.process_evicted(record.name, pid, record.idle_seconds(now))

    def _heartbeat(self, report: TickReport) -> None:
        counts = Counter(r.state.value for r in self.registry.all())
        log.info(
            "daemon_heartbeat",
            ticks=self.state.tick_count,
            tracked=len(self.registry),
            memory_pressure=report.memory_pressure,
            **{state.value: counts.get(state.value, 0) for state in ProcessState},
        )
        console.heartbeat(len(self.registry), dict(counts), report.memory_pressure)

    # ─────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────

    async def start(self, group: str | None = None, argv: list[str] | None = None) -> None:
        """Start the daemon.

        With argv, launches that program in the given group; otherwise
        attaches to every process already running.
        """
        log.info("daemon_starting", version=_package_version())

        system = self.config.system
        log.info(
            "daemon_config",
            tick_interval=system.tick_interval,
            max_processes=system.max_processes,
            low_memory_threshold=self.config.memory.low_memory_threshold,
            cgroup_root=self.config.cgroups.root,
            cgroups_enabled=self.config.cgroups.enabled,
        )
        console.config_summary(
            system.tick_interval, system.max_processes, self.config.memory.low_memory_threshold
        )

        # Setup signal handlers
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))
        loop.add_signal_handler(signal.SIGUSR1, self._handle_dump_signal)

        # Check for existing instance
        running_pid = self._check_already_running()
        if running_pid is not None:
            log.error("daemon_already_running", pid=running_pid)
            console.already_running(running_pid)
            raise RuntimeError("Daemon is already running")

        self._write_pid_file()
        self._started = True

        # Create config file with defaults if it doesn't exist
        if not self.config.config_path.exists():
            self.config.save()
            log.info("config_created", path=str(self.config.config_path))

        self.cgroups.setup()

        if argv:
            self.launch(group or "foreground", argv)
        else:
            self.registry.attach_existing()

        self._socket_server = SocketServer(
            socket_path=self.config.socket_path,
            handler=self.handle_request,
        )
        await self._socket_server.start()

        self.state.running = True
        log.info("daemon_started", tracked=len(self.registry))
        console.daemon_started(len(self.registry))

        await self._main_loop()

    async def stop(self) -> None:
        """Stop the daemon gracefully and undo enforcement."""
        log.info("daemon_stopping")
        console.daemon_stopping()
        self.state.running = False

        if self._socket_server:
            await self._socket_server.stop()
            self._socket_server = None

        if self._started:
            self.enforcer.reset(self.registry.all())
            self._started = False

        if self._owns_pid_file:
            self._remove_pid_file()

        log.info("daemon_stopped")
        console.daemon_stopped()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        console.signal_received(sig.name)
        self._shutdown_event.set()

    def _handle_dump_signal(self) -> None:
        """Handle SIGUSR1."""
        log.info("signal_received", signal="SIGUSR1")
        console.signal_received("SIGUSR1")
        self.dump()

    def _write_pid_file(self) -> None:
        """Write PID file."""
        self.config.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_path.write_text(str(os.getpid()))
        self._owns_pid_file = True
        log.debug("pid_file_written", path=str(self.config.pid_path))

    def _remove_pid_file(self) -> None:
        """Remove PID file."""
        if self.config.pid_path.exists():
            self.config.pid_path.unlink()
            log.debug("pid_file_removed")
        self._owns_pid_file = False

    def _check_already_running(self) -> int | None:
        """Return the pid of a running daemon, None if there isn't one.

        Verifies the pid in the PID file belongs to a proc-lifecycle
        process, so a pid reused after a reboot isn't mistaken for the
        daemon. Stale PID files are removed.
        """
        if not self.config.pid_path.exists():
            return None

        try:
            pid = int(self.config.pid_path.read_text().strip())
        except ValueError:
            log.warning("pid_file_invalid", reason="not a number")
            self._remove_pid_file()
            return None

        if pid == os.getpid():
            return None

        try:
            proc = psutil.Process(pid)
            cmdline_str = " ".join(proc.cmdline()).lower()
            if "proc-lifecycle" in cmdline_str or "proc_lifecycle" in cmdline_str:
                return pid
            log.warning(
                "pid_file_stale",
                reason="different process",
                pid=pid,
                actual_process=proc.name(),
            )
        except psutil.NoSuchProcess:
            log.warning("pid_file_stale", reason="process not found", pid=pid)
        except psutil.AccessDenied:
            # Can't inspect process - assume it's running to be safe
            log.warning("pid_check_access_denied", pid=pid)
            return pid

        self._remove_pid_file()
        return None

    async def _main_loop(self) -> None:
        """Run ticks at the configured interval until shutdown.

        A tick runs to completion before the shutdown event is checked
        again. Errors inside a tick are logged and the loop continues.
        """
        interval = self.config.system.tick_interval
        heartbeat_ticks = self.config.system.heartbeat_ticks
        loop = asyncio.get_running_loop()

        while not self._shutdown_event.is_set():
            tick_start = loop.time()
            try:
                report = self.tick()
                self.state.update_tick(report.memory_pressure)
                if self.state.tick_count % heartbeat_ticks == 0:
                    self._heartbeat(report)
            except Exception as e:
                log.exception("tick_failed", error=str(e))
                console.tick_failed(str(e))

            # Sleep for remaining interval, waking early on shutdown
            sleep_time = max(interval - (loop.time() - tick_start), 0.0)
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=sleep_time)
                break
            except asyncio.TimeoutError:
                pass


async def run_daemon(
    config: Config | None = None,
    group: str | None = None,
    argv: list[str] | None = None,
) -> None:
    """Run the daemon until shutdown.

    Args:
        config: Optional config, loads from file if not provided
        group: Launch group for argv (foreground or background)
        argv: Program to launch; attach to existing processes when empty
    """
    if config is None:
        config = Config.load()

    console.configure(config)

    daemon = Daemon(config)

    try:
        await daemon.start(group, argv)
    except Exception as e:
        log.exception("daemon_crashed", error=str(e))
        raise
    finally:
        await daemon.stop()
