"""Tests for the signal collector."""

import os
import subprocess
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import psutil
import pytest

from proc_lifecycle.collector import ProcessSignals, SignalCollector
from proc_lifecycle.config import Config

from tests.conftest import make_record


def make_proc(
    pid: int = 123,
    cpu: float = 12.5,
    rss: int = 2048 * 1024,
    name: str = "pipewire",
    ppid: int = 1,
    connections: int = 0,
    io_bytes: int = 0,
) -> MagicMock:
    proc = MagicMock()
    proc.pid = pid
    proc.cpu_percent.return_value = cpu
    proc.memory_info.return_value = SimpleNamespace(rss=rss)
    proc.name.return_value = name
    proc.ppid.return_value = ppid
    proc.net_connections.return_value = [object()] * connections
    proc.io_counters.return_value = SimpleNamespace(read_bytes=io_bytes, write_bytes=0)
    return proc


@pytest.fixture
def collector(tmp_path) -> SignalCollector:
    return SignalCollector(Config(), proc_root=tmp_path)


def add_fd(proc_root, pid: int, fd: int, target: str) -> None:
    fd_dir = proc_root / str(pid) / "fd"
    fd_dir.mkdir(parents=True, exist_ok=True)
    os.symlink(target, fd_dir / str(fd))


class TestSample:
    def test_sample_reads_process(self, collector):
        collector._handles[123] = make_proc(connections=2)
        signals = collector.sample(123)

        assert signals.cpu_percent == 12.5
        assert signals.memory_kb == 2048
        assert signals.parent_pid == 1
        assert signals.is_system_service is True
        assert signals.network is True
        assert signals.audio is False
        assert signals.gpu is False

    def test_sample_detects_audio_and_gpu_descriptors(self, collector, tmp_path):
        collector._handles[123] = make_proc()
        add_fd(tmp_path, 123, 0, "/dev/null")
        add_fd(tmp_path, 123, 5, "/dev/snd/pcmC0D0p")
        add_fd(tmp_path, 123, 6, "/dev/dri/renderD128")

        signals = collector.sample(123)
        assert signals.audio is True
        assert signals.gpu is True

    def test_sample_nvidia_descriptor_is_gpu(self, collector, tmp_path):
        collector._handles[123] = make_proc()
        add_fd(tmp_path, 123, 7, "/dev/nvidia0")
        assert collector.sample(123).gpu is True

    def test_disk_activity_needs_growth(self, collector):
        proc = make_proc(io_bytes=1000)
        collector._handles[123] = proc
        assert collector.sample(123).disk is False

        proc.io_counters.return_value = SimpleNamespace(read_bytes=1000, write_bytes=0)
        assert collector.sample(123).disk is False

        proc.io_counters.return_value = SimpleNamespace(read_bytes=1000, write_bytes=4096)
        assert collector.sample(123).disk is True

    def test_vanished_process_yields_neutral_signals(self, collector):
        with patch(
            "proc_lifecycle.collector.psutil.Process", side_effect=psutil.NoSuchProcess(999)
        ):
            signals = collector.sample(999)
        assert signals == ProcessSignals(pid=999)

    def test_access_denied_probes_are_neutral(self, collector):
        proc = make_proc()
        proc.net_connections.side_effect = psutil.AccessDenied(123)
        proc.io_counters.side_effect = psutil.AccessDenied(123)
        collector._handles[123] = proc

        signals = collector.sample(123)
        assert signals.network is False
        assert signals.disk is False
        assert signals.cpu_percent == 12.5

    def test_sample_own_process(self):
        collector = SignalCollector(Config())
        signals = collector.sample(os.getpid())
        assert signals.memory_kb > 0
        assert signals.parent_pid == os.getppid()

    def test_forget_drops_handle(self, collector):
        collector._handles[123] = make_proc(io_bytes=10)
        collector.sample(123)
        collector.forget(123)
        assert 123 not in collector._handles
        assert 123 not in collector._prev_io


class TestRefresh:
    def test_refresh_updates_history_and_flags(self, collector, tmp_path):
        collector._handles[123] = make_proc(cpu=40.0, connections=1)
        add_fd(tmp_path, 123, 5, "/dev/snd/pcmC0D0p")
        record = make_record(pid=123, last_active=0.0)

        collector.refresh(record, now=5000.0)

        assert record.history.cpu.samples == [40.0]
        assert record.history.memory.samples == [2048]
        assert record.history.last_network_activity == 5000.0
        assert record.is_playing_audio is True
        assert record.is_system_service is True
        assert record.last_active_time == 5000.0

    def test_idle_process_keeps_last_active(self, collector):
        collector._handles[123] = make_proc(cpu=0.2, name="cat")
        record = make_record(pid=123, last_active=100.0)

        collector.refresh(record, now=5000.0)

        assert record.last_active_time == 100.0
        assert record.is_system_service is False

    def test_focused_process_counts_as_active(self, collector):
        collector._handles[123] = make_proc(cpu=0.0, name="cat")
        record = make_record(pid=123, last_active=100.0)
        collector.refresh(record, now=5000.0, focused_pid=123)
        assert record.last_active_time == 5000.0


class TestGlobalQueries:
    def test_focused_pid_from_xdotool(self, collector):
        collector._xdotool = "/usr/bin/xdotool"
        result = subprocess.CompletedProcess(args=[], returncode=0, stdout="4242\n")
        with patch("proc_lifecycle.collector.subprocess.run", return_value=result):
            assert collector.focused_pid() == 4242

    def test_focused_pid_without_xdotool(self, collector):
        collector._xdotool = None
        assert collector.focused_pid() is None

    def test_focused_pid_failure_is_none(self, collector):
        collector._xdotool = "/usr/bin/xdotool"
        with patch(
            "proc_lifecycle.collector.subprocess.run",
            side_effect=subprocess.CalledProcessError(1, "xdotool"),
        ):
            assert collector.focused_pid() is None

    @pytest.mark.parametrize(
        "available,expected", [(10, True), (14.9, True), (15, False), (60, False)]
    )
    def test_memory_pressure_threshold(self, collector, available, expected):
        mem = SimpleNamespace(total=100, available=available)
        with patch("proc_lifecycle.collector.psutil.virtual_memory", return_value=mem):
            assert collector.memory_pressure() is expected

    def test_iter_processes_skips_pid_zero(self, collector):
        procs = [
            SimpleNamespace(info={"pid": 0, "name": "idle", "cmdline": []}),
            SimpleNamespace(
                info={"pid": 1, "name": "systemd", "cmdline": ["/sbin/init", "splash"]}
            ),
            SimpleNamespace(info={"pid": 2, "name": "kthreadd", "cmdline": None}),
        ]
        with patch("proc_lifecycle.collector.psutil.process_iter", return_value=procs):
            result = list(collector.iter_processes())
        assert result == [(1, "systemd", "/sbin/init splash"), (2, "kthreadd", "kthreadd")]

    def test_is_alive_own_process(self, collector):
        assert collector.is_alive(os.getpid()) is True

    def test_is_alive_vanished(self, collector):
        with patch(
            "proc_lifecycle.collector.psutil.Process", side_effect=psutil.NoSuchProcess(999)
        ):
            assert collector.is_alive(999) is False

    def test_is_alive_zombie(self, collector):
        proc = make_proc()
        proc.is_running.return_value = True
        proc.status.return_value = psutil.STATUS_ZOMBIE
        collector._handles[123] = proc
        assert collector.is_alive(123) is False
