# tests/test_logging.py
"""Tests for console helpers and structlog file output."""

import io
import json
import logging

import pytest
import structlog
from rich.console import Console

from proc_lifecycle import logging as console
from proc_lifecycle.config import Config
from proc_lifecycle.states import ProcessState


@pytest.fixture
def captured():
    """Swap the module console for one that records into a buffer."""
    buffer = io.StringIO()
    original = console._console
    console._console = Console(file=buffer, width=200, highlight=False, color_system=None)
    try:
        yield buffer
    finally:
        console._console = original


@pytest.fixture
def configured(patched_config_paths):
    config = Config()
    console.configure(config)
    try:
        yield config
    finally:
        root = logging.getLogger()
        for handler in root.handlers:
            handler.close()
        root.handlers.clear()
        structlog.reset_defaults()


def test_configure_writes_json_lines(configured):
    structlog.get_logger().info("state_changed", pid=42, new="cached")
    for handler in logging.getLogger().handlers:
        handler.flush()

    lines = configured.log_path.read_text().splitlines()
    entry = json.loads(lines[-1])
    assert entry["event"] == "state_changed"
    assert entry["pid"] == 42
    assert entry["level"] == "info"
    assert entry["source"] == "daemon"
    assert "ts" in entry


def test_configure_skips_debug(configured):
    structlog.get_logger().debug("cgroup_write_skipped", path="/sys/fs/cgroup")
    for handler in logging.getLogger().handlers:
        handler.flush()
    assert "cgroup_write_skipped" not in configured.log_path.read_text()


def test_log_levels(captured):
    console.info("hello", console.Icon.OK)
    console.warn("careful")
    console.error("broken")

    out = captured.getvalue()
    assert "[info] ✓ hello" in out
    assert "[warn] careful" in out
    assert "[err]" in out and "broken" in out


def test_state_changed_icons(captured):
    console.state_changed("firefox", 10, ProcessState.BACKGROUND, ProcessState.FOREGROUND, -18.0)
    console.state_changed("firefox", 10, ProcessState.FOREGROUND, ProcessState.CACHED, 16.0)

    first, second = captured.getvalue().splitlines()
    assert "▲" in first and "background → foreground" in first
    assert "-18.0" in first
    assert "▼" in second and "+16.0" in second


def test_long_names_truncated(captured):
    console.process_evicted("a-very-long-process-name-that-keeps-going", 7, 400.0)
    out = captured.getvalue()
    assert "a-very-long-process-name-tha.." in out
    assert "evicted after 400s idle" in out


def test_heartbeat_lists_every_state(captured):
    console.heartbeat(5, {"foreground": 1, "cached": 4}, pressure=True)
    out = captured.getvalue()
    for state in ProcessState:
        assert state.value in out
    assert "memory pressure" in out


def test_already_running(captured):
    console.already_running(1234)
    console.already_running()
    out = captured.getvalue()
    assert "PID 1234" in out
    assert out.count("Another daemon already running") == 2


def test_state_color_covers_all_states():
    for state in ProcessState:
        assert console.state_color(state)
