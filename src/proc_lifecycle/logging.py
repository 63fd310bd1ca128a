"""Centralized console logging with Rich formatting.

This module provides:
1. Icon vocabulary (Icon class namespace)
2. Level-based styling
3. Core log functions (log, info, warn, error)
4. Domain-specific helpers (daemon_started, state_changed, heartbeat, etc.)
5. Structlog configuration (configure)

Console output uses Rich markup for colors. JSON file output via structlog
remains separate (machine-parseable, no colors).
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console

if TYPE_CHECKING:
    from proc_lifecycle.config import Config
    from proc_lifecycle.states import ProcessState

# Rich console for colorful human-readable output
_console = Console(highlight=False)


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Icon vocabulary for console output.

    Use via autocomplete: Icon.<TAB> to see all available icons.
    """

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    WAIT = "⏳"
    HEARTBEAT = "[magenta]♡[/]"
    PROMOTE = "[bright_green]▲[/]"
    DEMOTE = "[bright_red]▼[/]"
    EVICT = "[red]☠[/]"
    LAUNCH = "🚀"
    SIGNAL = "⚡"


# ─────────────────────────────────────────────────────────────────────────────
# Level Styles
# ─────────────────────────────────────────────────────────────────────────────

_LEVEL_STYLES = {
    "info": "[bright_blue]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}

# State colors, most important first
_STATE_COLORS = {
    "foreground": "bright_green",
    "visible": "green",
    "service": "cyan",
    "background": "yellow",
    "cached": "dim",
}


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print a log message with timestamp and level.

    Args:
        level: Log level (info, warn, error)
        msg: Message to print (can include Rich markup)
        icon: Optional icon to show after level (e.g., Icon.OK)
    """
    ts = datetime.now().strftime("%H:%M:%S")
    lvl = _LEVEL_STYLES.get(level, f"[{level}]")
    icon_part = f" {icon}" if icon else ""
    _console.print(f"[dim]{ts}[/] {lvl}{icon_part} {msg}")


def info(msg: str, icon: str = "") -> None:
    """Log an info message."""
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    """Log a warning message."""
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    """Log an error message."""
    log("error", msg, icon)


# ─────────────────────────────────────────────────────────────────────────────
# Styling Helpers
# ─────────────────────────────────────────────────────────────────────────────


def state_color(state: ProcessState) -> str:
    """Return Rich color name for a lifecycle state."""
    return _STATE_COLORS.get(state.value, "")


def _short(name: str) -> str:
    return name[:28] + ".." if len(name) > 28 else name


# ─────────────────────────────────────────────────────────────────────────────
# Domain Helpers
# ─────────────────────────────────────────────────────────────────────────────


def daemon_started(tracked: int) -> None:
    """Log daemon startup complete."""
    info(f"Daemon started [dim]({tracked} tracked)[/]", Icon.OK)


def daemon_stopping() -> None:
    """Log daemon shutdown initiated."""
    info("Daemon stopping...", Icon.WAIT)


def daemon_stopped() -> None:
    """Log daemon shutdown complete."""
    info("Daemon stopped", Icon.OK)


def signal_received(name: str) -> None:
    """Log signal received."""
    info(f"Received [bold]{name}[/]", Icon.SIGNAL)


def process_launched(name: str, pid: int, state: ProcessState) -> None:
    """Log process launched by the manager."""
    sc = state_color(state)
    info(
        f"[cyan]{_short(name)}[/] [dim]({pid})[/] launched as [{sc}]{state.value}[/]",
        Icon.LAUNCH,
    )


def state_changed(
    name: str, pid: int, old: ProcessState, new: ProcessState, importance: float
) -> None:
    """Log a lifecycle state transition."""
    icon = Icon.PROMOTE if new.rank < old.rank else Icon.DEMOTE
    oc = state_color(old)
    nc = state_color(new)
    info(
        f"[cyan]{_short(name)}[/] [dim]({pid})[/] [{oc}]{old.value}[/] → [{nc}]{new.value}[/] "
        f"[dim]importance {importance:+.1f}[/]",
        icon,
    )


def enforcement_failed(name: str, pid: int, detail: str) -> None:
    """Log a non-fatal enforcement failure."""
    warn(f"[cyan]{_short(name)}[/] [dim]({pid})[/] {detail}")


def process_evicted(name: str, pid: int, idle: float) -> None:
    """Log process evicted under memory pressure."""
    info(f"[cyan]{_short(name)}[/] [dim]({pid})[/] evicted after {idle:.0f}s idle", Icon.EVICT)


def heartbeat(tracked: int, counts: dict[str, int], pressure: bool) -> None:
    """Log periodic heartbeat stats."""
    parts = ", ".join(
        f"[{_STATE_COLORS[name]}]{counts.get(name, 0)}[/] {name}" for name in _STATE_COLORS
    )
    pressure_part = " [bold red]memory pressure[/]" if pressure else ""
    info(f"[cyan]{tracked}[/] tracked: {parts}{pressure_part}", Icon.HEARTBEAT)


def tick_failed(error_msg: str) -> None:
    """Log tick failed."""
    error(f"Tick failed: {error_msg}", Icon.FAIL)


def already_running(pid: int | None = None) -> None:
    """Log daemon already running error."""
    if pid:
        error(f"Another daemon already running [dim](PID {pid})[/]", Icon.FAIL)
    else:
        error("Another daemon already running", Icon.FAIL)


def config_summary(tick_interval: float, max_processes: int, threshold: float) -> None:
    """Log config summary."""
    info(
        f"Config: tick=[cyan]{tick_interval}s[/], capacity=[cyan]{max_processes}[/], "
        f"low memory<[cyan]{threshold}%[/]"
    )


# ─────────────────────────────────────────────────────────────────────────────
# Structlog Configuration
# ─────────────────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Create a processor that adds a source field to log events."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return processor


def configure(config: Config) -> None:
    """Configure structlog to write JSON Lines to a rotating file.

    Console output goes through the Rich helpers above; structlog only
    writes to the file for machine parsing. Both use local time.

    Args:
        config: Application config with paths
    """
    # Ensure state directory exists for log file
    config.state_dir.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.INFO)

    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(logging.INFO)
    stdlib_root.handlers.clear()

    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
                structlog.processors.add_log_level,
                _add_source("daemon"),
                structlog.processors.format_exc_info,
            ],
        )
    )
    stdlib_root.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
            structlog.processors.add_log_level,
            _add_source("daemon"),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
