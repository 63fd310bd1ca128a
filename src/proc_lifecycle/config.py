"""Configuration system for proc-lifecycle."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit


@dataclass
class SystemConfig:
    """Tick loop and registry configuration."""

    tick_interval: float = 2.0  # Seconds between ticks
    history_size: int = 10  # Samples kept per CPU/memory ring buffer
    max_processes: int = 128  # Registry capacity
    heartbeat_ticks: int = 30  # Log heartbeat every N ticks (~1 minute at 2s)
    # Log file rotation
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


@dataclass
class MemoryConfig:
    """Memory pressure detection and eviction configuration."""

    low_memory_threshold: float = 15.0  # Pressure when available memory % drops below this
    eviction_idle_seconds: float = 300.0  # CACHED processes idle longer than this are evicted
    max_evictions: int = 0  # Victims per tick, 0 = unlimited
    limit_multiplier: float = 1.5  # Memory ceiling = multiplier x average usage


@dataclass
class ScoringConfig:
    """Importance scoring weights and time windows.

    Each weight is the raw contribution of one signal. The raw total is
    divided by `normalization` and mapped onto [-20, 20].
    """

    focused: float = 100.0
    related: float = 90.0  # Parent or child of the focused process
    system_service: float = 50.0
    audio: float = 80.0
    gpu: float = 40.0
    network: float = 20.0
    idle: float = 30.0  # Decays linearly over idle_window
    recent_foreground: float = 25.0  # Decays linearly over foreground_window
    cpu_divisor: float = 5.0  # Average CPU% / divisor
    memory_penalty: float = 20.0  # Subtracted for large processes under pressure
    # Windows (seconds)
    gpu_window: float = 5.0
    network_window: float = 10.0
    idle_window: float = 30.0
    foreground_window: float = 60.0
    # Thresholds
    memory_penalty_kb: int = 500_000  # Average RSS above which the penalty applies
    activity_cpu_threshold: float = 1.0  # CPU% counted as activity
    normalization: float = 150.0


@dataclass
class CgroupConfig:
    """Control group hierarchy configuration."""

    root: str = "/sys/fs/cgroup"
    enabled: bool = True  # False = log directives without writing them


def _default_service_names() -> list[str]:
    return [
        "systemd",
        "systemd-journald",
        "systemd-logind",
        "systemd-udevd",
        "systemd-resolved",
        "dbus-daemon",
        "dbus-broker",
        "NetworkManager",
        "wpa_supplicant",
        "pulseaudio",
        "pipewire",
        "wireplumber",
        "Xorg",
        "Xwayland",
        "gnome-shell",
        "kwin_wayland",
        "sshd",
        "cron",
        "rsyslogd",
        "polkitd",
        "udisksd",
        "bluetoothd",
    ]


@dataclass
class ServicesConfig:
    """Executable names treated as system services."""

    names: list[str] = field(default_factory=_default_service_names)


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Main configuration container."""

    system: SystemConfig = field(default_factory=SystemConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    cgroups: CgroupConfig = field(default_factory=CgroupConfig)
    services: ServicesConfig = field(default_factory=ServicesConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "proc-lifecycle"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "proc-lifecycle"

    @property
    def runtime_dir(self) -> Path:
        """Runtime directory for ephemeral files (PID file, control socket).

        Stored in /tmp/ so it's cleared on reboot, avoiding stale file issues.
        """
        return Path("/tmp/proc-lifecycle")

    @property
    def log_path(self) -> Path:
        """Daemon log path."""
        return self.state_dir / "daemon.log"

    @property
    def pid_path(self) -> Path:
        """PID file path."""
        return self.runtime_dir / "daemon.pid"

    @property
    def socket_path(self) -> Path:
        """Unix socket path for the control channel."""
        return self.runtime_dir / "daemon.sock"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("system", "memory", "scoring", "cgroups", "services"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions, so Config() and
        Config.load() agree on every value the file leaves out.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        return cls(
            system=_load_system_config(data.get("system", {})),
            memory=_load_memory_config(data.get("memory", {})),
            scoring=_load_scoring_config(data.get("scoring", {})),
            cgroups=_load_cgroup_config(data.get("cgroups", {})),
            services=_load_services_config(data.get("services", {})),
        )


def _load_system_config(data: dict) -> SystemConfig:
    """Load system config from TOML data, using dataclass defaults for missing fields."""
    d = SystemConfig()
    tick_interval = data.get("tick_interval", d.tick_interval)
    history_size = data.get("history_size", d.history_size)
    max_processes = data.get("max_processes", d.max_processes)
    heartbeat_ticks = data.get("heartbeat_ticks", d.heartbeat_ticks)

    if tick_interval <= 0:
        raise ValueError(f"tick_interval must be > 0, got {tick_interval}")
    if history_size < 1:
        raise ValueError(f"history_size must be >= 1, got {history_size}")
    if max_processes < 1:
        raise ValueError(f"max_processes must be >= 1, got {max_processes}")
    if heartbeat_ticks < 1:
        raise ValueError(f"heartbeat_ticks must be >= 1, got {heartbeat_ticks}")

    return SystemConfig(
        tick_interval=tick_interval,
        history_size=history_size,
        max_processes=max_processes,
        heartbeat_ticks=heartbeat_ticks,
        log_max_bytes=data.get("log_max_bytes", d.log_max_bytes),
        log_backup_count=data.get("log_backup_count", d.log_backup_count),
    )


def _load_memory_config(data: dict) -> MemoryConfig:
    """Load memory config from TOML data."""
    d = MemoryConfig()
    threshold = data.get("low_memory_threshold", d.low_memory_threshold)
    idle_seconds = data.get("eviction_idle_seconds", d.eviction_idle_seconds)
    max_evictions = data.get("max_evictions", d.max_evictions)
    multiplier = data.get("limit_multiplier", d.limit_multiplier)

    if not 0 < threshold < 100:
        raise ValueError(f"low_memory_threshold must be between 0 and 100, got {threshold}")
    if idle_seconds < 0:
        raise ValueError(f"eviction_idle_seconds must be >= 0, got {idle_seconds}")
    if max_evictions < 0:
        raise ValueError(f"max_evictions must be >= 0, got {max_evictions}")
    if multiplier <= 0:
        raise ValueError(f"limit_multiplier must be > 0, got {multiplier}")

    return MemoryConfig(
        low_memory_threshold=threshold,
        eviction_idle_seconds=idle_seconds,
        max_evictions=max_evictions,
        limit_multiplier=multiplier,
    )


def _load_scoring_config(data: dict) -> ScoringConfig:
    """Load scoring config from TOML data."""
    d = ScoringConfig()
    values = {f.name: data.get(f.name, getattr(d, f.name)) for f in fields(ScoringConfig)}

    if values["normalization"] <= 0:
        raise ValueError(f"normalization must be > 0, got {values['normalization']}")
    if values["cpu_divisor"] <= 0:
        raise ValueError(f"cpu_divisor must be > 0, got {values['cpu_divisor']}")
    for window in ("gpu_window", "network_window", "idle_window", "foreground_window"):
        if values[window] <= 0:
            raise ValueError(f"{window} must be > 0, got {values[window]}")

    return ScoringConfig(**values)


def _load_cgroup_config(data: dict) -> CgroupConfig:
    """Load cgroup config from TOML data."""
    d = CgroupConfig()
    return CgroupConfig(
        root=data.get("root", d.root),
        enabled=data.get("enabled", d.enabled),
    )


def _load_services_config(data: dict) -> ServicesConfig:
    """Load system-service allow-list from TOML data."""
    d = ServicesConfig()
    names = data.get("names", d.names)
    if not isinstance(names, list):
        raise ValueError(f"services.names must be a list, got {type(names).__name__}")
    return ServicesConfig(names=[str(n) for n in names])
