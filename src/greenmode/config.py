"""Configuration system for greenmode."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit

# Accepted ranges, inclusive
FREQUENCY_RANGE = (1, 300)
HIGH_PERFORMANCE_RANGE = (0.1, 1.0)
POWER_SAVE_RANGE = (0.05, 0.9)

POWER_BACKENDS = ("auto", "tlp", "pmset", "powercfg", "dry-run")
LOG_LEVELS = ("debug", "info", "warning", "error")


@dataclass
class MonitoringConfig:
    """Load sampling and hysteresis thresholds.

    Thresholds are fractions of total core capacity: 0.70 on an 8-core host
    means a load average of 5.6.
    """

    frequency: int = 10  # Seconds between load samples
    high_performance_threshold: float = 0.70  # Load above this enters performance mode
    power_save_threshold: float = 0.30  # Load below this enters power saving mode


@dataclass
class PowerConfig:
    """Power-mode backend configuration."""

    backend: str = "auto"  # auto, tlp, pmset, powercfg or dry-run
    use_sudo: bool = False  # Prefix backend commands with sudo
    command_timeout: float = 30.0  # Seconds before a backend command is abandoned


@dataclass
class SystemConfig:
    """Daemon logging configuration."""

    log_level: str = "info"
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


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

    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    power: PowerConfig = field(default_factory=PowerConfig)
    system: SystemConfig = field(default_factory=SystemConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "greenmode"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "greenmode"

    @property
    def runtime_dir(self) -> Path:
        """Runtime directory for the PID file, cleared on reboot."""
        return Path("/tmp/greenmode")

    @property
    def log_path(self) -> Path:
        """Daemon log path (JSON Lines)."""
        return self.state_dir / "daemon.log"

    @property
    def pid_path(self) -> Path:
        """PID file path."""
        return self.runtime_dir / "daemon.pid"

    def advisories(self) -> list[str]:
        """Return warnings about valid but questionable settings."""
        m = self.monitoring
        notes = []
        gap = m.high_performance_threshold - m.power_save_threshold
        if gap < 0.1:
            notes.append(
                f"Small threshold gap ({gap * 100:.0f}%) may cause frequent mode switching; "
                "10% or more is recommended"
            )
        if m.frequency < 10:
            notes.append(
                f"Very frequent monitoring ({m.frequency}s) may impact system performance; "
                "consider 10s or more"
            )
        if m.high_performance_threshold > 0.9:
            notes.append(
                f"Very high performance threshold ({m.high_performance_threshold * 100:.0f}%) "
                "may rarely trigger performance mode"
            )
        if m.power_save_threshold < 0.1:
            notes.append(
                f"Very low power save threshold ({m.power_save_threshold * 100:.0f}%) "
                "may rarely trigger power saving mode"
            )
        return notes

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("monitoring", "power", "system"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        Raises:
            ValueError: If the file can't be parsed or a value is out of range.
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
            monitoring=_load_monitoring_config(data.get("monitoring", {})),
            power=_load_power_config(data.get("power", {})),
            system=_load_system_config(data.get("system", {})),
        )


def _number(data: dict, key: str, default: float, kind: type) -> float:
    """Fetch a numeric value, rejecting strings and booleans."""
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number, got {value!r}")
    if kind is int and not float(value).is_integer():
        raise ValueError(f"{key} must be a whole number, got {value!r}")
    return kind(value)


def _load_monitoring_config(data: dict) -> MonitoringConfig:
    """Load monitoring config from TOML data, validating ranges."""
    defaults = MonitoringConfig()

    frequency = int(_number(data, "frequency", defaults.frequency, int))
    high = _number(
        data, "high_performance_threshold", defaults.high_performance_threshold, float
    )
    low = _number(data, "power_save_threshold", defaults.power_save_threshold, float)

    lo, hi = FREQUENCY_RANGE
    if not lo <= frequency <= hi:
        raise ValueError(f"frequency must be between {lo} and {hi} seconds, got {frequency}")
    lo, hi = HIGH_PERFORMANCE_RANGE
    if not lo <= high <= hi:
        raise ValueError(f"high_performance_threshold must be between {lo} and {hi}, got {high}")
    lo, hi = POWER_SAVE_RANGE
    if not lo <= low <= hi:
        raise ValueError(f"power_save_threshold must be between {lo} and {hi}, got {low}")
    if low >= high:
        raise ValueError(
            f"power_save_threshold ({low}) must be less than "
            f"high_performance_threshold ({high})"
        )

    return MonitoringConfig(
        frequency=frequency,
        high_performance_threshold=high,
        power_save_threshold=low,
    )


def _load_power_config(data: dict) -> PowerConfig:
    """Load power backend config from TOML data."""
    defaults = PowerConfig()

    backend = data.get("backend", defaults.backend)
    if backend not in POWER_BACKENDS:
        raise ValueError(f"Invalid backend: {backend!r}. Must be one of {POWER_BACKENDS}")

    use_sudo = data.get("use_sudo", defaults.use_sudo)
    if not isinstance(use_sudo, bool):
        raise ValueError(f"use_sudo must be true or false, got {use_sudo!r}")

    command_timeout = _number(data, "command_timeout", defaults.command_timeout, float)
    if command_timeout <= 0:
        raise ValueError(f"command_timeout must be > 0, got {command_timeout}")

    return PowerConfig(backend=str(backend), use_sudo=use_sudo, command_timeout=command_timeout)


def _load_system_config(data: dict) -> SystemConfig:
    """Load system config from TOML data."""
    defaults = SystemConfig()

    log_level = data.get("log_level", defaults.log_level)
    if log_level not in LOG_LEVELS:
        raise ValueError(f"Invalid log_level: {log_level!r}. Must be one of {LOG_LEVELS}")

    log_max_bytes = int(_number(data, "log_max_bytes", defaults.log_max_bytes, int))
    log_backup_count = int(_number(data, "log_backup_count", defaults.log_backup_count, int))
    if log_max_bytes < 1:
        raise ValueError(f"log_max_bytes must be >= 1, got {log_max_bytes}")
    if log_backup_count < 0:
        raise ValueError(f"log_backup_count must be >= 0, got {log_backup_count}")

    return SystemConfig(
        log_level=str(log_level),
        log_max_bytes=log_max_bytes,
        log_backup_count=log_backup_count,
    )
