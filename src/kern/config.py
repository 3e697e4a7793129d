"""Global configuration for kern.

The configuration is read from YAML with fallbacks:

1. An explicit path, when given
2. ``$XDG_CONFIG_HOME/kern/kern.yaml`` (or ``~/.config/kern/kern.yaml``)
3. ``/etc/kern/kern.yaml``
4. Built-in defaults

Keys missing from the file fall back to their defaults.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from kern.errors import ConfigError

logger = logging.getLogger(__name__)

SYSTEM_CONFIG_PATH = Path("/etc/kern/kern.yaml")


def default_config_dir() -> Path:
    """Return the per-user kern directory following the XDG layout."""
    config_home = os.environ.get("XDG_CONFIG_HOME")
    if config_home:
        return Path(config_home) / "kern"
    home = os.environ.get("HOME")
    if home:
        return Path(home) / ".config" / "kern"
    return Path("/tmp")


def default_socket_path() -> Path:
    """Return the path of the control socket."""
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if runtime_dir:
        return Path(runtime_dir) / "kern.sock"
    return Path(f"/tmp/kern-{os.getuid()}.sock")


@dataclass(slots=True)
class TemperatureConfig:
    """Temperature thresholds in Celsius."""

    warning: float = 75.0
    critical: float = 85.0  # Triggers emergency mode


@dataclass(slots=True)
class ResourceLimits:
    """Global fallback resource limits."""

    max_cpu_percent: float = 90.0
    max_ram_percent: float = 85.0


@dataclass(slots=True)
class NotificationConfig:
    """Desktop notification switches."""

    enabled: bool = True
    show_on_kill: bool = True
    show_on_profile_switch: bool = True


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a mapping")
    return value


def _numbers(data: dict[str, Any], key: str) -> dict[str, float]:
    """Read a section of numeric settings, coercing every value to float."""
    values: dict[str, float] = {}
    for name, value in _section(data, key).items():
        try:
            values[name] = float(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid {key}.{name}: {value!r} (must be a number)") from e
    return values


def _default_protected() -> list[str]:
    return ["systemd", "gnome-shell", "kern"]


@dataclass(slots=True)
class KernConfig:
    """Top-level kern configuration."""

    default_profile: str = "normal"
    monitor_interval: int = 2  # Seconds between enforcement cycles
    temperature: TemperatureConfig = field(default_factory=TemperatureConfig)
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    protected_processes: list[str] = field(default_factory=_default_protected)
    kill_graceful: bool = True
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    config_dir: Path = field(default_factory=default_config_dir)
    kill_log: Path | None = None
    control_socket: Path = field(default_factory=default_socket_path)

    @property
    def profiles_dir(self) -> Path:
        """Directory holding one YAML file per profile."""
        return self.config_dir / "profiles"

    @property
    def state_file(self) -> Path:
        """File recording the name of the last active profile."""
        return self.config_dir / ".state"

    @property
    def kill_log_path(self) -> Path:
        """Append-only kill log location."""
        if self.kill_log is not None:
            return self.kill_log
        return self.config_dir / "kern.log"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None, config_dir: Path | None = None) -> "KernConfig":
        """
        Build a configuration from a parsed YAML mapping.

        Args:
            data: Mapping as returned by ``yaml.safe_load``. None means empty.
            config_dir: Directory the file was found in, used for profiles and state.

        Raises:
            ConfigError: If the mapping has the wrong shape.
        """
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigError("Configuration root must be a mapping")

        temperature_values = _numbers(data, "temperature")
        limit_values = _numbers(data, "limits")
        notification_values = {
            key: bool(value) for key, value in _section(data, "notifications").items()
        }
        try:
            temperature = TemperatureConfig(**temperature_values)
            limits = ResourceLimits(**limit_values)
            notifications = NotificationConfig(**notification_values)
        except TypeError as e:
            raise ConfigError(f"Unknown configuration key: {e}") from e

        config = cls(
            temperature=temperature,
            limits=limits,
            notifications=notifications,
        )
        if config_dir is not None:
            config.config_dir = config_dir
        if "default_profile" in data:
            config.default_profile = str(data["default_profile"])
        if "monitor_interval" in data:
            try:
                config.monitor_interval = int(data["monitor_interval"])
            except (TypeError, ValueError) as e:
                raise ConfigError(
                    f"Invalid monitor_interval: {data['monitor_interval']!r} (must be an integer)"
                ) from e
        if "protected_processes" in data:
            names = data["protected_processes"] or []
            if not isinstance(names, list):
                raise ConfigError("protected_processes must be a list of process names")
            config.protected_processes = [str(name) for name in names]
        if "kill_graceful" in data:
            config.kill_graceful = bool(data["kill_graceful"])
        if data.get("kill_log"):
            config.kill_log = Path(data["kill_log"]).expanduser()
        if data.get("control_socket"):
            config.control_socket = Path(data["control_socket"]).expanduser()
        return config

    @classmethod
    def load_from_file(cls, path: Path) -> "KernConfig":
        """Load and validate configuration from a YAML file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to read {path}: {e}") from e

        # A system-wide config still keeps per-user profiles and state
        config_dir = path.parent if path != SYSTEM_CONFIG_PATH else None
        config = cls.from_dict(data, config_dir=config_dir)
        config.validate()
        logger.debug("Loaded configuration from %s", path)
        return config

    @classmethod
    def load(cls, path: Path | None = None) -> "KernConfig":
        """Load configuration using the lookup order described in the module docstring."""
        if path is not None:
            return cls.load_from_file(path)

        user_path = default_config_dir() / "kern.yaml"
        if user_path.exists():
            return cls.load_from_file(user_path)

        if SYSTEM_CONFIG_PATH.exists():
            return cls.load_from_file(SYSTEM_CONFIG_PATH)

        logger.debug("No configuration file found, using defaults")
        return cls()

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigError: On the first invalid value.
        """
        if self.monitor_interval < 1:
            raise ConfigError(
                f"Invalid monitor_interval: {self.monitor_interval} (must be >= 1 second)"
            )
        if self.monitor_interval > 3600:
            raise ConfigError(
                f"Invalid monitor_interval: {self.monitor_interval} (must be <= 3600 seconds)"
            )

        for key in ("max_cpu_percent", "max_ram_percent"):
            value = getattr(self.limits, key)
            if not 0.0 <= value <= 100.0:
                raise ConfigError(f"Invalid {key}: {value} (must be 0-100)")

        for key in ("warning", "critical"):
            value = getattr(self.temperature, key)
            if not 0.0 <= value <= 120.0:
                raise ConfigError(f"Invalid temperature.{key}: {value} (must be 0-120°C)")

        if self.temperature.critical <= self.temperature.warning:
            raise ConfigError(
                f"Invalid temperatures: critical ({self.temperature.critical}) "
                f"must be > warning ({self.temperature.warning})"
            )

    def summary(self) -> list[str]:
        """Human-readable summary lines."""
        notifications = self.notifications
        return [
            f"Default Profile: {self.default_profile}",
            f"Monitor Interval: {self.monitor_interval} seconds",
            f"Temperature Warning: {self.temperature.warning:.0f}°C, "
            f"Critical: {self.temperature.critical:.0f}°C",
            f"Resource Limits: CPU {self.limits.max_cpu_percent}%, "
            f"RAM {self.limits.max_ram_percent}%",
            f"Notifications: {'enabled' if notifications.enabled else 'disabled'} "
            f"(kill: {notifications.show_on_kill}, "
            f"profile: {notifications.show_on_profile_switch})",
            f"Kill Mode: {'graceful' if self.kill_graceful else 'forced'}",
            f"Protected Processes: {', '.join(self.protected_processes)}",
        ]
