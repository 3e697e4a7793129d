"""Data models for kern."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


@dataclass(slots=True, frozen=True)
class ProcessSample:
    """Immutable point-in-time sample of a single process."""

    pid: int
    name: str
    memory_bytes: int  # Resident set size
    cpu_percent: float  # 0.0 - 100.0 * core_count
    command_line: str = ""


@dataclass(slots=True, frozen=True)
class Snapshot:
    """
    Immutable snapshot of system load for one enforcement cycle.

    ``processes`` is ordered by descending memory usage.
    """

    cpu_usage: float
    memory_usage: float
    temperature: float  # Celsius
    processes: tuple[ProcessSample, ...] = ()
    total_memory_bytes: int = 0
    used_memory_bytes: int = 0


@dataclass(slots=True, frozen=True)
class ProfileLimits:
    """Resource limits enforced while a profile is active."""

    max_cpu_percent: float = 90.0
    max_ram_percent: float = 85.0
    max_temp_celsius: float = 85.0


@dataclass(slots=True, frozen=True)
class AutoActivateTrigger:
    """A condition that activates a profile automatically."""

    type: str = "process"
    command_contains: str = ""


@dataclass(slots=True, frozen=True)
class AutoActivate:
    """Auto-activation rules of a profile."""

    enabled: bool = False
    triggers: tuple[AutoActivateTrigger, ...] = ()


@dataclass(slots=True, frozen=True)
class Profile:
    """Named policy bundle: limits, protected processes and an activation kill list."""

    name: str
    description: str = ""
    protected: frozenset[str] = frozenset()
    kill_on_activate: tuple[str, ...] = ()
    limits: ProfileLimits = field(default_factory=ProfileLimits)
    auto_activate: AutoActivate = field(default_factory=AutoActivate)


class KillMode(Enum):
    """How a termination was requested."""

    GRACEFUL = "graceful"
    FORCED = "forced"


@dataclass(slots=True, frozen=True)
class TerminationOutcome:
    """Result of one termination attempt."""

    pid: int
    name: str
    requested_mode: KillMode
    success: bool
    reason: str = ""
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(slots=True)
class EngineState:
    """
    Long-lived mutable state of the enforcement engine.

    Owned by a single Enforcer. ``emergency`` is True exactly when
    ``emergency_since`` is set.
    """

    active_profile: Profile
    emergency: bool = False
    emergency_since: datetime | None = None
    last_run: datetime | None = None


@dataclass(slots=True, frozen=True)
class EngineStatus:
    """Read-only copy of EngineState handed out to status queries."""

    profile_name: str
    emergency: bool
    emergency_since: datetime | None
    last_run: datetime | None

    def emergency_seconds(self, now: datetime | None = None) -> float | None:
        """Seconds spent in emergency mode, or None when not in emergency."""
        if self.emergency_since is None:
            return None
        now = now or datetime.now()
        return (now - self.emergency_since).total_seconds()
