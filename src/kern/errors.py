"""Exception hierarchy for kern."""


class KernError(Exception):
    """Base class for all kern errors."""


class ConfigError(KernError):
    """The global configuration file is unreadable or holds invalid values."""


class SnapshotUnavailable(KernError):
    """The system sampler failed to produce a snapshot this cycle."""


class ProfileValidationError(KernError):
    """A profile definition failed to parse or validate."""


class AllProfilesInvalid(KernError):
    """No profile could be loaded, so there is no policy to enforce."""


class ProfileNotFound(KernError):
    """A profile switch named a profile that does not exist."""

    def __init__(self, name: str, available: list[str]) -> None:
        self.name = name
        self.available = list(available)
        super().__init__(
            f"Profile '{name}' not found. Available: {', '.join(self.available)}"
        )


class TerminationFailure(KernError):
    """A termination attempt against a process failed."""

    def __init__(self, pid: int, name: str, reason: str) -> None:
        self.pid = pid
        self.name = name
        self.reason = reason
        super().__init__(f"Failed to terminate {name} (PID: {pid}): {reason}")


class ControlError(KernError):
    """A request over the control socket could not be completed."""
