"""Profile loading, validation and switching."""

import logging
from pathlib import Path
from typing import Any

import yaml

from kern.errors import AllProfilesInvalid, ProfileNotFound, ProfileValidationError
from kern.models import AutoActivate, AutoActivateTrigger, Profile, ProfileLimits, Snapshot

logger = logging.getLogger(__name__)


def validate_profile(profile: Profile) -> None:
    """
    Check the invariants every profile must hold.

    Raises:
        ProfileValidationError: On the first violated invariant.
    """
    if not profile.name:
        raise ProfileValidationError("Profile name cannot be empty")

    limits = profile.limits
    if not 0.0 <= limits.max_cpu_percent <= 100.0:
        raise ProfileValidationError(
            f"Invalid max_cpu_percent: {limits.max_cpu_percent} (must be 0-100)"
        )
    if not 0.0 <= limits.max_ram_percent <= 100.0:
        raise ProfileValidationError(
            f"Invalid max_ram_percent: {limits.max_ram_percent} (must be 0-100)"
        )
    if not 0.0 <= limits.max_temp_celsius <= 120.0:
        raise ProfileValidationError(
            f"Invalid max_temp: {limits.max_temp_celsius} (must be 0-120°C)"
        )


def _string_list(data: dict[str, Any], key: str) -> list[str]:
    value = data.get(key) or []
    if not isinstance(value, list):
        raise ProfileValidationError(f"'{key}' must be a list of process names")
    return [str(item) for item in value]


def parse_profile(data: Any) -> Profile:
    """
    Build a validated Profile from a parsed YAML mapping.

    Missing limits take their defaults. ``max_temp`` in the file maps to
    ``ProfileLimits.max_temp_celsius``.

    Raises:
        ProfileValidationError: If the mapping is malformed or fails validation.
    """
    if not isinstance(data, dict):
        raise ProfileValidationError("Profile definition must be a mapping")
    if "name" not in data:
        raise ProfileValidationError("Profile is missing a 'name' field")

    raw_limits = data.get("limits") or {}
    defaults = ProfileLimits()
    try:
        limits = ProfileLimits(
            max_cpu_percent=float(raw_limits.get("max_cpu_percent", defaults.max_cpu_percent)),
            max_ram_percent=float(raw_limits.get("max_ram_percent", defaults.max_ram_percent)),
            max_temp_celsius=float(raw_limits.get("max_temp", defaults.max_temp_celsius)),
        )
    except (TypeError, ValueError, AttributeError) as e:
        raise ProfileValidationError(f"Invalid limits: {e}") from e

    raw_auto = data.get("auto_activate") or {}
    if not isinstance(raw_auto, dict):
        raise ProfileValidationError("'auto_activate' must be a mapping")
    if not isinstance(raw_auto.get("triggers") or [], list):
        raise ProfileValidationError("'auto_activate.triggers' must be a list")
    triggers = tuple(
        AutoActivateTrigger(
            type=str(trigger.get("type") or "process"),
            command_contains=str(trigger.get("command_contains") or ""),
        )
        for trigger in raw_auto.get("triggers") or []
        if isinstance(trigger, dict)
    )

    profile = Profile(
        name=str(data["name"] or ""),
        description=str(data.get("description") or ""),
        protected=frozenset(_string_list(data, "protected")),
        kill_on_activate=tuple(_string_list(data, "kill_on_activate")),
        limits=limits,
        auto_activate=AutoActivate(enabled=bool(raw_auto.get("enabled", False)), triggers=triggers),
    )
    validate_profile(profile)
    return profile


def load_profile(path: Path) -> Profile:
    """Load a single profile from a YAML file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ProfileValidationError(f"Failed to read {path.name}: {e}") from e
    return parse_profile(data)


class ProfileStore:
    """
    Holds the loaded profiles and tracks which one is active.

    Profiles are keyed by file stem. The active profile's name is persisted
    to a small state file on every successful switch.
    """

    def __init__(
        self,
        profiles: dict[str, Profile],
        state_file: Path | None = None,
        default: str = "normal",
    ) -> None:
        """
        Initialize the ProfileStore.

        Args:
            profiles: Mapping of profile key to Profile. Must not be empty.
            state_file: Where the active profile name is persisted, if anywhere.
            default: Preferred initial profile.
        """
        if not profiles:
            raise AllProfilesInvalid("No profiles available")
        self._profiles = dict(profiles)
        self._state_file = state_file

        if default in self._profiles:
            self._current = default
        elif "normal" in self._profiles:
            self._current = "normal"
        else:
            self._current = self.list_names()[0]

    @classmethod
    def load(
        cls,
        directory: Path,
        state_file: Path | None = None,
        default: str = "normal",
    ) -> "ProfileStore":
        """
        Load every ``*.yaml`` profile found in a directory.

        Invalid profiles are skipped with a warning.

        Raises:
            AllProfilesInvalid: If no profile loaded successfully.
        """
        profiles: dict[str, Profile] = {}
        paths = sorted(directory.glob("*.yaml")) if directory.is_dir() else []

        for path in paths:
            if not path.is_file():
                continue
            try:
                profiles[path.stem] = load_profile(path)
            except ProfileValidationError as e:
                logger.warning("Failed to load profile %s: %s", path.stem, e)

        if not profiles:
            raise AllProfilesInvalid(
                f"No profiles found in {directory}. Please create profile files."
            )

        logger.info("Loaded %d profile(s): %s", len(profiles), ", ".join(sorted(profiles)))
        return cls(profiles, state_file=state_file, default=default)

    @property
    def current_name(self) -> str:
        """Name of the active profile."""
        return self._current

    def current(self) -> Profile:
        """The active profile."""
        return self._profiles[self._current]

    def get(self, name: str) -> Profile | None:
        """Look up a profile by name."""
        return self._profiles.get(name)

    def list_names(self) -> list[str]:
        """All profile names in sorted order."""
        return sorted(self._profiles)

    def items(self) -> list[tuple[str, Profile]]:
        """All profiles as (name, profile) pairs in sorted order."""
        return [(name, self._profiles[name]) for name in self.list_names()]

    def switch(self, name: str) -> Profile:
        """
        Activate a different profile.

        Raises:
            ProfileNotFound: If ``name`` is unknown. The active profile is unchanged.
        """
        if name not in self._profiles:
            raise ProfileNotFound(name, self.list_names())

        self._current = name
        self._save_state()
        return self._profiles[name]

    def restore_state(self) -> str | None:
        """
        Restore the profile saved by a previous run.

        Returns:
            The restored name, or None if nothing valid was saved.
        """
        if self._state_file is None or not self._state_file.exists():
            return None
        try:
            saved = self._state_file.read_text(encoding="utf-8").strip()
        except OSError as e:
            logger.warning("Failed to read profile state %s: %s", self._state_file, e)
            return None

        if saved in self._profiles:
            self._current = saved
            return saved
        logger.info("Ignoring saved profile '%s': no longer available", saved)
        return None

    def triggers_match(
        self,
        name: str,
        snapshot: Snapshot,
        exclude: frozenset[int] = frozenset(),
    ) -> bool:
        """
        True if an auto-activation trigger of profile ``name`` matches a process.

        Args:
            name: Profile to check. Profiles with auto-activation disabled never match.
            snapshot: Snapshot whose processes are searched.
            exclude: PIDs to ignore, e.g. processes killed this cycle.
        """
        profile = self._profiles.get(name)
        if profile is None or not profile.auto_activate.enabled:
            return False
        running = [proc for proc in snapshot.processes if proc.pid not in exclude]
        for trigger in profile.auto_activate.triggers:
            if trigger.type != "process" or not trigger.command_contains:
                continue
            needle = trigger.command_contains
            if any(needle in proc.command_line or needle in proc.name for proc in running):
                return True
        return False

    def auto_activation_candidate(
        self,
        snapshot: Snapshot,
        exclude: frozenset[int] = frozenset(),
    ) -> str | None:
        """
        Find a profile whose auto-activation triggers match a running process.

        Returns:
            The first matching profile name in sorted order, or None.
        """
        for name in self.list_names():
            if name != self._current and self.triggers_match(name, snapshot, exclude):
                return name
        return None

    def _save_state(self) -> None:
        """Persist the active profile name; failures are logged, not raised."""
        if self._state_file is None:
            return
        try:
            self._state_file.parent.mkdir(parents=True, exist_ok=True)
            self._state_file.write_text(self._current, encoding="utf-8")
        except OSError as e:
            logger.warning("Failed to save profile state %s: %s", self._state_file, e)
