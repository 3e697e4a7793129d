"""Enforcement engine for kern.

One call to ``Enforcer.evaluate`` runs the decision state machine against a
single snapshot:

1. In emergency mode, a temperature below the warning threshold exits
   emergency mode. Nothing is killed that cycle.
2. A temperature above the critical threshold enters (or stays in)
   emergency mode and kills every eligible process in the snapshot. Emergency
   mode keeps shedding load until the temperature drops below warning.
3. Otherwise the CPU, RAM and temperature-warning checks run in that order.
   Each breach kills the heaviest eligible process by memory.

A process is eligible unless it is in the global protected list, the active
profile's protected list, or the fixed critical-process set.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from kern.config import KernConfig
from kern.errors import SnapshotUnavailable, TerminationFailure
from kern.killer import Terminator, is_critical, is_protected
from kern.models import (
    EngineState,
    EngineStatus,
    KillMode,
    ProcessSample,
    Profile,
    Snapshot,
    TerminationOutcome,
)
from kern.notify import NotificationGate

logger = logging.getLogger(__name__)


class SnapshotProvider(Protocol):
    def get_snapshot(self) -> Snapshot: ...


@dataclass(slots=True)
class CycleReport:
    """What happened during one evaluation cycle."""

    snapshot: Snapshot
    entered_emergency: bool = False
    exited_emergency: bool = False
    breaches: list[str] = field(default_factory=list)
    outcomes: list[TerminationOutcome] = field(default_factory=list)
    # Engine state as of the end of the cycle
    profile: Profile | None = None
    status: EngineStatus | None = None

    @property
    def killed(self) -> list[TerminationOutcome]:
        return [outcome for outcome in self.outcomes if outcome.success]

    @property
    def action_taken(self) -> bool:
        return bool(self.killed)


class Enforcer:
    """
    Owns EngineState and applies the active profile to each snapshot.

    Not thread-safe; callers serialize access (see ``kern.service``).
    """

    def __init__(
        self,
        config: KernConfig,
        profile: Profile,
        sampler: SnapshotProvider,
        terminator: Terminator,
        notifier: NotificationGate | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._config = config
        self._sampler = sampler
        self._terminator = terminator
        self._notifier = notifier or NotificationGate(config.notifications)
        self._clock = clock
        self._state = EngineState(active_profile=profile)

    @property
    def profile(self) -> Profile:
        """The active profile."""
        return self._state.active_profile

    @property
    def state(self) -> EngineState:
        return self._state

    def is_emergency_mode(self) -> bool:
        return self._state.emergency

    def emergency_duration(self) -> float | None:
        """Seconds spent in emergency mode, or None."""
        return self.status().emergency_seconds(self._clock())

    def status(self) -> EngineStatus:
        """Read-only copy of the current state."""
        state = self._state
        return EngineStatus(
            profile_name=state.active_profile.name,
            emergency=state.emergency,
            emergency_since=state.emergency_since,
            last_run=state.last_run,
        )

    def enforce_once(self) -> CycleReport | None:
        """
        Fetch a fresh snapshot and evaluate it.

        Returns:
            The cycle report, or None if the snapshot was unavailable. In that
            case the state is left untouched.
        """
        try:
            snapshot = self._sampler.get_snapshot()
        except SnapshotUnavailable as e:
            logger.warning("Skipping enforcement cycle: %s", e)
            return None
        return self.evaluate(snapshot)

    def evaluate(self, snapshot: Snapshot) -> CycleReport:
        """Run the state machine once against ``snapshot``."""
        report = CycleReport(snapshot=snapshot)
        state = self._state
        thresholds = self._config.temperature
        temperature = snapshot.temperature

        if state.emergency and temperature < thresholds.warning:
            logger.info("Emergency mode disabled - temperature cooled to %.1f°C", temperature)
            state.emergency = False
            state.emergency_since = None
            report.exited_emergency = True
            self._notifier.emergency_resolved(temperature)
            return self._finish(report)

        if temperature > thresholds.critical:
            if not state.emergency:
                logger.critical(
                    "EMERGENCY MODE ACTIVATED - temperature %.1f°C > %.1f°C (critical)",
                    temperature,
                    thresholds.critical,
                )
                state.emergency = True
                state.emergency_since = self._clock()
                report.entered_emergency = True
                self._notifier.emergency_entered(temperature, thresholds.critical)
            self._kill_all_eligible(snapshot, report)
        elif state.emergency:
            self._kill_all_eligible(snapshot, report)
        else:
            self._enforce_limits(snapshot, report)

        return self._finish(report)

    def _finish(self, report: CycleReport) -> CycleReport:
        self._state.last_run = self._clock()
        self.stamp(report)
        return report

    def stamp(self, report: CycleReport) -> None:
        """Record the current profile and engine status on ``report``."""
        report.profile = self._state.active_profile
        report.status = self.status()

    def switch_profile(self, profile: Profile) -> list[TerminationOutcome]:
        """
        Activate ``profile`` and clear emergency mode.

        Every running process named in ``profile.kill_on_activate`` is
        terminated, protected lists notwithstanding. Critical processes are
        always skipped.
        """
        old_name = self._state.active_profile.name
        logger.info("Switching profile: %s -> %s", old_name, profile.name)

        outcomes: list[TerminationOutcome] = []
        for name in profile.kill_on_activate:
            if is_critical(name):
                logger.info("Skipping kill of %s (critical process)", name)
                continue
            for pid in self._terminator.find_by_name(name):
                outcome = self._attempt(ProcessSample(pid=pid, name=name, memory_bytes=0, cpu_percent=0.0))
                if outcome.success:
                    logger.info("Killed %s (PID: %d) on profile activation", name, pid)
                outcomes.append(outcome)

        self._state.active_profile = profile
        self._state.emergency = False
        self._state.emergency_since = None

        self._notifier.profile_switched(old_name, profile.name)
        return outcomes

    def is_eligible(self, name: str) -> bool:
        """True if a process with this name may be terminated."""
        return not (
            is_critical(name)
            or is_protected(name, self._state.active_profile.protected)
            or is_protected(name, self._config.protected_processes)
        )

    def _enforce_limits(self, snapshot: Snapshot, report: CycleReport) -> None:
        limits = self._state.active_profile.limits
        thresholds = self._config.temperature

        if snapshot.cpu_usage > limits.max_cpu_percent:
            logger.warning(
                "CPU limit exceeded: %.1f%% > %.1f%%", snapshot.cpu_usage, limits.max_cpu_percent
            )
            report.breaches.append("cpu")
            self._notifier.limit_exceeded("CPU", snapshot.cpu_usage, limits.max_cpu_percent)
            self._kill_heaviest(snapshot, report, "high CPU usage")

        if snapshot.memory_usage > limits.max_ram_percent:
            logger.warning(
                "RAM limit exceeded: %.1f%% > %.1f%%", snapshot.memory_usage, limits.max_ram_percent
            )
            report.breaches.append("ram")
            self._notifier.limit_exceeded("RAM", snapshot.memory_usage, limits.max_ram_percent)
            self._kill_heaviest(snapshot, report, "high RAM usage")

        if thresholds.warning < snapshot.temperature <= thresholds.critical:
            logger.warning(
                "Temperature warning: %.1f°C > %.1f°C", snapshot.temperature, thresholds.warning
            )
            report.breaches.append("temperature")
            self._notifier.temperature_warning(snapshot.temperature, thresholds.warning)
            self._kill_heaviest(snapshot, report, "pre-emptive cooling")

    def _kill_heaviest(self, snapshot: Snapshot, report: CycleReport, reason: str) -> None:
        """Terminate the first eligible process in memory order; try the next on failure."""
        attempted = {outcome.pid for outcome in report.outcomes}
        for process in snapshot.processes:
            if process.pid in attempted or not self.is_eligible(process.name):
                continue
            outcome = self._attempt(process)
            report.outcomes.append(outcome)
            if outcome.success:
                logger.info("Killed %s (PID: %d) - %s", process.name, process.pid, reason)
                self._notifier.process_killed(process.pid, process.name)
                return

        logger.warning("Limit breach unresolved: no eligible process to terminate")

    def _kill_all_eligible(self, snapshot: Snapshot, report: CycleReport) -> None:
        for process in snapshot.processes:
            if not self.is_eligible(process.name):
                continue
            outcome = self._attempt(process)
            report.outcomes.append(outcome)
            if outcome.success:
                logger.warning("Killed %s (PID: %d) - emergency mode", process.name, process.pid)

        killed = report.killed
        if len(killed) == 1:
            self._notifier.process_killed(killed[0].pid, killed[0].name)
        elif killed:
            self._notifier.process_killed(0, "emergency", len(killed))

    def _attempt(self, process: ProcessSample) -> TerminationOutcome:
        graceful = self._config.kill_graceful
        try:
            return self._terminator.terminate(process.pid, process.name, graceful=graceful)
        except TerminationFailure as e:
            logger.error("%s", e)
            return TerminationOutcome(
                pid=process.pid,
                name=process.name,
                requested_mode=KillMode.GRACEFUL if graceful else KillMode.FORCED,
                success=False,
                reason=e.reason,
            )
