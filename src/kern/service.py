"""Thread-safe facade over the enforcement engine.

The polling loop and the control-socket listener share one WatchdogService.
Enforcement cycles and profile switches take the write lock; status queries
take the read lock and only ever receive copies.
"""

import logging
import threading
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from kern.config import KernConfig
from kern.enforcer import CycleReport, Enforcer, SnapshotProvider
from kern.killer import KillLog, Terminator
from kern.models import EngineStatus, Profile, Snapshot
from kern.monitor import SystemSampler
from kern.notify import NotificationGate
from kern.profiles import ProfileStore
from kern.stats import detect_trend, estimate_time_to_critical

logger = logging.getLogger(__name__)

GIB = 1024**3


class ReadWriteLock:
    """
    Many concurrent readers or a single writer.

    Waiting writers block new readers so a steady stream of status queries
    cannot starve the polling loop.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def snapshot_summary(snapshot: Snapshot, top: int = 10) -> dict[str, Any]:
    """JSON-friendly summary of a snapshot and its heaviest processes."""
    return {
        "cpu_usage": snapshot.cpu_usage,
        "memory_percentage": snapshot.memory_usage,
        "total_memory_gb": snapshot.total_memory_bytes / GIB,
        "used_memory_gb": snapshot.used_memory_bytes / GIB,
        "temperature": snapshot.temperature,
        "top_processes": [
            {
                "pid": p.pid,
                "name": p.name,
                "memory_gb": p.memory_bytes / GIB,
                "cpu_percentage": p.cpu_percent,
            }
            for p in snapshot.processes[:top]
        ],
    }


class WatchdogService:
    """The status and command surface exposed to front ends."""

    def __init__(
        self,
        config: KernConfig,
        store: ProfileStore,
        enforcer: Enforcer,
        sampler: SnapshotProvider,
        kill_log: KillLog,
        history_size: int = 30,
    ) -> None:
        self._config = config
        self._store = store
        self._enforcer = enforcer
        self._sampler = sampler
        self._kill_log = kill_log
        self._lock = ReadWriteLock()
        self._last_snapshot: Snapshot | None = None
        self._temperatures: deque[float] = deque(maxlen=history_size)
        # Name of the active profile when it was switched to automatically
        self._auto_profile: str | None = None

    @classmethod
    def create(
        cls,
        config: KernConfig,
        sampler: SnapshotProvider | None = None,
        terminator: Terminator | None = None,
        notifier: NotificationGate | None = None,
    ) -> "WatchdogService":
        """
        Wire up a service from configuration.

        Loads the profiles and restores the last active profile.

        Raises:
            AllProfilesInvalid: If no profile could be loaded.
        """
        store = ProfileStore.load(
            config.profiles_dir,
            state_file=config.state_file,
            default=config.default_profile,
        )
        restored = store.restore_state()
        if restored:
            logger.info("Restored profile '%s'", restored)

        kill_log = KillLog(config.kill_log_path)
        sampler = sampler or SystemSampler()
        terminator = terminator or Terminator(kill_log=kill_log)
        enforcer = Enforcer(
            config,
            store.current(),
            sampler,
            terminator,
            notifier or NotificationGate(config.notifications),
        )
        return cls(config, store, enforcer, sampler, kill_log)

    @property
    def config(self) -> KernConfig:
        return self._config

    @property
    def last_snapshot(self) -> Snapshot | None:
        return self._last_snapshot

    def run_cycle(self) -> CycleReport | None:
        """Run one enforcement cycle under the write lock."""
        with self._lock.write():
            report = self._enforcer.enforce_once()
            if report is None:
                return None
            self._last_snapshot = report.snapshot
            self._temperatures.append(report.snapshot.temperature)

            # A switch clears emergency mode, which only cooling may end
            if not self._enforcer.is_emergency_mode():
                self._auto_activate(report)
            return report

    def _auto_activate(self, report: CycleReport) -> None:
        """Switch to a profile whose trigger process is still running after the cycle."""
        killed = frozenset(outcome.pid for outcome in report.killed)
        current = self._store.current_name
        if current == self._auto_profile and self._store.triggers_match(
            current, report.snapshot, killed
        ):
            return

        candidate = self._store.auto_activation_candidate(report.snapshot, exclude=killed)
        if candidate is None:
            return
        logger.info("Auto-activating profile '%s'", candidate)
        self._switch_locked(candidate)
        self._auto_profile = candidate
        self._enforcer.stamp(report)

    def get_status(self) -> dict[str, Any]:
        """Engine state plus a summary of the latest snapshot."""
        with self._lock.read():
            status = self._enforcer.status()
            snapshot = self._last_snapshot
            temperatures = list(self._temperatures)

        if snapshot is None:
            snapshot = self._sampler.get_snapshot()
            temperatures = [snapshot.temperature]

        summary = snapshot_summary(snapshot)
        summary.update(
            {
                "profile": status.profile_name,
                "emergency": status.emergency,
                "emergency_seconds": status.emergency_seconds(),
                "last_run": status.last_run.isoformat(timespec="seconds") if status.last_run else None,
                "temperature_trend": detect_trend(temperatures).value,
                "seconds_to_critical": estimate_time_to_critical(
                    temperatures,
                    self._config.monitor_interval,
                    self._config.temperature.critical,
                ),
            }
        )
        return summary

    def engine_status(self) -> EngineStatus:
        with self._lock.read():
            return self._enforcer.status()

    def current_profile(self) -> Profile:
        with self._lock.read():
            return self._enforcer.profile

    def get_current_profile(self) -> str:
        with self._lock.read():
            return self._store.current_name

    def list_profiles(self) -> list[str]:
        with self._lock.read():
            return self._store.list_names()

    def switch_profile(self, name: str) -> Profile:
        """
        Switch the active profile.

        Raises:
            ProfileNotFound: If ``name`` is unknown; nothing changes.
        """
        with self._lock.write():
            profile = self._switch_locked(name)
            self._auto_profile = None
            return profile

    def get_recent_kills(self, limit: int = 10) -> list[str]:
        """Newest kill-log records first."""
        return self._kill_log.recent(limit)

    def _switch_locked(self, name: str) -> Profile:
        profile = self._store.switch(name)
        self._enforcer.switch_profile(profile)
        return profile
