"""Process termination protocol for kern.

Graceful termination sends SIGTERM, polls liveness every ``POLL_INTERVAL``
seconds and escalates to SIGKILL once ``GRACEFUL_TIMEOUT`` has passed.
A process that has already exited at any point counts as terminated.
"""

import logging
import os
import signal
import time
from collections import deque
from collections.abc import Collection
from pathlib import Path
from typing import Protocol

import psutil

from kern.config import default_config_dir
from kern.errors import TerminationFailure
from kern.models import KillMode, TerminationOutcome

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1
GRACEFUL_TIMEOUT = 5.0

# Never targeted, under any profile or mode
CRITICAL_PROCESSES = frozenset(
    {
        "systemd",
        "gnome-shell",
        "Xwayland",
        "X",
        "Xvfb",
        "dbus-daemon",
        "bluetoothd",
        "wpa_supplicant",
        "NetworkManager",
        "ModemManager",
        "upowerd",
        "systemd-logind",
        "login",
        "sshd",
        "sudo",
    }
)


def is_protected(name: str, protected: Collection[str]) -> bool:
    """Exact, case-sensitive membership test."""
    return name in protected


def is_critical(name: str) -> bool:
    """True for OS and session processes that must never be killed."""
    return name in CRITICAL_PROCESSES


class ProcessTable(Protocol):
    """Minimal view of the OS process table used by the Terminator."""

    def send_signal(self, pid: int, sig: int) -> None:
        """Deliver a signal; raises ProcessLookupError if the process is gone."""

    def is_alive(self, pid: int) -> bool:
        """True while the process exists and is not a zombie."""

    def find_by_name(self, name: str) -> list[int]:
        """PIDs of all live processes with exactly this name."""


class Clock(Protocol):
    """Time source used for the escalation wait."""

    def monotonic(self) -> float: ...

    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Clock backed by the time module."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


class OsProcessTable:
    """ProcessTable backed by ``os.kill`` and psutil."""

    def send_signal(self, pid: int, sig: int) -> None:
        os.kill(pid, sig)

    def is_alive(self, pid: int) -> bool:
        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            # Exists, but owned by someone else
            return True

    def find_by_name(self, name: str) -> list[int]:
        pids: list[int] = []
        for proc in psutil.process_iter(attrs=["pid", "name"]):
            try:
                if proc.info.get("name") == name:
                    pids.append(proc.info["pid"])
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        return pids


def default_kill_log_path() -> Path:
    """Kill log location: ``<config dir>/kern.log``, or ``/tmp/kern.log``."""
    config_dir = default_config_dir()
    if config_dir == Path("/tmp"):
        return Path("/tmp/kern.log")
    return config_dir / "kern.log"


def format_kill_record(outcome: TerminationOutcome) -> str:
    """Render one kill-log line (without trailing newline)."""
    timestamp = outcome.timestamp.isoformat(timespec="seconds")
    graceful = "true" if outcome.requested_mode is KillMode.GRACEFUL else "false"
    status = "ok" if outcome.success else "failed"
    return (
        f'[{timestamp}] KILL [PID: {outcome.pid}] name="{outcome.name}" '
        f"graceful={graceful} status={status}"
    )


class KillLog:
    """Append-only text log with one record per termination attempt."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or default_kill_log_path()

    @property
    def path(self) -> Path:
        return self._path

    def append(self, outcome: TerminationOutcome) -> None:
        """Append a record. Write failures are logged and swallowed."""
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "a", encoding="utf-8") as f:
                f.write(format_kill_record(outcome) + "\n")
        except OSError as e:
            logger.debug("Could not write kill log %s: %s", self._path, e)

    def recent(self, limit: int = 0) -> list[str]:
        """
        Most recent records, newest first.

        Args:
            limit: Maximum number of records; 0 or less returns all of them.
        """
        if not self._path.exists():
            return []
        maxlen = limit if limit > 0 else None
        with open(self._path, "r", encoding="utf-8", errors="replace") as f:
            tail = deque((line.rstrip("\n") for line in f if line.strip()), maxlen=maxlen)
        tail.reverse()
        return list(tail)


class Terminator:
    """
    Runs the graceful-then-forced termination protocol.

    Every attempt, successful or not, is recorded in the kill log.
    """

    def __init__(
        self,
        table: ProcessTable | None = None,
        clock: Clock | None = None,
        kill_log: KillLog | None = None,
    ) -> None:
        self._table = table or OsProcessTable()
        self._clock = clock or SystemClock()
        self._kill_log = kill_log

    @property
    def table(self) -> ProcessTable:
        return self._table

    def find_by_name(self, name: str) -> list[int]:
        """PIDs of live processes with exactly this name."""
        return self._table.find_by_name(name)

    def terminate(self, pid: int, name: str, graceful: bool = True) -> TerminationOutcome:
        """
        Terminate a process.

        Args:
            pid: Target process id.
            name: Process name, for logging.
            graceful: SIGTERM with a bounded wait before SIGKILL, else SIGKILL at once.

        Returns:
            The successful outcome.

        Raises:
            TerminationFailure: If a signal could not be delivered.
        """
        mode = KillMode.GRACEFUL if graceful else KillMode.FORCED
        try:
            if graceful:
                self._terminate_gracefully(pid)
            else:
                self._signal(pid, signal.SIGKILL)
        except OSError as e:
            reason = e.strerror or str(e)
            self._record(TerminationOutcome(pid, name, mode, success=False, reason=reason))
            raise TerminationFailure(pid, name, reason) from e

        outcome = TerminationOutcome(pid, name, mode, success=True)
        self._record(outcome)
        return outcome

    def _terminate_gracefully(self, pid: int) -> None:
        if not self._signal(pid, signal.SIGTERM):
            return

        deadline = self._clock.monotonic() + GRACEFUL_TIMEOUT
        while self._clock.monotonic() < deadline:
            self._clock.sleep(POLL_INTERVAL)
            if not self._table.is_alive(pid):
                return

        logger.info("PID %d ignored SIGTERM for %.0fs, sending SIGKILL", pid, GRACEFUL_TIMEOUT)
        self._signal(pid, signal.SIGKILL)

    def _signal(self, pid: int, sig: int) -> bool:
        """Send a signal; False if the process had already exited."""
        try:
            self._table.send_signal(pid, sig)
        except ProcessLookupError:
            return False
        return True

    def _record(self, outcome: TerminationOutcome) -> None:
        if self._kill_log is not None:
            self._kill_log.append(outcome)
