"""Shared fixtures and test doubles for kern tests."""

import errno
import signal
from pathlib import Path

import pytest

from kern.config import KernConfig
from kern.enforcer import Enforcer
from kern.errors import SnapshotUnavailable
from kern.killer import KillLog, Terminator
from kern.models import ProcessSample, Profile, ProfileLimits, Snapshot
from kern.notify import NotificationGate, Urgency
from kern.service import WatchdogService


class FakeClock:
    """Deterministic clock: sleeping advances time instantly."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProcessTable:
    """
    In-memory process table.

    By default a process dies on SIGTERM. Processes in ``stubborn`` ignore
    SIGTERM; ``slow`` maps a pid to the seconds it takes to exit after SIGTERM.
    Processes in ``denied`` refuse every signal with EPERM.
    """

    def __init__(self, clock: FakeClock, processes: dict[int, str] | None = None) -> None:
        self.clock = clock
        self.alive: dict[int, str] = dict(processes or {})
        self.stubborn: set[int] = set()
        self.slow: dict[int, float] = {}
        self.denied: set[int] = set()
        self.signals: list[tuple[float, int, int]] = []
        self._dies_at: dict[int, float] = {}

    def add(self, pid: int, name: str) -> None:
        self.alive[pid] = name

    def send_signal(self, pid: int, sig: int) -> None:
        self._reap()
        if pid not in self.alive:
            raise ProcessLookupError(errno.ESRCH, "No such process")
        if pid in self.denied:
            raise PermissionError(errno.EPERM, "Operation not permitted")
        self.signals.append((self.clock.now, pid, sig))
        if sig == signal.SIGKILL:
            del self.alive[pid]
        elif sig == signal.SIGTERM and pid not in self.stubborn:
            if pid in self.slow:
                self._dies_at[pid] = self.clock.now + self.slow[pid]
            else:
                del self.alive[pid]

    def is_alive(self, pid: int) -> bool:
        self._reap()
        return pid in self.alive

    def find_by_name(self, name: str) -> list[int]:
        return [pid for pid, proc_name in self.alive.items() if proc_name == name]

    def signals_for(self, pid: int, sig: int) -> list[float]:
        return [at for at, target, s in self.signals if target == pid and s == sig]

    def _reap(self) -> None:
        for pid, at in list(self._dies_at.items()):
            if self.clock.now >= at:
                self.alive.pop(pid, None)
                del self._dies_at[pid]


class FakeSampler:
    """Returns queued snapshots; an exception instance in the queue is raised."""

    def __init__(self, *items: "Snapshot | Exception") -> None:
        self.items = list(items)
        self.calls = 0

    def push(self, item: "Snapshot | Exception") -> None:
        self.items.append(item)

    def get_snapshot(self) -> Snapshot:
        self.calls += 1
        if not self.items:
            raise SnapshotUnavailable("no snapshot queued")
        item = self.items.pop(0) if len(self.items) > 1 else self.items[0]
        if isinstance(item, Exception):
            raise item
        return item


class RecordingBackend:
    """Notification backend that records deliveries."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, Urgency]] = []

    def send(self, title: str, body: str, urgency: Urgency) -> None:
        self.sent.append((title, body, urgency))


def make_snapshot(
    cpu: float = 10.0,
    ram: float = 30.0,
    temp: float = 50.0,
    processes: list[tuple[int, str, int]] | None = None,
) -> Snapshot:
    """Build a snapshot from (pid, name, memory_mb) tuples, heaviest first."""
    samples = [
        ProcessSample(pid=pid, name=name, memory_bytes=mb * 1024 * 1024, cpu_percent=1.0)
        for pid, name, mb in processes or []
    ]
    samples.sort(key=lambda p: p.memory_bytes, reverse=True)
    return Snapshot(
        cpu_usage=cpu,
        memory_usage=ram,
        temperature=temp,
        processes=tuple(samples),
        total_memory_bytes=16 * 1024**3,
        used_memory_bytes=int(16 * 1024**3 * ram / 100),
    )


DEFAULT_PROCESSES = [
    (101, "chrome", 2048),
    (102, "shell", 4096),
    (103, "code", 1024),
    (104, "systemd", 8192),
    (105, "spotify", 512),
]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def table(clock: FakeClock) -> FakeProcessTable:
    return FakeProcessTable(clock, {pid: name for pid, name, _ in DEFAULT_PROCESSES})


@pytest.fixture
def config(tmp_path: Path) -> KernConfig:
    config = KernConfig(config_dir=tmp_path)
    config.control_socket = tmp_path / "k.sock"
    return config


@pytest.fixture
def kill_log(tmp_path: Path) -> KillLog:
    return KillLog(tmp_path / "kern.log")


@pytest.fixture
def terminator(table: FakeProcessTable, clock: FakeClock, kill_log: KillLog) -> Terminator:
    return Terminator(table, clock, kill_log)


@pytest.fixture
def backend() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture
def gate(config: KernConfig, backend: RecordingBackend, clock: FakeClock) -> NotificationGate:
    return NotificationGate(config.notifications, backend=backend, clock=clock)


@pytest.fixture
def profile() -> Profile:
    return Profile(
        name="normal",
        protected=frozenset({"shell"}),
        limits=ProfileLimits(max_cpu_percent=90.0, max_ram_percent=85.0),
    )


@pytest.fixture
def make_enforcer(config, terminator, gate, profile):
    """Factory building an Enforcer around the shared fakes."""

    def factory(sampler=None, active: Profile | None = None) -> Enforcer:
        return Enforcer(
            config,
            active or profile,
            sampler or FakeSampler(),
            terminator,
            gate,
        )

    return factory


def write_profile(directory: Path, stem: str, body: str) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{stem}.yaml"
    path.write_text(body, encoding="utf-8")
    return path


@pytest.fixture
def profiles_dir(config: KernConfig) -> Path:
    """A profiles directory with a normal and a gaming profile."""
    directory = config.profiles_dir
    write_profile(
        directory,
        "normal",
        """
name: "normal"
description: "Everyday use"
protected:
  - shell
limits:
  max_cpu_percent: 90
  max_ram_percent: 85
  max_temp: 85
""",
    )
    write_profile(
        directory,
        "gaming",
        """
name: "gaming"
description: "Games get the machine"
protected:
  - steam
kill_on_activate:
  - chrome
  - systemd
limits:
  max_cpu_percent: 99
  max_ram_percent: 95
  max_temp: 90
""",
    )
    return directory


@pytest.fixture
def make_service(config, profiles_dir, terminator, gate):
    """Factory building a WatchdogService over the fake process table."""

    def factory(*snapshots: Snapshot | Exception) -> WatchdogService:
        return WatchdogService.create(
            config,
            sampler=FakeSampler(*snapshots),
            terminator=terminator,
            notifier=gate,
        )

    return factory
