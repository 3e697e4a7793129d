"""Tests for the thread-safe watchdog service."""

import threading
import time

import pytest

from kern.errors import ProfileNotFound, SnapshotUnavailable
from kern.service import GIB, ReadWriteLock, snapshot_summary

from conftest import DEFAULT_PROCESSES, make_snapshot, write_profile


def write_trigger_profile(directory, stem: str, trigger: str) -> None:
    write_profile(
        directory,
        stem,
        f"""
name: {stem}
auto_activate:
  enabled: true
  triggers:
    - type: process
      command_contains: {trigger}
""",
    )


class TestReadWriteLock:
    """Tests for the readers-writer lock."""

    def test_readers_share(self):
        """Test two readers can hold the lock at once."""
        lock = ReadWriteLock()
        inside = threading.Barrier(2, timeout=2.0)

        def reader():
            with lock.read():
                inside.wait()

        threads = [threading.Thread(target=reader) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=3.0)
        assert not inside.broken

    def test_writer_excludes_readers(self):
        """Test a reader waits for the writer to finish."""
        lock = ReadWriteLock()
        events: list[str] = []
        writer_in = threading.Event()

        def writer():
            with lock.write():
                writer_in.set()
                time.sleep(0.1)
                events.append("write")

        def reader():
            writer_in.wait()
            with lock.read():
                events.append("read")

        threads = [threading.Thread(target=writer), threading.Thread(target=reader)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=3.0)

        assert events == ["write", "read"]

    def test_lock_released_on_error(self):
        """Test an exception inside the block releases the lock."""
        lock = ReadWriteLock()
        with pytest.raises(RuntimeError):
            with lock.write():
                raise RuntimeError("boom")

        with lock.read():
            pass


def test_snapshot_summary():
    """Test the JSON summary of a snapshot."""
    summary = snapshot_summary(make_snapshot(cpu=12.5, ram=50, temp=61, processes=DEFAULT_PROCESSES), top=2)

    assert summary["cpu_usage"] == 12.5
    assert summary["memory_percentage"] == 50
    assert summary["total_memory_gb"] == 16.0
    assert summary["temperature"] == 61
    assert [p["pid"] for p in summary["top_processes"]] == [104, 102]
    assert summary["top_processes"][0]["memory_gb"] == pytest.approx(8192 * 1024**2 / GIB)


class TestWatchdogService:
    """Tests for WatchdogService."""

    def test_create_uses_default_profile(self, make_service):
        """Test the configured default profile starts active."""
        service = make_service()

        assert service.get_current_profile() == "normal"
        assert service.current_profile().protected == frozenset({"shell"})
        assert service.list_profiles() == ["gaming", "normal"]

    def test_run_cycle_enforces(self, make_service, table):
        """Test a cycle kills the heaviest eligible process on breach."""
        service = make_service(make_snapshot(cpu=95, processes=DEFAULT_PROCESSES))
        report = service.run_cycle()

        assert [o.pid for o in report.killed] == [101]
        assert service.last_snapshot is report.snapshot

    def test_run_cycle_without_snapshot(self, make_service):
        """Test an unavailable snapshot yields no report."""
        service = make_service(SnapshotUnavailable("no sensors"))

        assert service.run_cycle() is None
        assert service.last_snapshot is None

    def test_switch_profile_persists(self, make_service, config, table):
        """Test switching kills the activation list and survives a restart."""
        service = make_service()
        profile = service.switch_profile("gaming")

        assert profile.name == "gaming"
        assert service.engine_status().profile_name == "gaming"
        assert not table.is_alive(101)  # chrome is on the kill list
        assert table.is_alive(104)  # systemd is critical

        assert make_service().get_current_profile() == "gaming"

    def test_switch_unknown_profile(self, make_service):
        """Test an unknown name leaves everything unchanged."""
        service = make_service()
        with pytest.raises(ProfileNotFound):
            service.switch_profile("turbo")

        assert service.get_current_profile() == "normal"
        assert service.engine_status().profile_name == "normal"

    def test_switch_clears_emergency(self, make_service):
        """Test a profile switch resets emergency mode."""
        service = make_service(make_snapshot(temp=95))
        service.run_cycle()
        assert service.engine_status().emergency

        service.switch_profile("gaming")
        assert not service.engine_status().emergency

    def test_get_status_after_cycle(self, make_service):
        """Test status combines engine state and the last snapshot."""
        service = make_service(make_snapshot(temp=90, processes=DEFAULT_PROCESSES))
        service.run_cycle()
        status = service.get_status()

        assert status["profile"] == "normal"
        assert status["emergency"] is True
        assert status["emergency_seconds"] is not None
        assert status["temperature"] == 90
        assert status["seconds_to_critical"] == 0.0
        assert status["last_run"] is not None

    def test_get_status_before_first_cycle(self, make_service):
        """Test status samples on demand before the loop has run."""
        service = make_service(make_snapshot(cpu=33))
        status = service.get_status()

        assert status["cpu_usage"] == 33
        assert status["emergency"] is False
        assert status["temperature_trend"] == "stable"

    def test_temperature_trend(self, make_service):
        """Test the trend reflects the temperature history."""
        service = make_service(
            make_snapshot(temp=40), make_snapshot(temp=42), make_snapshot(temp=60), make_snapshot(temp=70)
        )
        for _ in range(4):
            service.run_cycle()

        assert service.get_status()["temperature_trend"] == "rising"
        assert service.get_status()["seconds_to_critical"] > 0

    def test_recent_kills(self, make_service):
        """Test kills recorded during cycles can be read back newest first."""
        service = make_service(make_snapshot(temp=95, processes=DEFAULT_PROCESSES))
        service.run_cycle()

        kills = service.get_recent_kills(2)
        assert len(kills) == 2
        assert "[PID: 105]" in kills[0]

    def test_auto_activation(self, make_service, profiles_dir):
        """Test a matching process switches to the auto-activated profile."""
        write_profile(
            profiles_dir,
            "render",
            """
name: render
auto_activate:
  enabled: true
  triggers:
    - type: process
      command_contains: blender
""",
        )
        service = make_service(make_snapshot(processes=[(900, "blender", 100)]))
        service.run_cycle()

        assert service.get_current_profile() == "render"

    def test_auto_activation_waits_for_emergency_to_end(self, make_service, profiles_dir):
        """Test a running trigger process does not cut emergency mode short."""
        write_trigger_profile(profiles_dir, "render", "shell")
        service = make_service(
            make_snapshot(temp=95, processes=DEFAULT_PROCESSES),
            make_snapshot(temp=80, processes=DEFAULT_PROCESSES),
            make_snapshot(temp=60, processes=DEFAULT_PROCESSES),
        )

        service.run_cycle()
        assert service.engine_status().emergency
        assert service.get_current_profile() == "normal"

        report = service.run_cycle()
        assert report.status.emergency
        assert [o.pid for o in report.outcomes] == [101, 103, 105]
        assert service.get_current_profile() == "normal"

        report = service.run_cycle()
        assert report.exited_emergency
        assert service.get_current_profile() == "render"

    def test_killed_trigger_process_does_not_activate(self, make_service, profiles_dir, table):
        """Test a trigger process terminated during the cycle no longer counts."""
        write_trigger_profile(profiles_dir, "browsing", "chrome")
        service = make_service(make_snapshot(cpu=95, processes=DEFAULT_PROCESSES))
        report = service.run_cycle()

        assert [o.pid for o in report.killed] == [101]
        assert not table.is_alive(101)
        assert service.get_current_profile() == "normal"

    def test_auto_activated_profile_stays_while_trigger_runs(self, make_service, profiles_dir):
        """Test two matching profiles do not alternate from cycle to cycle."""
        write_trigger_profile(profiles_dir, "render", "code")
        write_trigger_profile(profiles_dir, "studio", "spotify")
        service = make_service(make_snapshot(cpu=20, processes=DEFAULT_PROCESSES))

        report = service.run_cycle()
        assert report.status.profile_name == "render"
        assert report.profile.name == "render"

        for _ in range(3):
            report = service.run_cycle()
            assert service.get_current_profile() == "render"
            assert report.status.profile_name == "render"

    def test_auto_activated_profile_released_when_trigger_exits(self, make_service, profiles_dir):
        """Test another matching profile takes over once the trigger is gone."""
        write_trigger_profile(profiles_dir, "render", "code")
        write_trigger_profile(profiles_dir, "studio", "spotify")
        without_code = [proc for proc in DEFAULT_PROCESSES if proc[1] != "code"]
        service = make_service(
            make_snapshot(cpu=20, processes=DEFAULT_PROCESSES),
            make_snapshot(cpu=20, processes=without_code),
        )

        service.run_cycle()
        assert service.get_current_profile() == "render"

        service.run_cycle()
        assert service.get_current_profile() == "studio"

    def test_concurrent_status_during_cycles(self, make_service):
        """Test status queries from many threads while cycles run."""
        service = make_service(make_snapshot(cpu=20, processes=DEFAULT_PROCESSES))
        service.run_cycle()
        errors: list[Exception] = []

        def query():
            try:
                for _ in range(20):
                    assert service.get_status()["profile"] == "normal"
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=query) for _ in range(4)]
        for t in threads:
            t.start()
        for _ in range(20):
            service.run_cycle()
        for t in threads:
            t.join(timeout=5.0)

        assert errors == []
