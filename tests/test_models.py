"""Tests for kern data models."""

import dataclasses
from datetime import datetime, timedelta

import pytest

from kern.models import (
    EngineState,
    EngineStatus,
    KillMode,
    ProcessSample,
    Profile,
    ProfileLimits,
    Snapshot,
    TerminationOutcome,
)


def test_process_sample_creation():
    """Test ProcessSample dataclass creation."""
    sample = ProcessSample(pid=123, name="firefox", memory_bytes=1024000, cpu_percent=12.5)

    assert sample.pid == 123
    assert sample.name == "firefox"
    assert sample.memory_bytes == 1024000
    assert sample.cpu_percent == 12.5
    assert sample.command_line == ""


def test_process_sample_is_frozen():
    """Test that ProcessSample is immutable (frozen)."""
    sample = ProcessSample(pid=1, name="init", memory_bytes=10000, cpu_percent=0.1)

    with pytest.raises(dataclasses.FrozenInstanceError):
        sample.pid = 999


def test_snapshot_uses_slots():
    """Test that Snapshot uses __slots__ for memory efficiency."""
    snapshot = Snapshot(cpu_usage=1.0, memory_usage=2.0, temperature=40.0)

    # Slots-based dataclasses don't have __dict__
    assert not hasattr(snapshot, "__dict__")
    assert snapshot.processes == ()


def test_profile_defaults():
    """Test a bare Profile protects nothing and uses the default limits."""
    profile = Profile(name="minimal")

    assert profile.protected == frozenset()
    assert profile.kill_on_activate == ()
    assert profile.limits == ProfileLimits(90.0, 85.0, 85.0)
    assert not profile.auto_activate.enabled


def test_profiles_compare_by_value():
    """Test equal definitions compare equal."""
    a = Profile(name="work", protected=frozenset({"code"}))
    b = Profile(name="work", protected=frozenset({"code"}))

    assert a == b
    assert hash(a) == hash(b)


def test_termination_outcome_timestamp_defaults_to_now():
    """Test the outcome timestamp is filled in at creation."""
    before = datetime.now()
    outcome = TerminationOutcome(pid=5, name="x", requested_mode=KillMode.GRACEFUL, success=True)

    assert before <= outcome.timestamp <= datetime.now()
    assert outcome.reason == ""


def test_engine_state_is_mutable():
    """Test EngineState can be updated in place."""
    state = EngineState(active_profile=Profile(name="normal"))
    state.emergency = True
    state.emergency_since = datetime(2026, 1, 1)

    assert state.emergency
    assert state.last_run is None


def test_engine_status_emergency_seconds():
    """Test the emergency duration is computed against a supplied clock."""
    since = datetime(2026, 1, 1, 12, 0, 0)
    status = EngineStatus(profile_name="normal", emergency=True, emergency_since=since, last_run=None)

    assert status.emergency_seconds(since + timedelta(seconds=42)) == 42.0


def test_engine_status_without_emergency():
    """Test no duration is reported outside emergency mode."""
    status = EngineStatus(profile_name="normal", emergency=False, emergency_since=None, last_run=None)

    assert status.emergency_seconds() is None
