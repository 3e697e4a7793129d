"""System sampling for kern."""

import logging
from pathlib import Path

import psutil

from kern.errors import SnapshotUnavailable
from kern.models import ProcessSample, Snapshot

logger = logging.getLogger(__name__)

THERMAL_ROOT = Path("/sys/class/thermal")

# Sensor chips checked first, in order, when psutil reports temperatures
PREFERRED_SENSORS = ("coretemp", "k10temp", "zenpower", "cpu_thermal", "acpitz")


def _read_thermal_zone(zone: Path) -> float | None:
    try:
        return int((zone / "temp").read_text().strip()) / 1000.0
    except (OSError, ValueError):
        return None


def read_temperature() -> float:
    """
    Best-effort CPU temperature in Celsius.

    Uses psutil's sensor readings, falling back to ``/sys/class/thermal``.
    Returns 0.0 when no sensor is readable.
    """
    sensors_temperatures = getattr(psutil, "sensors_temperatures", None)
    if sensors_temperatures is not None:
        try:
            sensors = sensors_temperatures()
        except (OSError, RuntimeError):
            sensors = {}
        for chip in (*PREFERRED_SENSORS, *sorted(sensors)):
            readings = sensors.get(chip)
            if readings:
                return max(reading.current for reading in readings)

    for zone in sorted(THERMAL_ROOT.glob("thermal_zone*")):
        temperature = _read_thermal_zone(zone)
        if temperature is not None:
            return temperature
    return 0.0


def thermal_zones() -> list[tuple[str, str, float]]:
    """
    List every readable temperature sensor.

    Returns:
        (source, label, celsius) tuples.
    """
    zones: list[tuple[str, str, float]] = []
    sensors_temperatures = getattr(psutil, "sensors_temperatures", None)
    if sensors_temperatures is not None:
        try:
            for chip, readings in sorted(sensors_temperatures().items()):
                for reading in readings:
                    zones.append((chip, reading.label or chip, reading.current))
        except (OSError, RuntimeError) as e:
            logger.debug("psutil sensors unavailable: %s", e)

    for zone in sorted(THERMAL_ROOT.glob("thermal_zone*")):
        temperature = _read_thermal_zone(zone)
        if temperature is None:
            continue
        try:
            zone_type = (zone / "type").read_text().strip()
        except OSError:
            zone_type = "unknown"
        zones.append((zone.name, zone_type, temperature))
    return zones


class SystemSampler:
    """
    Produces Snapshots of the live system using psutil.

    Handles AccessDenied and ZombieProcess errors per process; any other
    failure is reported as SnapshotUnavailable.
    """

    def __init__(self) -> None:
        # First call primes the counters and returns 0.0
        psutil.cpu_percent()

    def get_snapshot(self) -> Snapshot:
        """
        Sample the system.

        Raises:
            SnapshotUnavailable: If psutil fails outside per-process errors.
        """
        try:
            cpu_usage = psutil.cpu_percent()
            mem = psutil.virtual_memory()
            temperature = read_temperature()
            processes = collect_processes()
        except (psutil.Error, OSError) as e:
            raise SnapshotUnavailable(f"Failed to sample system: {e}") from e

        return Snapshot(
            cpu_usage=cpu_usage,
            memory_usage=mem.percent,
            temperature=temperature,
            processes=tuple(processes),
            total_memory_bytes=mem.total,
            used_memory_bytes=mem.used,
        )


def collect_processes() -> list[ProcessSample]:
    """
    Sample all running processes, heaviest memory first.

    Processes that vanish or deny access mid-iteration are skipped.
    """
    processes: list[ProcessSample] = []

    for proc in psutil.process_iter(attrs=["pid", "name", "memory_info", "cpu_percent", "cmdline"]):
        try:
            info = proc.info
            mem_info = info.get("memory_info")
            cmdline = info.get("cmdline") or []
            processes.append(
                ProcessSample(
                    pid=info["pid"],
                    name=info.get("name") or "",
                    memory_bytes=mem_info.rss if mem_info else 0,
                    cpu_percent=info.get("cpu_percent") or 0.0,
                    command_line=" ".join(cmdline),
                )
            )
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue

    processes.sort(key=lambda p: p.memory_bytes, reverse=True)
    return processes
