"""Trend helpers over recent readings."""

from collections.abc import Sequence
from enum import Enum

# Percentage points (or degrees) between half-window means that count as a trend
TREND_THRESHOLD = 5.0


class Trend(Enum):
    RISING = "rising"
    FALLING = "falling"
    STABLE = "stable"


def average(readings: Sequence[float]) -> float:
    """Mean of the readings, 0.0 when empty."""
    if not readings:
        return 0.0
    return sum(readings) / len(readings)


def detect_trend(readings: Sequence[float]) -> Trend:
    """
    Compare the mean of the first half of the readings with the second half.

    Fewer than two readings are always STABLE.
    """
    if len(readings) < 2:
        return Trend.STABLE

    mid = len(readings) // 2
    diff = average(readings[mid:]) - average(readings[:mid])
    if diff > TREND_THRESHOLD:
        return Trend.RISING
    if diff < -TREND_THRESHOLD:
        return Trend.FALLING
    return Trend.STABLE


def estimate_time_to_critical(
    readings: Sequence[float],
    interval: float,
    critical: float,
) -> float | None:
    """
    Extrapolate when the temperature will reach ``critical``.

    Fits a least-squares line through readings taken ``interval`` seconds apart.

    Returns:
        Seconds until critical, 0.0 if already there, or None if not rising.
    """
    if not readings:
        return None
    if readings[-1] >= critical:
        return 0.0
    n = len(readings)
    if n < 2 or interval <= 0:
        return None

    mean_x = (n - 1) / 2
    mean_y = average(readings)
    denom = sum((i - mean_x) ** 2 for i in range(n))
    slope = sum((i - mean_x) * (y - mean_y) for i, y in enumerate(readings)) / denom
    if slope <= 0:
        return None
    return (critical - readings[-1]) / slope * interval
