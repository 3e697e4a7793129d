"""Rate-limited desktop notifications for kern.

Notifications are purely observational: delivery failures are swallowed and
never affect enforcement.
"""

import contextlib
import logging
import os
import shutil
import subprocess
import time
from collections.abc import Callable
from enum import Enum
from typing import Protocol

from kern.config import NotificationConfig

logger = logging.getLogger(__name__)


class Urgency(Enum):
    """Notification urgency levels understood by notify-send."""

    LOW = "low"
    NORMAL = "normal"
    CRITICAL = "critical"


class Category(Enum):
    """Notification categories, each rate-limited independently."""

    KILL = "kill"
    WARNING = "warning"
    EMERGENCY = "emergency"
    PROFILE_SWITCH = "profile_switch"


# Minimum seconds between two deliveries of the same category
MIN_INTERVALS: dict[Category, float] = {
    Category.KILL: 3.0,
    Category.WARNING: 3.0,
    Category.EMERGENCY: 5.0,
    Category.PROFILE_SWITCH: 0.0,
}


class NotificationBackend(Protocol):
    def send(self, title: str, body: str, urgency: Urgency) -> None: ...


class DesktopNotifier:
    """Backend that shells out to ``notify-send``."""

    def __init__(self, timeout: float = 5.0) -> None:
        self._timeout = timeout

    def send(self, title: str, body: str, urgency: Urgency) -> None:
        # Headless session, nothing to show
        if not os.environ.get("DISPLAY") and not os.environ.get("WAYLAND_DISPLAY"):
            return
        binary = shutil.which("notify-send")
        if binary is None:
            return
        with contextlib.suppress(subprocess.TimeoutExpired):
            subprocess.run(
                [
                    binary,
                    "--app-name=kern",
                    f"--urgency={urgency.value}",
                    f"--expire-time={int(self._timeout * 1000)}",
                    title,
                    body,
                ],
                check=False,
                timeout=self._timeout,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )


class NotificationGate:
    """
    Routes engine events to a notification backend.

    A notification is dropped when notifications are disabled globally, when
    its category is switched off, or when the previous delivery of the same
    category is more recent than that category's minimum interval.
    """

    def __init__(
        self,
        config: NotificationConfig | None = None,
        backend: NotificationBackend | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        config = config or NotificationConfig()
        self.enabled = config.enabled
        self._category_enabled = {
            Category.KILL: config.show_on_kill,
            Category.WARNING: True,
            Category.EMERGENCY: True,
            Category.PROFILE_SWITCH: config.show_on_profile_switch,
        }
        self._backend = backend or DesktopNotifier()
        self._clock = clock
        self._last_fired: dict[Category, float] = {}

    def last_fired(self, category: Category) -> float | None:
        """Clock reading of the last delivery in a category."""
        return self._last_fired.get(category)

    def notify(
        self,
        category: Category,
        title: str,
        body: str,
        urgency: Urgency = Urgency.NORMAL,
    ) -> bool:
        """
        Deliver a notification unless it is gated.

        Returns:
            True if the notification was handed to the backend.
        """
        if not self.enabled or not self._category_enabled.get(category, True):
            return False

        now = self._clock()
        last = self._last_fired.get(category)
        if last is not None and now - last < MIN_INTERVALS[category]:
            return False

        self._last_fired[category] = now
        try:
            self._backend.send(title, body, urgency)
        except Exception as e:
            logger.debug("Notification delivery failed: %s", e)
        return True

    def process_killed(self, pid: int, name: str, count: int = 1) -> bool:
        if count > 1:
            message = f"Killed {count} process(es) matching '{name}'"
        else:
            message = f"Killed process '{name}' (PID: {pid})"
        return self.notify(Category.KILL, "Process Killed", message)

    def emergency_entered(self, temperature: float, critical: float) -> bool:
        return self.notify(
            Category.EMERGENCY,
            "Emergency Mode Activated",
            f"Temperature {temperature:.1f}°C exceeds critical threshold {critical:.1f}°C",
            Urgency.CRITICAL,
        )

    def emergency_resolved(self, temperature: float) -> bool:
        return self.notify(
            Category.EMERGENCY,
            "Emergency Mode Resolved",
            f"Temperature cooled to {temperature:.1f}°C - system back to normal",
        )

    def limit_exceeded(self, resource: str, current: float, limit: float) -> bool:
        return self.notify(
            Category.WARNING,
            "Resource Limit Exceeded",
            f"{resource} usage {current:.1f}% exceeds limit {limit:.1f}%",
            Urgency.CRITICAL,
        )

    def temperature_warning(self, temperature: float, warning: float) -> bool:
        return self.notify(
            Category.WARNING,
            "Temperature Warning",
            f"Temperature {temperature:.1f}°C exceeds warning threshold {warning:.1f}°C",
            Urgency.CRITICAL,
        )

    def profile_switched(self, old: str, new: str) -> bool:
        return self.notify(
            Category.PROFILE_SWITCH,
            "Profile Changed",
            f"Profile switched from '{old}' to '{new}'",
        )
