"""Periodic driver for the enforcement engine."""

import logging
import threading
from queue import Queue
from typing import Protocol

from kern.enforcer import CycleReport

logger = logging.getLogger(__name__)


class CycleRunner(Protocol):
    def run_cycle(self) -> CycleReport | None: ...


class Watchdog:
    """
    Runs one enforcement cycle every ``interval`` seconds in a daemon thread.

    A cycle runs to completion before the next wait starts, so cycles never
    overlap. Errors are logged and the loop carries on at the next tick.
    """

    def __init__(
        self,
        service: CycleRunner,
        interval: float = 2.0,
        reports: Queue[CycleReport] | None = None,
    ) -> None:
        """
        Initialize the Watchdog.

        Args:
            service: Object whose ``run_cycle`` performs one enforcement cycle.
            interval: Seconds to wait between cycles.
            reports: Optional queue receiving every completed CycleReport.
        """
        self._service = service
        self._interval = interval
        self._reports = reports
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._cycles = 0

    @property
    def interval(self) -> float:
        return self._interval

    @interval.setter
    def interval(self, value: float) -> None:
        self._interval = max(0.1, value)

    @property
    def cycles(self) -> int:
        """Number of cycles attempted so far."""
        return self._cycles

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the enforcement thread."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="Watchdog",
        )
        self._thread.start()
        logger.info("Starting enforcer loop (interval: %.1fs)", self._interval)

    def stop(self, timeout: float | None = 10.0) -> None:
        """
        Stop the enforcement thread.

        A cycle that is mid-termination finishes first, so allow for the
        graceful escalation wait in ``timeout``.
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def run_forever(self) -> None:
        """Run cycles in the calling thread until ``stop`` is called."""
        self._stop_event.clear()
        self._poll_loop()

    def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            self._run_one()
            self._stop_event.wait(timeout=self._interval)

    def _run_one(self) -> None:
        self._cycles += 1
        try:
            report = self._service.run_cycle()
        except Exception:
            logger.exception("Enforcer error")
            return

        if report is None:
            return
        if report.action_taken and report.entered_emergency:
            logger.warning("Emergency mode: %d process(es) killed", len(report.killed))
        if self._reports is not None:
            self._reports.put(report)
