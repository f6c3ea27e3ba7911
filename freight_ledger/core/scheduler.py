"""
Periodic reconciliation.

Runs one sweep as soon as it starts and then one per interval on a
daemon thread. A failed pass is logged and the next one runs on schedule.
"""

import logging
import threading
from typing import Optional

from .reconciliation import Sweeper, SweepReport

logger = logging.getLogger(__name__)


class PeriodicSweeper:
    """Timer-driven wrapper around `Sweeper.run_safely`."""

    def __init__(self, sweeper: Sweeper, interval_seconds: float = 3600.0):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.sweeper = sweeper
        self.interval_seconds = interval_seconds
        self.passes = 0
        self.last_report: Optional[SweepReport] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="freight-ledger-sweeper", daemon=True)
        self._thread.start()
        logger.info(f"[SWEEP] Periodic sweeper started, every {self.interval_seconds}s")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("[SWEEP] Periodic sweeper stopped")

    def wait(self) -> None:
        """Block until `stop` is called from another thread."""
        self._stop.wait()

    def _loop(self) -> None:
        while True:
            self.last_report = self.sweeper.run_safely()
            self.passes += 1
            if self._stop.wait(self.interval_seconds):
                break
