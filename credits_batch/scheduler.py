"""
SweepScheduler -- in-process fixed-cadence trigger for SweepRunner.

Contract:
    Each registered sweep has an interval.  ``tick()`` runs every sweep
    whose interval has elapsed since its last run, using the injected
    Clock.  ``start()`` / ``stop()`` run ticks on a background thread.

Non-goals:
    - NOT a distributed scheduler.  Several processes may tick at once;
      the sweeps themselves are safe to run concurrently.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from credits_kernel.domain.clock import Clock, SystemClock
from credits_kernel.domain.dtos import SweepReport
from credits_kernel.logging_config import get_logger

logger = get_logger("batch.scheduler")


@dataclass
class _ScheduledSweep:
    name: str
    run: Callable[[], SweepReport]
    interval: timedelta
    last_run_at: datetime | None = None


class SweepScheduler:
    def __init__(
        self,
        clock: Clock | None = None,
        tick_interval_seconds: float = 60,
    ):
        self._clock = clock or SystemClock()
        self._tick_interval = tick_interval_seconds
        self._sweeps: dict[str, _ScheduledSweep] = {}
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def register(
        self,
        name: str,
        run: Callable[[], SweepReport],
        interval: timedelta,
    ) -> None:
        if name in self._sweeps:
            raise ValueError(f"Sweep '{name}' is already registered")
        self._sweeps[name] = _ScheduledSweep(name, run, interval)

    def tick(self) -> list[SweepReport]:
        """Run due sweeps (public for testing).  Returns their reports."""
        now = self._clock.now()
        reports = []
        for sweep in self._sweeps.values():
            if self._stop_event.is_set():
                break
            if sweep.last_run_at is not None and now - sweep.last_run_at < sweep.interval:
                continue
            sweep.last_run_at = now
            try:
                reports.append(sweep.run())
            except Exception:
                logger.exception("sweep_run_failed", extra={"sweep": sweep.name})
        return reports

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name="sweep-scheduler", daemon=True
        )
        self._thread.start()
        logger.info("scheduler_started", extra={"sweeps": sorted(self._sweeps)})

    def stop(self, timeout: float = 30.0) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(timeout=self._tick_interval)
