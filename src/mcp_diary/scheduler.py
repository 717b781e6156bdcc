"""Expiry scheduler: per-entry timers plus periodic background jobs.

Timers make soft-deleted entries expire promptly while the process runs.
They are lost on restart, so correctness comes from the sweep, which is
run once at start and then every ``sweep_interval`` seconds. Other
periodic jobs (backups, integrity checks) share the same thread.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL = 3600.0  # seconds


@dataclass
class PeriodicJob:
    """A callable run every ``interval`` seconds by the background thread."""
    name: str
    fn: Callable[[], Any]
    interval: float
    run_at_start: bool = True
    next_run: float = 0.0


class ExpiryScheduler:
    """Owns expiry timers and the background job thread."""

    def __init__(
        self,
        sweep: Optional[Callable[[], Any]] = None,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
    ):
        """Initialize the scheduler.

        Args:
            sweep: Idempotent catch-up callable run by the background thread
            sweep_interval: Seconds between sweeps
        """
        self.sweep_fn = sweep
        self.sweep_interval = sweep_interval
        self._timers: dict[str, threading.Timer] = {}
        self._jobs: list[PeriodicJob] = []
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # ========== Per-entry timers ==========

    def schedule(self, entry_id: str, delay: float, callback: Callable[[str], Any]) -> None:
        """Arm the expiry timer for an entry, replacing any existing one."""
        timer = threading.Timer(max(delay, 0.0), self._fire, args=(entry_id, callback))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(entry_id, None)
            self._timers[entry_id] = timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def cancel(self, entry_id: str) -> bool:
        """Cancel an entry's timer.

        Returns:
            True if a pending timer was found and cancelled
        """
        with self._lock:
            timer = self._timers.pop(entry_id, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def cancel_all(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def pending(self) -> list[str]:
        """Entry ids with an armed timer."""
        with self._lock:
            return sorted(self._timers)

    def _fire(self, entry_id: str, callback: Callable[[str], Any]) -> None:
        with self._lock:
            if self._timers.get(entry_id) is threading.current_thread():
                del self._timers[entry_id]
        try:
            callback(entry_id)
        except Exception:
            logger.exception("Expiry timer for entry %s failed", entry_id)

    # ========== Background jobs ==========

    def add_job(self, name: str, fn: Callable[[], Any], interval: float,
                run_at_start: bool = True) -> PeriodicJob:
        """Register a periodic job. Takes effect on the next ``start()``.

        Raises:
            ValueError: If ``interval`` is not positive
        """
        if interval <= 0:
            raise ValueError(f"Job interval must be positive, got {interval}")
        job = PeriodicJob(name=name, fn=fn, interval=interval, run_at_start=run_at_start)
        with self._lock:
            self._jobs.append(job)
        return job

    def jobs(self) -> list[str]:
        """Names of registered periodic jobs, the expiry sweep excluded."""
        with self._lock:
            return [job.name for job in self._jobs]

    def start(self) -> None:
        """Start the background thread. The first sweep runs immediately."""
        if self._running:
            return

        self._stop_event.clear()
        self._running = True
        self._thread = threading.Thread(target=self._run, name="diary-expiry-sweep", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background thread and cancel all timers."""
        self.cancel_all()
        if not self._running:
            return

        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        self._running = False

    def run_sweep(self) -> Any:
        if self.sweep_fn is None:
            return None
        return self.sweep_fn()

    def _run(self) -> None:
        """Main loop: run every due job, then sleep until the next one is due."""
        with self._lock:
            jobs = [PeriodicJob("Expiry sweep", self.run_sweep, self.sweep_interval)]
            jobs.extend(replace(job) for job in self._jobs)
        started = time.monotonic()
        for job in jobs:
            job.next_run = started if job.run_at_start else started + job.interval

        while not self._stop_event.is_set():
            for job in jobs:
                if self._stop_event.is_set():
                    break
                now = time.monotonic()
                if job.next_run <= now:
                    self._run_job(job)
                    job.next_run = now + job.interval

            next_due = min(job.next_run for job in jobs)
            self._stop_event.wait(max(next_due - time.monotonic(), 0.0))

    def _run_job(self, job: PeriodicJob) -> None:
        try:
            job.fn()
        except Exception:
            # Keep running; the next tick retries.
            logger.exception("%s failed", job.name)
