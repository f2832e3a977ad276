from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

LOGGER = logging.getLogger(__name__)

CycleFn = Callable[[threading.Event], Any]


class Scheduler:
    """
    Fixed-rate runner for reminder cycles.

    Only one cycle runs at a time; a tick that arrives while a cycle is still
    running is skipped. ``stop()`` lets the in-flight cycle finish and, once the
    grace period is over, sets that cycle's abort event so remaining work is
    abandoned.
    """

    def __init__(
        self,
        cycle: CycleFn,
        interval_seconds: float,
        shutdown_grace: Optional[float] = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._cycle = cycle
        self.interval_seconds = interval_seconds
        self.shutdown_grace = shutdown_grace
        self._clock = clock
        self._stop_event = threading.Event()
        self._cycle_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._current_abort: Optional[threading.Event] = None
        self._grace_timer: Optional[threading.Timer] = None
        self.cycles_run = 0
        self.ticks_skipped = 0

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def tick(self) -> bool:
        """Run one cycle unless another one is in progress or a stop was requested. Returns whether it ran."""
        if not self._cycle_lock.acquire(blocking=False):
            self.ticks_skipped += 1
            LOGGER.warning("Previous reminder cycle still running; skipping tick")
            return False
        try:
            abort = threading.Event()
            # stop() either sees this cycle and arms its deadline, or we see the stop
            with self._state_lock:
                if self._stop_event.is_set():
                    LOGGER.info("Stop requested; not starting another cycle")
                    return False
                self._current_abort = abort
            try:
                self._cycle(abort)
            except Exception:
                LOGGER.exception("Reminder cycle failed")
            self.cycles_run += 1
        finally:
            with self._state_lock:
                self._current_abort = None
            self._cycle_lock.release()
        return True

    def run_forever(self, max_cycles: Optional[int] = None) -> None:
        LOGGER.info("Scheduler started. Interval: %ss", self.interval_seconds)
        next_run = self._clock()
        while not self._stop_event.is_set():
            self.tick()
            if max_cycles is not None and self.cycles_run >= max_cycles:
                break

            next_run += self.interval_seconds
            now = self._clock()
            if next_run <= now:
                missed = int((now - next_run) // self.interval_seconds) + 1
                self.ticks_skipped += missed
                LOGGER.warning("Cycle overran the interval; skipping %s tick(s)", missed)
                next_run += missed * self.interval_seconds
            if self._stop_event.wait(next_run - now):
                break

        self._cancel_grace_timer()
        LOGGER.info("Scheduler stopped after %s cycle(s)", self.cycles_run)

    def stop(self, deadline: Optional[float] = None) -> None:
        """
        Stop issuing cycles.

        ``deadline`` (seconds, defaults to ``shutdown_grace``) bounds how long the
        in-flight cycle may keep running. A second call abandons it at once.
        """
        with self._state_lock:
            repeated = self._stop_event.is_set()
            if not repeated:
                self._stop_event.set()
                grace = self.shutdown_grace if deadline is None else deadline
                LOGGER.info("Stop requested; waiting up to %ss for the running cycle", grace)
                if grace is not None and self._current_abort is not None:
                    timer = threading.Timer(grace, self.abandon_inflight)
                    timer.daemon = True
                    self._grace_timer = timer
                    timer.start()
        if repeated:
            self.abandon_inflight()

    def abandon_inflight(self) -> None:
        with self._state_lock:
            abort = self._current_abort
        if abort is not None and not abort.is_set():
            LOGGER.warning("Shutdown deadline reached; abandoning unfinished reminder work")
            abort.set()

    def _cancel_grace_timer(self) -> None:
        if self._grace_timer is not None:
            self._grace_timer.cancel()
            self._grace_timer = None
