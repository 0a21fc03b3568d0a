"""
Single-flight refresh scheduler.

A primary timer calls ``tick()`` every ``interval_seconds``; each tick starts
one refresh cycle unless one is already running, in which case the tick is
skipped (never queued). A cycle running longer than ``max_cycle_seconds``, or
too many consecutive skipped ticks, force-resets the scheduler to IDLE so the
next tick starts fresh. A separate heartbeat timer applies the same reset when a
cycle is still marked running and neither a successful completion nor the start
of that cycle lies within ``stale_after_seconds``.

Every started cycle carries a generation number; completions of abandoned
generations are ignored. Cycle errors are logged and never leave the
scheduler.
"""
import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import config

logger = logging.getLogger(__name__)


class SchedulerState(Enum):
    IDLE = 'idle'
    RUNNING = 'running'
    SUCCESS = 'success'
    FAILED = 'failed'


def _spawn_thread(target: Callable[[], None]):
    threading.Thread(target=target, daemon=True, name='refresh-cycle').start()


class RefreshScheduler:
    def __init__(self, cycle: Callable[[], Any],
                 interval_seconds: float = config.REFRESH_INTERVAL_SECONDS,
                 max_cycle_seconds: float = config.MAX_CYCLE_SECONDS,
                 max_skipped_ticks: int = config.MAX_SKIPPED_TICKS,
                 heartbeat_interval_seconds: float = config.HEARTBEAT_INTERVAL_SECONDS,
                 stale_after_seconds: float = config.STALE_CYCLE_SECONDS,
                 clock: Callable[[], float] = time.monotonic,
                 spawn: Optional[Callable[[Callable[[], None]], None]] = None):
        self.cycle = cycle
        self.interval_seconds = interval_seconds
        self.max_cycle_seconds = max_cycle_seconds
        self.max_skipped_ticks = max_skipped_ticks
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.stale_after_seconds = stale_after_seconds
        self._clock = clock
        self._spawn = spawn or _spawn_thread

        self._lock = threading.Lock()
        self.state = SchedulerState.IDLE
        self.last_outcome: Optional[SchedulerState] = None
        self._generation = 0
        self._cycle_started_at: Optional[float] = None
        self._skipped_ticks = 0
        self._created_at = clock()
        self.last_success_at: Optional[float] = None
        self.last_result: Any = None
        self.last_error: Optional[str] = None
        self.cycles_started = 0
        self.cycles_succeeded = 0
        self.cycles_failed = 0
        self.force_resets = 0

        self._stop_event = threading.Event()
        self._threads = []

    # --- State machine ---

    def tick(self) -> str:
        """
        Primary timer callback.

        Returns:
            'started', 'skipped' or 'reset'
        """
        with self._lock:
            if self.state == SchedulerState.RUNNING:
                self._skipped_ticks += 1
                running_for = self._clock() - self._cycle_started_at
                if running_for > self.max_cycle_seconds:
                    self._force_reset(f"cycle running for {running_for:.0f}s (max {self.max_cycle_seconds}s)")
                    return 'reset'
                if self._skipped_ticks >= self.max_skipped_ticks:
                    self._force_reset(f"{self._skipped_ticks} consecutive skipped ticks")
                    return 'reset'
                logger.info(f"Refresh cycle still running ({running_for:.0f}s), skipping tick")
                return 'skipped'

            self._generation += 1
            generation = self._generation
            self.state = SchedulerState.RUNNING
            self._cycle_started_at = self._clock()
            self._skipped_ticks = 0
            self.cycles_started += 1

        logger.info(f"Starting refresh cycle #{generation}")
        self._spawn(lambda: self._run(generation))
        return 'started'

    def heartbeat(self) -> bool:
        """Secondary timer callback. Returns True when it force-reset a stale cycle."""
        with self._lock:
            if self.state != SchedulerState.RUNNING:
                return False
            # Measured from the later of the last success and the running cycle's start
            reference = max(self.last_success_at if self.last_success_at is not None else self._created_at,
                            self._cycle_started_at)
            stale_for = self._clock() - reference
            if stale_for <= self.stale_after_seconds:
                return False
            self._force_reset(f"no progress for {stale_for:.0f}s (heartbeat)")
            return True

    def _force_reset(self, reason: str):
        # Caller holds the lock
        logger.error(f"⚠️ Stuck refresh cycle #{self._generation} abandoned: {reason}")
        self._generation += 1
        self.state = SchedulerState.IDLE
        self.last_outcome = SchedulerState.FAILED
        self.last_error = f"force reset: {reason}"
        self._cycle_started_at = None
        self._skipped_ticks = 0
        self.force_resets += 1

    def _run(self, generation: int):
        started = self._clock()
        result = None
        error = None
        try:
            result = self.cycle()
        except Exception as e:
            error = e
        duration = self._clock() - started

        with self._lock:
            if generation != self._generation or self.state != SchedulerState.RUNNING:
                logger.warning(f"Ignoring late completion of abandoned refresh cycle #{generation} after {duration:.1f}s")
                return
            if error is None:
                self.state = SchedulerState.SUCCESS
                self.last_result = result
                self.last_error = None
                self.last_success_at = self._clock()
                self.cycles_succeeded += 1
            else:
                self.state = SchedulerState.FAILED
                self.last_error = f"{type(error).__name__}: {error}"
                self.cycles_failed += 1
            self.last_outcome = self.state
            self.state = SchedulerState.IDLE
            self._cycle_started_at = None

        if error is None:
            logger.info(f"✅ Refresh cycle #{generation} completed in {duration:.1f}s")
        else:
            logger.error(f"❌ Refresh cycle #{generation} failed after {duration:.1f}s: {type(error).__name__}: {error}")

    # --- Timer lifecycle ---

    def _loop(self, interval: float, callback: Callable[[], Any], name: str):
        while not self._stop_event.is_set():
            try:
                callback()
            except Exception as e:
                logger.error(f"Scheduler {name} callback failed: {e}")
            self._stop_event.wait(interval)

    def start(self):
        """Start the primary and heartbeat timers in background threads."""
        if self._threads:
            logger.warning("Scheduler already started")
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._loop, args=(self.interval_seconds, self.tick, 'tick'),
                             daemon=True, name='refresh-timer'),
            threading.Thread(target=self._loop, args=(self.heartbeat_interval_seconds, self.heartbeat, 'heartbeat'),
                             daemon=True, name='refresh-heartbeat'),
        ]
        for thread in self._threads:
            thread.start()
        logger.info(f"Refresh scheduler started (interval {self.interval_seconds}s, "
                    f"heartbeat {self.heartbeat_interval_seconds}s)")

    def stop(self, timeout: Optional[float] = 5):
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("Refresh scheduler stopped")

    def wait(self):
        """Block until ``stop()`` is called."""
        self._stop_event.wait()

    def status(self) -> Dict[str, Any]:
        with self._lock:
            now = self._clock()
            return {
                'state': self.state.value,
                'last_outcome': self.last_outcome.value if self.last_outcome else None,
                'generation': self._generation,
                'running_for_seconds': now - self._cycle_started_at if self._cycle_started_at is not None else None,
                'seconds_since_success': now - self.last_success_at if self.last_success_at is not None else None,
                'skipped_ticks': self._skipped_ticks,
                'cycles_started': self.cycles_started,
                'cycles_succeeded': self.cycles_succeeded,
                'cycles_failed': self.cycles_failed,
                'force_resets': self.force_resets,
                'last_error': self.last_error,
                'last_result': self.last_result,
            }
