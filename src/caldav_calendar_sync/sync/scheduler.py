"""
Single-flight guard and the periodic sync timer.
"""

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

import schedule

logger = logging.getLogger(__name__)

# How often the timer thread checks for due jobs.
POLL_SECONDS = 1.0


class SingleFlight:
    """Non-blocking mutual exclusion: a second caller skips instead of waiting."""

    def __init__(self):
        self._lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def run(self, fn: Callable):
        """Run ``fn`` if nothing else holds the guard.

        Returns ``(True, result)``, or ``(False, None)`` when busy.
        """
        if not self._lock.acquire(blocking=False):
            return False, None
        try:
            return True, fn()
        finally:
            self._lock.release()


class SyncScheduler:
    """Runs a reconciliation pass whenever the cache is older than the interval."""

    def __init__(
        self,
        reconciler,
        cache,
        interval_minutes: int,
        clock: Callable[[], float] = time.time,
        poll_seconds: float = POLL_SECONDS,
        executor=None,
    ):
        self.reconciler = reconciler
        self.cache = cache
        self.interval_minutes = interval_minutes
        self.clock = clock
        self.poll_seconds = poll_seconds
        self._scheduler = schedule.Scheduler()
        self._job = None
        self._thread: threading.Thread | None = None
        self._owns_executor = executor is None
        self._executor = executor
        self._pending_trigger = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def is_stale(self) -> bool:
        try:
            last = self.cache.last_synced_at()
        except Exception as e:
            logger.warning(f"Could not read last sync time: {e}")
            return True
        if last is None:
            return True
        return self.clock() - last >= self.interval_minutes * 60

    def ensure_fresh(self):
        """Run a pass if the cache has never synced or the interval has elapsed."""
        if not self.is_stale():
            logger.debug("Cache is fresh; no sync needed")
            return None
        return self.reconciler.force_sync()

    def _tick(self):
        try:
            self.ensure_fresh()
        except Exception as e:
            logger.error(f"Scheduled sync failed: {e}", exc_info=True)

    def _loop(self):
        while not self._stop_event.is_set():
            self._scheduler.run_pending()
            self._stop_event.wait(self.poll_seconds)

    def start(self):
        """Check freshness once, then keep checking every interval on a background thread.

        The first check runs without holding the lock; a stop() during it
        keeps the timer from starting.
        """
        if self.running:
            return
        self._stop_event.clear()
        self._tick()
        with self._lock:
            if self.running or self._stop_event.is_set():
                return
            self._job = self._scheduler.every(self.interval_minutes).minutes.do(self._tick)
            self._thread = threading.Thread(
                target=self._loop, name="caldav-sync-timer", daemon=True
            )
            self._thread.start()
        logger.info(f"Sync timer started (every {self.interval_minutes} minute(s))")

    def stop(self):
        """Cancel the timer, wait for the background thread and release an owned executor."""
        with self._lock:
            if self._job is not None:
                self._scheduler.cancel_job(self._job)
                self._job = None
            self._stop_event.set()
            thread, self._thread = self._thread, None
            executor = None
            if self._owns_executor:
                executor, self._executor = self._executor, None
        if thread is not None:
            thread.join()
            logger.info("Sync timer stopped")
        if executor is not None:
            executor.shutdown(wait=True)

    def trigger(self) -> bool:
        """Queue a freshness check in the background unless a pass is already running."""
        if self.reconciler.guard.busy:
            return False
        if self._pending_trigger is not None and not self._pending_trigger.done():
            return False
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="caldav-sync-trigger"
                )
            self._pending_trigger = self._executor.submit(self._tick)
        return True
