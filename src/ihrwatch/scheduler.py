"""Background refresh jobs for ihrwatch.

Jobs are registered on the process wide `schedule` registry, tagged with
their name so they can be removed again, and run by SchedulerThread.
"""

import threading
import time
import logging
from typing import Callable, Optional

import schedule

logger = logging.getLogger(__name__)

VALID_UNITS = ['seconds', 'minutes', 'hours', 'days', 'weeks']
MAX_IDLE_SLEEP = 300  # seconds


def schedule_every(interval: int, unit: str, job: Callable, job_name: str = ""):
    """Run job every `interval` `unit`s, tagged with job_name.

    A failing run is logged and the job stays scheduled.
    """
    if unit not in VALID_UNITS:
        raise ValueError(f"Invalid unit '{unit}'. Must be one of: {VALID_UNITS}")

    name = job_name or job.__name__
    logger.info("Scheduling job '%s' to run every %d %s", name, interval, unit)

    def wrapped_job():
        try:
            logger.debug("Running scheduled job: %s", name)
            job()
            logger.debug("Completed scheduled job: %s", name)
        except Exception as e:
            logger.error("Error in scheduled job '%s': %s", name, e, exc_info=True)

    wrapped_job.__name__ = name
    return getattr(schedule.every(interval), unit).do(wrapped_job).tag(name)


def clear_jobs(tag: Optional[str] = None):
    """Remove the jobs tagged `tag`, or every job when tag is None"""
    logger.info("Clearing scheduled jobs%s", f" tagged '{tag}'" if tag else "")
    schedule.clear(tag)


def get_jobs():
    """Currently registered jobs"""
    return schedule.get_jobs()


class SchedulerThread:
    """Daemon thread that runs pending jobs until stop() is called."""

    def __init__(self):
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._running = False
        self._lock = threading.Lock()

    def start(self):
        """Start the scheduler thread"""
        with self._lock:
            if self._running:
                logger.warning("Scheduler thread is already running")
                return

            self._stop_event.clear()
            self._running = True
            self._thread = threading.Thread(target=self._run, daemon=True, name="SchedulerThread")
            self._thread.start()
            logger.info("Scheduler thread started")

    def stop(self):
        """Stop the scheduler thread"""
        with self._lock:
            if not self._running:
                logger.warning("Scheduler thread is not running")
                return

            logger.info("Stopping scheduler thread...")
            self._stop_event.set()
            self._running = False

        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
            if self._thread.is_alive():
                logger.warning("Scheduler thread did not stop gracefully")
            else:
                logger.info("Scheduler thread stopped")

    def _run(self):
        logger.debug("Scheduler thread loop started")
        while not self._stop_event.is_set():
            try:
                schedule.run_pending()
                n = schedule.idle_seconds()
                if n is None:
                    n = 10
                if n > 0:
                    self._stop_event.wait(min(n, MAX_IDLE_SLEEP))
            except Exception as e:
                logger.error("Error in scheduler thread: %s", e, exc_info=True)
                time.sleep(1)

        logger.debug("Scheduler thread loop ended")

    def is_running(self) -> bool:
        """Check if the scheduler thread is running"""
        return self._running
