"""Status reporter — periodic snapshot of every live session.

A daemon thread runs `schedule.run_pending()`; each fire logs the
registry snapshot and hands it to an optional callback.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

import schedule

from chatrelay.engine.registry import SessionRegistry

logger = logging.getLogger(__name__)

# Callback type: (snapshot) -> None
OnReport = Callable[[dict[str, dict[str, Any]]], None] | None

_UNITS = {
    "second": "seconds",
    "minute": "minutes",
    "hour": "hours",
}


def _parse_schedule(scheduler: schedule.Scheduler, expr: str) -> schedule.Job | None:
    """Parse "every N <unit>" into a schedule.Job.

    Supported formats:
        "every 30 seconds"
        "every 5 minutes"
        "every 1 hour"
    """
    expr = expr.strip().lower()
    if not expr.startswith("every "):
        return None

    parts = expr[6:].split()
    if len(parts) != 2:
        return None
    try:
        interval = int(parts[0])
    except ValueError:
        return None
    if interval <= 0:
        return None

    unit = parts[1].rstrip("s")  # normalize: "minutes" → "minute"
    sched_unit = _UNITS.get(unit)
    if sched_unit is None:
        return None
    return getattr(scheduler.every(interval), sched_unit)


class StatusReporter:
    """Logs registry snapshots on a schedule in a background thread.

    Usage::

        reporter = StatusReporter(registry, "every 60 seconds")
        reporter.start()
        # ...
        reporter.stop()
    """

    def __init__(
        self,
        registry: SessionRegistry,
        schedule_expr: str = "every 60 seconds",
        on_report: OnReport = None,
    ) -> None:
        """
        Raises:
            ValueError: the schedule expression is not understood.
        """
        self._registry = registry
        self._on_report = on_report
        self._scheduler = schedule.Scheduler()
        job = _parse_schedule(self._scheduler, schedule_expr)
        if job is None:
            raise ValueError(f"Invalid schedule expression: {schedule_expr}")
        job.do(self._fire)
        self._schedule_expr = schedule_expr
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    def _fire(self) -> None:
        """Take one snapshot and report it."""
        try:
            snapshot = self._registry.snapshot()
            if snapshot:
                for channel_id, info in snapshot.items():
                    logger.info(
                        "Session %s: %s, %d subscriber(s), feed=%s",
                        channel_id, info["state"], info["subscribers"], info["feed"],
                    )
            else:
                logger.info("No active sessions")
            if self._on_report:
                self._on_report(snapshot)
        except Exception:
            logger.exception("Status report failed")

    def start(self, check_interval: float = 1.0) -> None:
        """Start the background reporter thread (daemon)."""
        if self._thread and self._thread.is_alive():
            return  # Already running

        self._stop_event.clear()

        def _loop():
            while not self._stop_event.is_set():
                self._scheduler.run_pending()
                self._stop_event.wait(timeout=check_interval)

        self._thread = threading.Thread(target=_loop, daemon=True, name="status-reporter")
        self._thread.start()
        logger.info("Status reporter started (%s)", self._schedule_expr)

    def stop(self) -> None:
        """Stop the background reporter thread."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Status reporter stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
