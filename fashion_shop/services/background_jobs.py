"""
Periodic sweeps for bank transfer deadlines.

Each sweep is an idempotent scan guarded by the persisted order status, so a
restart, an overlapping manual run, or a concurrent customer cancellation can
never credit the same order twice.
"""
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from fashion_shop.config import Config
from fashion_shop.models import utcnow
from fashion_shop.observability.metrics import increment_counter, observe_latency, set_gauge
from fashion_shop.services.order_service import OrderService

logger = logging.getLogger(__name__)

SweepTask = Callable[[Session], int]


def expire_overdue_orders(session: Session) -> int:
    return OrderService(session).expire_overdue_orders()


def send_payment_reminders(session: Session) -> int:
    return OrderService(session).send_payment_reminders()


class PeriodicJob:
    """Runs one sweep on a fixed interval in a daemon thread, each pass with a fresh session."""

    def __init__(self, name: str, interval_seconds: int, task: SweepTask, session_factory: Callable[[], Session]):
        self.name = name
        self.interval_seconds = interval_seconds
        self.task = task
        self.session_factory = session_factory
        self.last_run_at: Optional[datetime] = None
        self.last_result: Optional[int] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> int:
        started = time.perf_counter()
        session = self.session_factory()
        try:
            result = self.task(session)
        finally:
            session.close()
        observe_latency("background_job_duration_ms", (time.perf_counter() - started) * 1000, labels={"job": self.name})
        increment_counter("background_job_runs_total", labels={"job": self.name})
        set_gauge("background_job_last_result", result, labels={"job": self.name})
        self.last_run_at = utcnow()
        self.last_result = result
        return result

    def start(self) -> None:
        if self.running:
            logger.warning("Job %s is already running", self.name)
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"job-{self.name}", daemon=True)
        self._thread.start()
        logger.info("Started job %s (interval: %ss)", self.name, self.interval_seconds)

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Stopped job %s", self.name)

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Job %s failed", self.name)
                increment_counter("background_job_failures_total", labels={"job": self.name})
            self._stop.wait(self.interval_seconds)

    def status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "running": self.running,
            "last_run_at": self.last_run_at,
            "last_result": self.last_result,
        }


class BackgroundJobs:
    def __init__(self, session_factory: Callable[[], Session]):
        self.jobs: Dict[str, PeriodicJob] = {
            "expire-orders": PeriodicJob(
                "expire-orders", Config.ORDER_EXPIRY_SWEEP_SECONDS, expire_overdue_orders, session_factory
            ),
            "payment-reminders": PeriodicJob(
                "payment-reminders", Config.PAYMENT_REMINDER_SWEEP_SECONDS, send_payment_reminders, session_factory
            ),
        }

    def start(self) -> None:
        for job in self.jobs.values():
            job.start()

    def stop(self) -> None:
        for job in self.jobs.values():
            job.stop()

    def run(self, name: str) -> Optional[int]:
        """Trigger one sweep synchronously; None for an unknown job."""
        job = self.jobs.get(name)
        if job is None:
            return None
        return job.run_once()

    def status(self) -> Dict[str, Any]:
        return {name: job.status() for name, job in self.jobs.items()}
