"""
Periodic scheduler for the job queue.

The orchestrator owns no business logic. On every tick it makes sure the
queue holds one live `escalation_check` job and one live `pm_generation`
chain per active template; everything else happens in job handlers. It can
optionally run an in-process worker that drains the queue between ticks.

Several orchestrators may run against the same database: enqueues are
deduplicated by the jobs' live-singleton keys and claims are conditional
updates, so extra instances only add throughput.
"""

from __future__ import annotations

import logging
import os
import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from cmmsdb.apps.jobs import models as job_models
from cmmsdb.apps.jobs import services as job_services
from cmmsdb.apps.maintenance_program import service as pm_service

logger = logging.getLogger(__name__)

SCHEDULER_INTERVAL_SEC = int(os.getenv("SCHEDULER_INTERVAL_SEC", "1800"))
WORKER_POLL_INTERVAL_SEC = int(os.getenv("WORKER_POLL_INTERVAL_SEC", "10"))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SchedulerOrchestrator:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        interval_seconds: int = SCHEDULER_INTERVAL_SEC,
        clock: Callable[[], datetime] = _utcnow,
        run_worker: bool = True,
        batch_size: int = job_services.WORKER_BATCH_SIZE,
        poll_interval_seconds: int = WORKER_POLL_INTERVAL_SEC,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.run_worker = run_worker
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        with self._lock:
            return any(thread.is_alive() for thread in self._threads)

    def start(self) -> bool:
        """Start the tick loop (and worker). Returns False if already running."""
        with self._lock:
            if any(thread.is_alive() for thread in self._threads):
                return False
            self._stop_event.clear()
            self._threads = [
                threading.Thread(target=self._scheduler_loop, name="cmms-scheduler", daemon=True)
            ]
            if self.run_worker:
                self._threads.append(
                    threading.Thread(target=self._worker_loop, name="cmms-worker", daemon=True)
                )
            for thread in self._threads:
                thread.start()
        logger.info(
            "Scheduler started",
            extra={"interval_seconds": self.interval_seconds, "run_worker": self.run_worker},
        )
        return True

    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Signal the loops to stop and wait for them. A worker in the middle of
        a job finishes it first. Returns False if nothing was running.
        """
        with self._lock:
            threads = list(self._threads)
            if not any(thread.is_alive() for thread in threads):
                return False
            self._stop_event.set()
        for thread in threads:
            thread.join(timeout)
        with self._lock:
            self._threads = [thread for thread in threads if thread.is_alive()]
            stopped = not self._threads
        if stopped:
            logger.info("Scheduler stopped")
        else:
            logger.warning("Scheduler threads still running after stop timeout", extra={"timeout": timeout})
        return stopped

    # ------------------------------------------------------------------
    # Work
    # ------------------------------------------------------------------

    def tick(self, now: Optional[datetime] = None) -> Optional[dict]:
        """
        Enqueue the periodic scans. Failures are logged and left for the next
        tick; nothing is raised to the caller.
        """
        now = now or self.clock()
        try:
            db = self.session_factory()
        except Exception:
            logger.exception("Scheduler tick could not open a session")
            return None
        try:
            recovered = job_services.recover_stale_jobs(db, now=now)
            escalation_job_id = job_services.enqueue(
                db,
                job_models.JobTypeEnum.ESCALATION_CHECK,
                {},
                dedupe_key=job_services.ESCALATION_CHECK_DEDUPE_KEY,
                now=now,
            )
            pm_job_ids = [
                job_services.enqueue(
                    db,
                    request.job_type,
                    request.payload,
                    request.scheduled_at,
                    dedupe_key=request.dedupe_key,
                    now=now,
                )
                for request in pm_service.bootstrap_pm_chains(db, now=now)
            ]
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Scheduler tick failed; will retry on next tick")
            return None
        finally:
            db.close()

        summary = {
            "recovered": recovered,
            "escalation_job_id": escalation_job_id,
            "pm_job_ids": pm_job_ids,
        }
        logger.info(
            "Scheduler tick",
            extra={"recovered": recovered, "pm_chains": len(pm_job_ids)},
        )
        return summary

    def run_worker_once(self) -> int:
        """Drain one batch; stops claiming as soon as stop() is requested."""
        processed = 0
        try:
            db = self.session_factory()
        except Exception:
            logger.exception("Worker could not open a session")
            return 0
        try:
            for _outcome in job_services.drain_due(db, self.clock(), self.batch_size):
                processed += 1
                if self._stop_event.is_set():
                    break
        except Exception:
            db.rollback()
            logger.exception("Worker batch failed")
        finally:
            db.close()
        return processed

    def _scheduler_loop(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            if self._stop_event.wait(self.interval_seconds):
                break

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            processed = self.run_worker_once()
            if self._stop_event.is_set():
                break
            if processed == 0:
                self._stop_event.wait(self.poll_interval_seconds)
