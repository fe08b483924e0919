"""Scheduler entry point.

`python -m cmmsdb.jobs.scheduler_runner` runs the periodic scheduler with an
in-process worker until interrupted. `--tick` enqueues the periodic scans
once, which is safe to call from cron alongside separate worker processes.
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import threading

from cmmsdb.database import WriteSessionLocal
from cmmsdb.apps.scheduler.orchestrator import SchedulerOrchestrator

logger = logging.getLogger(__name__)


def run() -> dict:
    orchestrator = SchedulerOrchestrator(WriteSessionLocal, run_worker=False)
    return orchestrator.tick() or {}


def run_forever(run_worker: bool = True) -> None:
    orchestrator = SchedulerOrchestrator(WriteSessionLocal, run_worker=run_worker)
    stopped = threading.Event()

    def _handle_signal(signum, frame):
        logger.info("Received signal %s; stopping scheduler", signum)
        stopped.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    orchestrator.start()
    stopped.wait()
    orchestrator.stop(timeout=60)


if __name__ == "__main__":
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    parser = argparse.ArgumentParser(description="Maintenance scheduler.")
    parser.add_argument("--tick", action="store_true", help="enqueue the periodic scans once and exit")
    parser.add_argument("--no-worker", action="store_true", help="do not drain jobs in this process")
    args = parser.parse_args()
    if args.tick:
        result = run()
        print("Scheduler tick completed:", result)
    else:
        run_forever(run_worker=not args.no_worker)
