"""Job queue worker.

Run as a long-lived process (systemd / container) to drain due jobs, or with
`--once` from cron to process a single batch. Any number of workers may run
against the same database.
"""

from __future__ import annotations

import argparse
import logging
import os
import time
from datetime import datetime, timezone

from cmmsdb.database import WriteSessionLocal
from cmmsdb.apps.jobs import services as job_services

logger = logging.getLogger(__name__)

POLL_INTERVAL_SEC = int(os.getenv("WORKER_POLL_INTERVAL_SEC", "10"))


def run() -> dict:
    db = WriteSessionLocal()
    try:
        return job_services.run_due_jobs(db, now=datetime.now(timezone.utc))
    finally:
        db.close()


def run_forever() -> None:
    while True:
        try:
            summary = run()
        except Exception:
            logger.exception("Worker iteration failed")
            summary = {"processed": 0}
        if summary["processed"] == 0:
            time.sleep(POLL_INTERVAL_SEC)


if __name__ == "__main__":
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    parser = argparse.ArgumentParser(description="Drain due maintenance jobs.")
    parser.add_argument("--once", action="store_true", help="process one batch and exit")
    args = parser.parse_args()
    if args.once:
        result = run()
        print("Job worker completed:", result)
    else:
        run_forever()
