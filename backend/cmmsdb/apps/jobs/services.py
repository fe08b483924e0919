"""
Job queue runner.

Jobs are rows in the `jobs` table. Any number of workers may drain the queue
at the same time: a job is only dispatched by the worker whose conditional
`UPDATE ... WHERE status = 'pending'` changed the row, so a due job is never
processed twice by racing workers. The result is written back the same way,
guarded on the claim, so a worker whose job was recovered as stale while it
ran discards its result instead of overwriting the row.

Handlers are plain callables `handler(db, job, now)` registered in
`cmmsdb.apps.jobs.registry`. A handler may return follow-up `JobRequest`s;
they are enqueued in the same transaction that marks the job completed,
which is how PM generation keeps its self-rescheduling chain alive.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator, List, Mapping, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cmmsdb.utils.identifiers import generate_uuid7

from . import models

logger = logging.getLogger(__name__)

JOB_MAX_ATTEMPTS = int(os.getenv("JOB_MAX_ATTEMPTS", "3"))
JOB_BACKOFF_BASE_SEC = int(os.getenv("JOB_BACKOFF_BASE_SEC", "30"))
JOB_BACKOFF_MAX_SEC = int(os.getenv("JOB_BACKOFF_MAX_SEC", "3600"))
JOB_STALE_AFTER_SEC = int(os.getenv("JOB_STALE_AFTER_SEC", "900"))
WORKER_BATCH_SIZE = int(os.getenv("WORKER_BATCH_SIZE", "25"))

ESCALATION_CHECK_DEDUPE_KEY = "escalation_check"
PM_SCAN_DEDUPE_KEY = "pm_generation:scan"

MAX_ERROR_LENGTH = 2000


class JobDataError(Exception):
    """The job cannot succeed on retry (missing record, malformed payload)."""


class UnknownJobTypeError(JobDataError):
    pass


@dataclass(frozen=True)
class JobRequest:
    """A follow-up job returned by a handler."""

    job_type: models.JobTypeEnum
    payload: dict = field(default_factory=dict)
    scheduled_at: Optional[datetime] = None
    dedupe_key: Optional[str] = None
    max_attempts: Optional[int] = None


@dataclass
class JobOutcome:
    job_id: str
    job_type: models.JobTypeEnum
    status: models.JobStatusEnum
    attempts: int
    error: Optional[str] = None
    follow_up_job_ids: List[str] = field(default_factory=list)
    claim_lost: bool = False


JobHandler = Callable[[Session, models.Job, datetime], Optional[Sequence[JobRequest]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def pm_generation_dedupe_key(template_id: str) -> str:
    return f"pm_generation:{template_id}"


def compute_backoff(attempts: int) -> timedelta:
    delay = min(JOB_BACKOFF_BASE_SEC * (2 ** attempts), JOB_BACKOFF_MAX_SEC)
    return timedelta(seconds=delay)


def _format_error(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"[:MAX_ERROR_LENGTH]


# ---------------------------------------------------------------------------
# Enqueue
# ---------------------------------------------------------------------------


def find_live_job(db: Session, dedupe_key: str) -> Optional[models.Job]:
    return (
        db.query(models.Job)
        .filter(
            models.Job.dedupe_key == dedupe_key,
            models.Job.status.in_(models.LIVE_STATUSES),
        )
        .first()
    )


def enqueue(
    db: Session,
    job_type: models.JobTypeEnum,
    payload: Optional[dict] = None,
    scheduled_at: Optional[datetime] = None,
    *,
    max_attempts: Optional[int] = None,
    dedupe_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    """
    Insert a pending job and return its id.

    With a `dedupe_key`, at most one live job exists per key: when one is
    already pending or processing its id is returned and nothing is inserted.
    The insert runs inside a SAVEPOINT so a concurrent enqueuer losing the
    unique-index race falls back to the winner's row without aborting the
    caller's transaction.
    """
    now = now or _utcnow()
    job_type = models.JobTypeEnum(job_type)
    if max_attempts is not None and max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    if dedupe_key:
        existing = find_live_job(db, dedupe_key)
        if existing:
            return existing.id

    job = models.Job(
        id=generate_uuid7(now),
        job_type=job_type,
        payload=dict(payload or {}),
        status=models.JobStatusEnum.PENDING,
        attempts=0,
        max_attempts=max_attempts or JOB_MAX_ATTEMPTS,
        scheduled_at=scheduled_at or now,
        dedupe_key=dedupe_key,
        created_at=now,
    )

    if not dedupe_key:
        db.add(job)
        db.flush()
        return job.id

    try:
        with db.begin_nested():
            db.add(job)
            db.flush()
    except IntegrityError:
        existing = find_live_job(db, dedupe_key)
        if existing is None:
            raise
        logger.info(
            "Job already queued for dedupe key",
            extra={"dedupe_key": dedupe_key, "job_id": existing.id},
        )
        return existing.id
    return job.id


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def recover_stale_jobs(
    db: Session,
    *,
    now: Optional[datetime] = None,
    stale_after_seconds: Optional[int] = None,
) -> int:
    """
    Treat jobs stuck in `processing` past the stale threshold as a failed
    attempt: they go back to `pending` with backoff, or to `failed` once
    their attempts are exhausted. The caller commits.
    """
    now = now or _utcnow()
    stale_after = JOB_STALE_AFTER_SEC if stale_after_seconds is None else stale_after_seconds
    cutoff = now - timedelta(seconds=stale_after)

    stale_jobs = (
        db.query(models.Job)
        .populate_existing()
        .filter(
            models.Job.status == models.JobStatusEnum.PROCESSING,
            models.Job.claimed_at.is_not(None),
            models.Job.claimed_at < cutoff,
        )
        .order_by(models.Job.claimed_at.asc(), models.Job.id.asc())
        .all()
    )

    recovered = 0
    for job in stale_jobs:
        attempts = job.attempts + 1
        error = f"Job exceeded the {stale_after}s processing limit without completing."
        if attempts < job.max_attempts:
            values = {
                "status": models.JobStatusEnum.PENDING,
                "attempts": attempts,
                "scheduled_at": now + compute_backoff(attempts),
                "claimed_at": None,
                "error": error,
            }
        else:
            values = {
                "status": models.JobStatusEnum.FAILED,
                "attempts": attempts,
                "failed_at": now,
                "error": error,
                "dedupe_key": None,
            }
        result = db.execute(
            update(models.Job)
            .where(
                models.Job.id == job.id,
                models.Job.status == models.JobStatusEnum.PROCESSING,
                models.Job.attempts == job.attempts,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            continue
        recovered += 1
        log = logger.error if values["status"] == models.JobStatusEnum.FAILED else logger.warning
        log(
            "Recovered stale job",
            extra={
                "job_id": job.id,
                "job_type": job.job_type.value,
                "attempts": attempts,
                "status": values["status"].value,
            },
        )
    db.flush()
    return recovered


def _select_due_jobs(db: Session, *, now: datetime, limit: int) -> List[str]:
    rows = (
        db.query(models.Job.id)
        .filter(
            models.Job.status == models.JobStatusEnum.PENDING,
            models.Job.scheduled_at <= now,
        )
        .order_by(models.Job.scheduled_at.asc(), models.Job.id.asc())
        .limit(limit)
        .all()
    )
    return [row.id for row in rows]


def _claim_job(db: Session, *, job_id: str, now: datetime) -> bool:
    result = db.execute(
        update(models.Job)
        .where(
            models.Job.id == job_id,
            models.Job.status == models.JobStatusEnum.PENDING,
        )
        .values(status=models.JobStatusEnum.PROCESSING, claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _finish_claimed_job(
    db: Session,
    *,
    job_id: str,
    claimed_at: datetime,
    claimed_attempts: int,
    values: dict,
) -> bool:
    """
    Write a job's result only while this worker still holds its claim.

    Stale recovery may have moved the row on (retry, terminal failure, or a
    fresh claim by another worker); the row is left as it is then.
    """
    result = db.execute(
        update(models.Job)
        .where(
            models.Job.id == job_id,
            models.Job.status == models.JobStatusEnum.PROCESSING,
            models.Job.claimed_at == claimed_at,
            models.Job.attempts == claimed_attempts,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    job = db.get(models.Job, job_id)
    if job is not None:
        db.expire(job)
    return result.rowcount == 1


def _claim_lost(db: Session, *, job_id: str, error: Optional[str] = None) -> JobOutcome:
    db.rollback()
    job = db.get(models.Job, job_id, populate_existing=True)
    logger.warning(
        "Job claim lost before its result was recorded; result discarded",
        extra={
            "job_id": job.id,
            "job_type": job.job_type.value,
            "status": job.status.value,
            "attempts": job.attempts,
        },
    )
    return JobOutcome(
        job_id=job.id,
        job_type=job.job_type,
        status=job.status,
        attempts=job.attempts,
        error=error,
        claim_lost=True,
    )


def _record_failure(
    db: Session,
    *,
    job_id: str,
    now: datetime,
    claimed_at: datetime,
    claimed_attempts: int,
    error: str,
    retryable: bool,
) -> JobOutcome:
    job = db.get(models.Job, job_id, populate_existing=True)
    job_type = job.job_type
    attempts = claimed_attempts + 1
    if retryable and attempts < job.max_attempts:
        values = {
            "status": models.JobStatusEnum.PENDING,
            "attempts": attempts,
            "scheduled_at": now + compute_backoff(attempts),
            "claimed_at": None,
            "error": error,
        }
    else:
        values = {
            "status": models.JobStatusEnum.FAILED,
            "attempts": attempts,
            "failed_at": now,
            "error": error,
            "dedupe_key": None,
        }

    if not _finish_claimed_job(
        db,
        job_id=job_id,
        claimed_at=claimed_at,
        claimed_attempts=claimed_attempts,
        values=values,
    ):
        return _claim_lost(db, job_id=job_id, error=error)
    db.commit()

    if values["status"] == models.JobStatusEnum.PENDING:
        logger.warning(
            "Job failed; retry scheduled",
            extra={
                "job_id": job_id,
                "job_type": job_type.value,
                "attempts": attempts,
                "scheduled_at": values["scheduled_at"].isoformat(),
            },
        )
    else:
        logger.error(
            "Job failed permanently",
            extra={
                "job_id": job_id,
                "job_type": job_type.value,
                "attempts": attempts,
                "error": error,
            },
            exc_info=True,
        )
    return JobOutcome(
        job_id=job_id,
        job_type=job_type,
        status=values["status"],
        attempts=attempts,
        error=error,
    )


def _dispatch(
    db: Session,
    *,
    job_id: str,
    now: datetime,
    handlers: Mapping[models.JobTypeEnum, JobHandler],
) -> JobOutcome:
    job = db.get(models.Job, job_id, populate_existing=True)
    job_type = job.job_type
    claimed_at = job.claimed_at
    claimed_attempts = job.attempts
    try:
        handler = handlers.get(job_type)
        if handler is None:
            raise UnknownJobTypeError(f"No handler registered for job type {job_type.value!r}.")
        follow_ups = handler(db, job, now) or ()

        # Completion releases the dedupe key before follow-ups reuse it.
        if not _finish_claimed_job(
            db,
            job_id=job_id,
            claimed_at=claimed_at,
            claimed_attempts=claimed_attempts,
            values={
                "status": models.JobStatusEnum.COMPLETED,
                "processed_at": now,
                "error": None,
                "dedupe_key": None,
            },
        ):
            return _claim_lost(db, job_id=job_id)

        follow_up_ids = [
            enqueue(
                db,
                request.job_type,
                request.payload,
                request.scheduled_at,
                max_attempts=request.max_attempts,
                dedupe_key=request.dedupe_key,
                now=now,
            )
            for request in follow_ups
        ]
        db.commit()
    except JobDataError as exc:
        db.rollback()
        return _record_failure(
            db,
            job_id=job_id,
            now=now,
            claimed_at=claimed_at,
            claimed_attempts=claimed_attempts,
            error=_format_error(exc),
            retryable=False,
        )
    except Exception as exc:
        db.rollback()
        logger.warning("Job handler raised", extra={"job_id": job_id}, exc_info=True)
        return _record_failure(
            db,
            job_id=job_id,
            now=now,
            claimed_at=claimed_at,
            claimed_attempts=claimed_attempts,
            error=_format_error(exc),
            retryable=True,
        )

    logger.info(
        "Job completed",
        extra={
            "job_id": job_id,
            "job_type": job_type.value,
            "follow_ups": len(follow_up_ids),
        },
    )
    return JobOutcome(
        job_id=job_id,
        job_type=job_type,
        status=models.JobStatusEnum.COMPLETED,
        attempts=claimed_attempts,
        follow_up_job_ids=follow_up_ids,
    )


def drain_due(
    db: Session,
    now: Optional[datetime] = None,
    batch_size: int = WORKER_BATCH_SIZE,
    *,
    handlers: Optional[Mapping[models.JobTypeEnum, JobHandler]] = None,
    stale_after_seconds: Optional[int] = None,
) -> Iterator[JobOutcome]:
    """
    Process up to `batch_size` due jobs, yielding one outcome per dispatched job.

    The generator is lazy: a job is only claimed when the next outcome is
    requested, so a worker that stops iterating finishes the current job and
    claims no further ones. Jobs another worker claimed first are skipped
    without dispatch. Handler exceptions never escape; they become retries or
    terminal failures on the job row.
    """
    now = now or _utcnow()
    if handlers is None:
        from .registry import JOB_HANDLERS

        handlers = JOB_HANDLERS

    recover_stale_jobs(db, now=now, stale_after_seconds=stale_after_seconds)
    db.commit()

    for job_id in _select_due_jobs(db, now=now, limit=batch_size):
        if not _claim_job(db, job_id=job_id, now=now):
            db.rollback()
            logger.debug("Job already claimed by another worker", extra={"job_id": job_id})
            continue
        db.commit()
        yield _dispatch(db, job_id=job_id, now=now, handlers=handlers)


def run_due_jobs(
    db: Session,
    *,
    now: Optional[datetime] = None,
    batch_size: int = WORKER_BATCH_SIZE,
) -> dict:
    """Drain one batch and summarise it, for cron-style entry points."""
    summary = {"processed": 0, "completed": 0, "retried": 0, "failed": 0, "lost": 0}
    for outcome in drain_due(db, now, batch_size):
        summary["processed"] += 1
        if outcome.claim_lost:
            summary["lost"] += 1
        elif outcome.status == models.JobStatusEnum.COMPLETED:
            summary["completed"] += 1
        elif outcome.status == models.JobStatusEnum.PENDING:
            summary["retried"] += 1
        else:
            summary["failed"] += 1
    return summary


# ---------------------------------------------------------------------------
# Management surface
# ---------------------------------------------------------------------------


def enqueue_scan(
    db: Session,
    *,
    warehouse_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Ask the workers for an immediate escalation check and PM sweep.

    Both requests are scoped to `warehouse_id` when given and deduplicated
    per scope against jobs already waiting, so calling this repeatedly never
    piles up scans.
    """
    now = now or _utcnow()
    payload = {"warehouse_id": warehouse_id} if warehouse_id else {}
    escalation_key = ESCALATION_CHECK_DEDUPE_KEY
    pm_key = PM_SCAN_DEDUPE_KEY
    if warehouse_id:
        escalation_key = f"{escalation_key}:{warehouse_id}"
        pm_key = f"{pm_key}:{warehouse_id}"
    escalation_job_id = enqueue(
        db,
        models.JobTypeEnum.ESCALATION_CHECK,
        dict(payload),
        dedupe_key=escalation_key,
        now=now,
    )
    pm_job_id = enqueue(
        db,
        models.JobTypeEnum.PM_GENERATION,
        dict(payload),
        dedupe_key=pm_key,
        now=now,
    )
    return {"escalation_job_id": escalation_job_id, "pm_job_id": pm_job_id}


def get_job_status(db: Session, job_id: str) -> Optional[models.Job]:
    return db.query(models.Job).filter(models.Job.id == job_id).first()


def list_failed_jobs(
    db: Session,
    *,
    job_type: Optional[models.JobTypeEnum] = None,
    limit: int = 100,
) -> List[models.Job]:
    query = db.query(models.Job).filter(models.Job.status == models.JobStatusEnum.FAILED)
    if job_type:
        query = query.filter(models.Job.job_type == job_type)
    return query.order_by(models.Job.failed_at.desc(), models.Job.id.desc()).limit(limit).all()
