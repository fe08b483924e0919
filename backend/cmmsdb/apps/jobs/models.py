from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import JSON, Column, DateTime, Enum as SAEnum, Index, Integer, String, Text

from ...database import Base
from ...utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobTypeEnum(str, Enum):
    ESCALATION_CHECK = "escalation_check"
    PM_GENERATION = "pm_generation"
    NOTIFICATION_SEND = "notification_send"


class JobStatusEnum(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


LIVE_STATUSES = (JobStatusEnum.PENDING, JobStatusEnum.PROCESSING)
TERMINAL_STATUSES = (JobStatusEnum.COMPLETED, JobStatusEnum.FAILED)


class Job(Base):
    """
    Durable unit of deferred, retryable background work.

    Lifecycle: pending -> processing -> completed | pending (retry) | failed.
    Terminal rows are never modified again.

    `dedupe_key` is a live-singleton key: it is set while the job is pending
    or processing and cleared when the job reaches a terminal status, so the
    unique index allows at most one live job per key while leaving history
    rows untouched.
    """

    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_status_scheduled", "status", "scheduled_at", "id"),
        Index("ix_jobs_status_claimed", "status", "claimed_at"),
        Index("ix_jobs_type_created", "job_type", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    job_type = Column(
        SAEnum(JobTypeEnum, name="job_type_enum", native_enum=False),
        nullable=False,
    )
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(
        SAEnum(JobStatusEnum, name="job_status_enum", native_enum=False),
        nullable=False,
        default=JobStatusEnum.PENDING,
    )
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)

    scheduled_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)

    dedupe_key = Column(String(255), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<Job id={self.id} type={self.job_type} status={self.status} attempts={self.attempts}>"
