from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from .models import JobStatusEnum, JobTypeEnum


class JobRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_type: JobTypeEnum
    payload: dict
    status: JobStatusEnum
    attempts: int
    max_attempts: int
    scheduled_at: datetime
    claimed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error: Optional[str] = None
    created_at: datetime


class ScanRequest(BaseModel):
    warehouse_id: Optional[str] = None


class ScanQueued(BaseModel):
    escalation_job_id: str
    pm_job_id: str
