from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from cmmsdb.database import get_read_db, get_write_db

from . import models, schemas, services


router = APIRouter(tags=["jobs"])


@router.post(
    "/scheduler/scan",
    response_model=schemas.ScanQueued,
    status_code=status.HTTP_202_ACCEPTED,
)
def trigger_scan(
    payload: Optional[schemas.ScanRequest] = None,
    db: Session = Depends(get_write_db),
):
    queued = services.enqueue_scan(db, warehouse_id=payload.warehouse_id if payload else None)
    db.commit()
    return queued


@router.get("/jobs/failed", response_model=List[schemas.JobRead])
def list_failed_jobs(
    job_type: Optional[models.JobTypeEnum] = None,
    limit: int = 100,
    db: Session = Depends(get_read_db),
):
    limit = max(1, min(limit, 500))
    return services.list_failed_jobs(db, job_type=job_type, limit=limit)


@router.get("/jobs/{job_id}", response_model=schemas.JobRead)
def get_job(
    job_id: str,
    db: Session = Depends(get_read_db),
):
    job = services.get_job_status(db, job_id)
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job
