# backend/cmmsdb/apps/maintenance_program/router.py

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from cmmsdb.database import get_read_db

from . import schemas, service


router = APIRouter(prefix="/pm", tags=["maintenance_program"])


@router.get("/templates/{template_id}/schedule", response_model=schemas.PmScheduleRead)
def get_template_schedule(
    template_id: str,
    db: Session = Depends(get_read_db),
):
    template = service.get_template(db, template_id)
    if not template:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="PM template not found")
    return service.get_pm_schedule(db, template)


@router.get("/compliance", response_model=schemas.PmComplianceSummary)
def get_compliance(
    warehouse_id: str,
    db: Session = Depends(get_read_db),
):
    return service.compliance_summary(db, warehouse_id=warehouse_id)
