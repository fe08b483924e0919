# backend/cmmsdb/apps/maintenance_program/schemas.py

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from .models import PmFrequencyEnum


class PmScheduleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    template_id: str
    frequency: PmFrequencyEnum
    active: bool
    next_due_at: datetime
    last_generated_at: Optional[datetime] = None
    last_completed_at: Optional[datetime] = None
    compliance_due_at: datetime
    compliance_status: str
    is_overdue: bool


class PmComplianceSummary(BaseModel):
    warehouse_id: str
    total_templates: int
    overdue_count: int
    due_count: int
    compliance_percentage: int
    next_due_at: Optional[datetime] = None
    last_completed_at: Optional[datetime] = None
