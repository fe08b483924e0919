# backend/cmmsdb/apps/work/schemas.py
#
# Read schemas for work orders surfaced by the escalation and PM endpoints.

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from .models import (
    ChecklistItemStatusEnum,
    WorkOrderPriorityEnum,
    WorkOrderStatusEnum,
    WorkOrderTypeEnum,
)


class ChecklistItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    component: str
    action: str
    status: ChecklistItemStatusEnum
    notes: Optional[str] = None
    sort_order: int


class WorkOrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    wo_number: str
    type: WorkOrderTypeEnum
    status: WorkOrderStatusEnum
    priority: WorkOrderPriorityEnum
    description: str
    warehouse_id: str
    assigned_to: Optional[str] = None
    requested_by: Optional[str] = None

    escalated: bool
    escalation_level: int

    pm_template_id: Optional[str] = None
    pm_due_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    checklist_items: List[ChecklistItemRead] = []
