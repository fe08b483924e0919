from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from cmmsdb.apps.work.models import WorkOrderPriorityEnum, WorkOrderTypeEnum

from .models import EscalationActionEnum


class EscalationRuleBase(BaseModel):
    work_order_type: WorkOrderTypeEnum
    priority: WorkOrderPriorityEnum
    timeout_hours: int = Field(..., ge=1)
    escalation_action: EscalationActionEnum = EscalationActionEnum.NOTIFY_SUPERVISOR
    escalate_to: Optional[str] = None
    warehouse_id: Optional[str] = None
    active: bool = True


class EscalationRuleCreate(EscalationRuleBase):
    pass


class EscalationRuleUpdate(BaseModel):
    timeout_hours: Optional[int] = Field(None, ge=1)
    escalation_action: Optional[EscalationActionEnum] = None
    escalate_to: Optional[str] = None
    active: Optional[bool] = None


class EscalationRuleRead(EscalationRuleBase):
    model_config = ConfigDict(from_attributes=True)

    id: str
    created_at: datetime


class EscalationHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    work_order_id: str
    rule_id: Optional[str] = None
    escalation_level: int
    escalated_from: Optional[str] = None
    escalated_to: Optional[str] = None
    action: str
    reason: Optional[str] = None
    escalated_at: datetime


class ManualEscalationRequest(BaseModel):
    escalate_to_user_id: str
    reason: str = Field(..., min_length=1)
    escalated_by_user_id: Optional[str] = None


class EscalationActionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    work_order_id: str
    wo_number: str
    rule_id: Optional[str] = None
    escalation_level: int
    escalated_to: str
    escalated_from: Optional[str] = None
    action: str
    reason: str
    escalated_at: datetime
    notification_job_id: Optional[str] = None


class EscalationStats(BaseModel):
    total_escalated: int
    escalated_today: int
    by_level: Dict[int, int]
    by_priority: Dict[str, int]
