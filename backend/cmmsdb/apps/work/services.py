from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from cmmsdb.utils.identifiers import generate_wo_number

from . import models


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


ALLOWED_TRANSITIONS = {
    models.WorkOrderStatusEnum.NEW: {
        models.WorkOrderStatusEnum.ASSIGNED,
        models.WorkOrderStatusEnum.IN_PROGRESS,
    },
    models.WorkOrderStatusEnum.ASSIGNED: {
        models.WorkOrderStatusEnum.IN_PROGRESS,
    },
    models.WorkOrderStatusEnum.IN_PROGRESS: {
        models.WorkOrderStatusEnum.COMPLETED,
    },
    models.WorkOrderStatusEnum.COMPLETED: {
        models.WorkOrderStatusEnum.VERIFIED,
        models.WorkOrderStatusEnum.CLOSED,
    },
    models.WorkOrderStatusEnum.VERIFIED: {
        models.WorkOrderStatusEnum.CLOSED,
    },
    models.WorkOrderStatusEnum.CLOSED: set(),
}

WO_NUMBER_PREFIX = {
    models.WorkOrderTypeEnum.CORRECTIVE: "WO",
    models.WorkOrderTypeEnum.PREVENTIVE: "PM",
    models.WorkOrderTypeEnum.EMERGENCY: "EM",
}


def create_work_order(
    db: Session,
    *,
    warehouse_id: str,
    description: str,
    type: models.WorkOrderTypeEnum = models.WorkOrderTypeEnum.CORRECTIVE,
    priority: models.WorkOrderPriorityEnum = models.WorkOrderPriorityEnum.MEDIUM,
    assigned_to: Optional[str] = None,
    requested_by: Optional[str] = None,
    due_date: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> models.WorkOrder:
    """
    Create a work order on behalf of the host application.

    The engine itself only creates preventive work orders (through the PM
    generator); this helper exists so callers and tests get numbering and
    timestamps consistent with generated work.
    """
    now = now or _utcnow()
    status = (
        models.WorkOrderStatusEnum.ASSIGNED
        if assigned_to
        else models.WorkOrderStatusEnum.NEW
    )
    work_order = models.WorkOrder(
        wo_number=generate_wo_number(WO_NUMBER_PREFIX[type], now),
        type=type,
        priority=priority,
        status=status,
        description=description,
        warehouse_id=warehouse_id,
        assigned_to=assigned_to,
        requested_by=requested_by,
        due_date=due_date,
        created_at=now,
        updated_at=now,
    )
    db.add(work_order)
    db.flush()
    return work_order


def transition_status(
    db: Session,
    *,
    work_order: models.WorkOrder,
    new_status: models.WorkOrderStatusEnum,
    now: Optional[datetime] = None,
) -> models.WorkOrder:
    if work_order.status == new_status:
        return work_order
    allowed = ALLOWED_TRANSITIONS.get(work_order.status, set())
    if new_status not in allowed:
        raise ValueError(
            f"Invalid work order transition {work_order.status.value} -> {new_status.value}."
        )

    now = now or _utcnow()
    work_order.status = new_status
    work_order.updated_at = now
    if new_status == models.WorkOrderStatusEnum.COMPLETED:
        work_order.completed_at = now
    db.add(work_order)
    db.flush()
    return work_order
