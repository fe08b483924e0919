from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from cmmsdb.apps.work import models as work_models
from cmmsdb.apps.work import schemas as work_schemas
from cmmsdb.database import get_read_db, get_write_db

from . import schemas, services


router = APIRouter(tags=["escalations"])


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


@router.get("/escalations/active", response_model=List[work_schemas.WorkOrderRead])
def list_active_escalations(
    warehouse_id: Optional[str] = None,
    db: Session = Depends(get_read_db),
):
    return services.list_active_escalations(db, warehouse_id=warehouse_id)


@router.get("/escalations/stats", response_model=schemas.EscalationStats)
def get_escalation_stats(
    warehouse_id: Optional[str] = None,
    db: Session = Depends(get_read_db),
):
    return services.get_escalation_stats(db, warehouse_id=warehouse_id)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@router.get("/escalations/rules", response_model=List[schemas.EscalationRuleRead])
def list_rules(
    warehouse_id: Optional[str] = None,
    active_only: bool = False,
    db: Session = Depends(get_read_db),
):
    return services.list_rules(db, warehouse_id=warehouse_id, active_only=active_only)


@router.post(
    "/escalations/rules",
    response_model=schemas.EscalationRuleRead,
    status_code=status.HTTP_201_CREATED,
)
def create_rule(
    payload: schemas.EscalationRuleCreate,
    db: Session = Depends(get_write_db),
):
    try:
        rule = services.create_rule(db, **payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    db.commit()
    db.refresh(rule)
    return rule


@router.patch("/escalations/rules/{rule_id}", response_model=schemas.EscalationRuleRead)
def update_rule(
    rule_id: str,
    payload: schemas.EscalationRuleUpdate,
    db: Session = Depends(get_write_db),
):
    rule = services.get_rule(db, rule_id)
    if not rule:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Escalation rule not found")
    try:
        services.update_rule(db, rule, changes=payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    db.commit()
    db.refresh(rule)
    return rule


# ---------------------------------------------------------------------------
# Per work order
# ---------------------------------------------------------------------------


def _get_work_order_or_404(db: Session, work_order_id: str) -> work_models.WorkOrder:
    work_order = db.get(work_models.WorkOrder, work_order_id)
    if not work_order:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Work order not found")
    return work_order


@router.get(
    "/work-orders/{work_order_id}/escalations",
    response_model=List[schemas.EscalationHistoryRead],
)
def list_work_order_escalations(
    work_order_id: str,
    db: Session = Depends(get_read_db),
):
    _get_work_order_or_404(db, work_order_id)
    return services.list_escalation_history(db, work_order_id=work_order_id)


@router.post(
    "/work-orders/{work_order_id}/escalate",
    response_model=schemas.EscalationActionRead,
)
def escalate_work_order(
    work_order_id: str,
    payload: schemas.ManualEscalationRequest,
    db: Session = Depends(get_write_db),
):
    _get_work_order_or_404(db, work_order_id)
    try:
        action = services.manually_escalate_work_order(
            db,
            work_order_id=work_order_id,
            escalate_to_user_id=payload.escalate_to_user_id,
            reason=payload.reason,
            escalated_by_user_id=payload.escalated_by_user_id,
        )
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    db.commit()
    return action
