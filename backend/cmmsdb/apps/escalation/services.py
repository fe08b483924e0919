from __future__ import annotations

import logging
import os
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from cmmsdb.apps.accounts import models as account_models
from cmmsdb.apps.jobs import models as job_models
from cmmsdb.apps.notifications import service as notification_service
from cmmsdb.apps.notifications.models import NotificationType
from cmmsdb.apps.work import models as work_models
from cmmsdb.utils.datetimes import ensure_utc
from cmmsdb.utils.identifiers import generate_uuid7

from . import models

logger = logging.getLogger(__name__)

# 0 disables the cap.
ESCALATION_MAX_LEVEL = int(os.getenv("ESCALATION_MAX_LEVEL", "3"))

DEFAULT_RULES: Sequence[Tuple[work_models.WorkOrderTypeEnum, work_models.WorkOrderPriorityEnum, int, models.EscalationActionEnum]] = (
    (
        work_models.WorkOrderTypeEnum.EMERGENCY,
        work_models.WorkOrderPriorityEnum.CRITICAL,
        4,
        models.EscalationActionEnum.NOTIFY_MANAGER,
    ),
    (
        work_models.WorkOrderTypeEnum.CORRECTIVE,
        work_models.WorkOrderPriorityEnum.HIGH,
        12,
        models.EscalationActionEnum.NOTIFY_SUPERVISOR,
    ),
    (
        work_models.WorkOrderTypeEnum.CORRECTIVE,
        work_models.WorkOrderPriorityEnum.MEDIUM,
        24,
        models.EscalationActionEnum.NOTIFY_SUPERVISOR,
    ),
    (
        work_models.WorkOrderTypeEnum.PREVENTIVE,
        work_models.WorkOrderPriorityEnum.LOW,
        72,
        models.EscalationActionEnum.NOTIFY_SUPERVISOR,
    ),
)

_ROLE_FOR_ACTION = {
    models.EscalationActionEnum.NOTIFY_SUPERVISOR: account_models.ProfileRole.SUPERVISOR,
    models.EscalationActionEnum.NOTIFY_MANAGER: account_models.ProfileRole.MANAGER,
    models.EscalationActionEnum.AUTO_REASSIGN: account_models.ProfileRole.SUPERVISOR,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EscalationAction:
    work_order_id: str
    wo_number: str
    rule_id: Optional[str]
    escalation_level: int
    escalated_to: str
    escalated_from: Optional[str]
    action: str
    reason: str
    escalated_at: datetime
    notification_job_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def _validate_timeout(timeout_hours: int) -> None:
    if timeout_hours is None or int(timeout_hours) < 1:
        raise ValueError("timeout_hours must be at least 1")


def _validate_profile(db: Session, profile_id: Optional[str]) -> None:
    if profile_id and not db.get(account_models.Profile, profile_id):
        raise ValueError(f"Profile {profile_id} not found")


def list_rules(
    db: Session,
    *,
    warehouse_id: Optional[str] = None,
    active_only: bool = False,
) -> List[models.EscalationRule]:
    query = db.query(models.EscalationRule)
    if warehouse_id:
        query = query.filter(
            or_(
                models.EscalationRule.warehouse_id == warehouse_id,
                models.EscalationRule.warehouse_id.is_(None),
            )
        )
    if active_only:
        query = query.filter(models.EscalationRule.active.is_(True))
    return query.order_by(
        models.EscalationRule.work_order_type.asc(),
        models.EscalationRule.priority.asc(),
        models.EscalationRule.timeout_hours.asc(),
        models.EscalationRule.id.asc(),
    ).all()


def get_rule(db: Session, rule_id: str) -> Optional[models.EscalationRule]:
    return db.get(models.EscalationRule, rule_id)


def create_rule(
    db: Session,
    *,
    work_order_type: work_models.WorkOrderTypeEnum,
    priority: work_models.WorkOrderPriorityEnum,
    timeout_hours: int,
    escalation_action: models.EscalationActionEnum = models.EscalationActionEnum.NOTIFY_SUPERVISOR,
    escalate_to: Optional[str] = None,
    warehouse_id: Optional[str] = None,
    active: bool = True,
    now: Optional[datetime] = None,
) -> models.EscalationRule:
    _validate_timeout(timeout_hours)
    _validate_profile(db, escalate_to)
    now = now or _utcnow()
    rule = models.EscalationRule(
        id=generate_uuid7(now),
        work_order_type=work_order_type,
        priority=priority,
        timeout_hours=int(timeout_hours),
        escalation_action=escalation_action,
        escalate_to=escalate_to,
        warehouse_id=warehouse_id,
        active=active,
        created_at=now,
    )
    db.add(rule)
    db.flush()
    return rule


def update_rule(
    db: Session,
    rule: models.EscalationRule,
    *,
    changes: dict,
) -> models.EscalationRule:
    if "timeout_hours" in changes:
        _validate_timeout(changes["timeout_hours"])
    if changes.get("escalate_to"):
        _validate_profile(db, changes["escalate_to"])
    for field, value in changes.items():
        setattr(rule, field, value)
    db.add(rule)
    db.flush()
    return rule


def ensure_default_rules(
    db: Session,
    *,
    warehouse_id: str,
    now: Optional[datetime] = None,
) -> List[models.EscalationRule]:
    """Seed the standard rule set for a warehouse that has no rules of its own."""
    existing = (
        db.query(models.EscalationRule.id)
        .filter(models.EscalationRule.warehouse_id == warehouse_id)
        .first()
    )
    if existing:
        return []
    created = [
        create_rule(
            db,
            work_order_type=wo_type,
            priority=priority,
            timeout_hours=timeout_hours,
            escalation_action=action,
            warehouse_id=warehouse_id,
            now=now,
        )
        for wo_type, priority, timeout_hours, action in DEFAULT_RULES
    ]
    logger.info(
        "Initialized default escalation rules",
        extra={"warehouse_id": warehouse_id, "count": len(created)},
    )
    return created


def find_applicable_rule(
    db: Session,
    *,
    work_order_type: work_models.WorkOrderTypeEnum,
    priority: work_models.WorkOrderPriorityEnum,
    warehouse_id: str,
) -> Optional[models.EscalationRule]:
    """Strictest active rule for the pair: smallest timeout, then smallest id."""
    return (
        db.query(models.EscalationRule)
        .filter(
            models.EscalationRule.work_order_type == work_order_type,
            models.EscalationRule.priority == priority,
            models.EscalationRule.active.is_(True),
            or_(
                models.EscalationRule.warehouse_id == warehouse_id,
                models.EscalationRule.warehouse_id.is_(None),
            ),
        )
        .order_by(models.EscalationRule.timeout_hours.asc(), models.EscalationRule.id.asc())
        .first()
    )


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def _last_escalated_at(db: Session, work_order_id: str) -> Optional[datetime]:
    value = (
        db.query(func.max(models.EscalationHistory.escalated_at))
        .filter(models.EscalationHistory.work_order_id == work_order_id)
        .scalar()
    )
    return ensure_utc(value)


def _resolve_target(
    db: Session,
    *,
    rule: models.EscalationRule,
    work_order: work_models.WorkOrder,
) -> Optional[account_models.Profile]:
    if rule.escalate_to:
        profile = db.get(account_models.Profile, rule.escalate_to)
        if not profile or not profile.active:
            return None
        return profile
    role = _ROLE_FOR_ACTION[rule.escalation_action]
    return (
        db.query(account_models.Profile)
        .filter(
            account_models.Profile.role == role,
            account_models.Profile.warehouse_id == work_order.warehouse_id,
            account_models.Profile.active.is_(True),
        )
        .order_by(account_models.Profile.created_at.asc(), account_models.Profile.id.asc())
        .first()
    )


def _apply_escalation(
    db: Session,
    *,
    work_order: work_models.WorkOrder,
    target: account_models.Profile,
    rule_id: Optional[str],
    action: str,
    reason: str,
    reassign: bool,
    notification_type: NotificationType,
    now: datetime,
) -> Optional[EscalationAction]:
    """
    Bump the level with a compare-and-swap on the level that was read. Returns
    None when another writer changed the work order first or it was closed.
    """
    level = work_order.escalation_level or 0
    new_level = level + 1
    previous_assignee = work_order.assigned_to

    values = {"escalation_level": new_level, "escalated": True, "updated_at": now}
    if reassign:
        values["assigned_to"] = target.id
    result = db.execute(
        update(work_models.WorkOrder)
        .where(
            work_models.WorkOrder.id == work_order.id,
            work_models.WorkOrder.escalation_level == level,
            work_models.WorkOrder.status.in_(work_models.OPEN_STATUSES),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info(
            "Work order changed before escalation could be applied",
            extra={"work_order_id": work_order.id},
        )
        return None

    db.add(
        models.EscalationHistory(
            id=generate_uuid7(now),
            work_order_id=work_order.id,
            rule_id=rule_id,
            escalation_level=new_level,
            escalated_from=previous_assignee,
            escalated_to=target.id,
            action=action,
            reason=reason,
            escalated_at=now,
        )
    )
    job_id = notification_service.enqueue_notification(
        db,
        user_id=target.id,
        notification_type=notification_type,
        title=f"Work Order Escalated - Level {new_level}",
        message=(
            f"Work Order {work_order.wo_number} has been escalated to you. "
            f"Priority: {work_order.priority.value.upper()}. "
            f"Description: {work_order.description}"
        ),
        related_entity={"type": "work_order", "id": work_order.id},
        warehouse_id=work_order.warehouse_id,
        now=now,
    )
    db.flush()
    db.refresh(work_order)

    logger.info(
        "Escalated work order",
        extra={
            "work_order_id": work_order.id,
            "wo_number": work_order.wo_number,
            "escalation_level": new_level,
            "escalated_to": target.id,
        },
    )
    return EscalationAction(
        work_order_id=work_order.id,
        wo_number=work_order.wo_number,
        rule_id=rule_id,
        escalation_level=new_level,
        escalated_to=target.id,
        escalated_from=previous_assignee,
        action=action,
        reason=reason,
        escalated_at=now,
        notification_job_id=job_id,
    )


def _evaluate_work_order(
    db: Session,
    *,
    work_order: work_models.WorkOrder,
    rule: models.EscalationRule,
    now: datetime,
) -> Optional[EscalationAction]:
    anchor = ensure_utc(work_order.created_at)
    last_escalated_at = _last_escalated_at(db, work_order.id)
    if last_escalated_at and last_escalated_at > anchor:
        anchor = last_escalated_at
    if now - anchor < timedelta(hours=rule.timeout_hours):
        return None

    target = _resolve_target(db, rule=rule, work_order=work_order)
    if target is None:
        logger.warning(
            "No escalation target available; skipping",
            extra={
                "work_order_id": work_order.id,
                "rule_id": rule.id,
                "escalation_action": rule.escalation_action.value,
            },
        )
        return None

    reassign = rule.escalation_action == models.EscalationActionEnum.AUTO_REASSIGN
    return _apply_escalation(
        db,
        work_order=work_order,
        target=target,
        rule_id=rule.id,
        action=rule.escalation_action.value,
        reason=f"Auto-escalated after {rule.timeout_hours} hours",
        reassign=reassign,
        notification_type=NotificationType.WO_ASSIGNED if reassign else NotificationType.WO_ESCALATED,
        now=now,
    )


def scan(
    db: Session,
    now: Optional[datetime] = None,
    *,
    warehouse_id: Optional[str] = None,
    max_level: Optional[int] = None,
) -> List[EscalationAction]:
    """
    Escalate every open work order whose applicable rule's timeout has
    elapsed since creation or since its last escalation.

    Each work order is evaluated at most once per scan, inside its own
    SAVEPOINT: a failure is rolled back, logged, and the scan moves on.
    The caller commits.
    """
    now = now or _utcnow()
    cap = ESCALATION_MAX_LEVEL if max_level is None else max_level

    query = db.query(work_models.WorkOrder).filter(
        work_models.WorkOrder.status.in_(work_models.OPEN_STATUSES)
    )
    if warehouse_id:
        query = query.filter(work_models.WorkOrder.warehouse_id == warehouse_id)
    if cap > 0:
        query = query.filter(work_models.WorkOrder.escalation_level < cap)
    work_orders = query.order_by(
        work_models.WorkOrder.created_at.asc(), work_models.WorkOrder.id.asc()
    ).all()

    rules: Dict[tuple, Optional[models.EscalationRule]] = {}
    actions: List[EscalationAction] = []
    failures = 0
    for work_order in work_orders:
        key = (work_order.type, work_order.priority, work_order.warehouse_id)
        try:
            with db.begin_nested():
                if key not in rules:
                    rules[key] = find_applicable_rule(
                        db,
                        work_order_type=work_order.type,
                        priority=work_order.priority,
                        warehouse_id=work_order.warehouse_id,
                    )
                rule = rules[key]
                if rule is None:
                    continue
                action = _evaluate_work_order(db, work_order=work_order, rule=rule, now=now)
        except Exception:
            failures += 1
            logger.exception(
                "Escalation failed for work order; continuing scan",
                extra={"work_order_id": work_order.id},
            )
            continue
        if action is not None:
            actions.append(action)

    logger.info(
        "Escalation scan finished",
        extra={
            "warehouse_id": warehouse_id,
            "evaluated": len(work_orders),
            "escalated": len(actions),
            "failures": failures,
        },
    )
    return actions


def handle_escalation_check(db: Session, job: job_models.Job, now: datetime) -> None:
    payload = job.payload or {}
    scan(db, now, warehouse_id=payload.get("warehouse_id"))
    return None


# ---------------------------------------------------------------------------
# Manual escalation
# ---------------------------------------------------------------------------


def manually_escalate_work_order(
    db: Session,
    *,
    work_order_id: str,
    escalate_to_user_id: str,
    reason: str,
    escalated_by_user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> EscalationAction:
    """Escalate and reassign a work order on a person's request."""
    now = now or _utcnow()
    work_order = db.get(work_models.WorkOrder, work_order_id)
    if not work_order:
        raise ValueError("Work order not found")
    if not work_order.is_active:
        raise ValueError("Work order is no longer open and cannot be escalated")
    target = db.get(account_models.Profile, escalate_to_user_id)
    if not target or not target.active:
        raise ValueError("Escalation target user not found")

    action = _apply_escalation(
        db,
        work_order=work_order,
        target=target,
        rule_id=None,
        action=models.MANUAL_ESCALATION_ACTION,
        reason=reason,
        reassign=True,
        notification_type=NotificationType.WO_ESCALATED,
        now=now,
    )
    if action is None:
        raise ValueError("Work order was modified concurrently; retry the escalation")
    logger.info(
        "Manual escalation recorded",
        extra={"work_order_id": work_order_id, "escalated_by": escalated_by_user_id},
    )
    return action


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


def list_active_escalations(
    db: Session,
    *,
    warehouse_id: Optional[str] = None,
) -> List[work_models.WorkOrder]:
    query = db.query(work_models.WorkOrder).filter(
        work_models.WorkOrder.escalated.is_(True),
        work_models.WorkOrder.status.in_(work_models.OPEN_STATUSES),
    )
    if warehouse_id:
        query = query.filter(work_models.WorkOrder.warehouse_id == warehouse_id)
    return query.order_by(
        work_models.WorkOrder.escalation_level.desc(),
        work_models.WorkOrder.created_at.asc(),
    ).all()


def list_escalation_history(db: Session, *, work_order_id: str) -> List[models.EscalationHistory]:
    return (
        db.query(models.EscalationHistory)
        .filter(models.EscalationHistory.work_order_id == work_order_id)
        .order_by(models.EscalationHistory.escalated_at.desc(), models.EscalationHistory.id.desc())
        .all()
    )


def get_escalation_stats(
    db: Session,
    *,
    warehouse_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    now = now or _utcnow()
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)

    query = db.query(work_models.WorkOrder).filter(work_models.WorkOrder.escalated.is_(True))
    if warehouse_id:
        query = query.filter(work_models.WorkOrder.warehouse_id == warehouse_id)
    escalated = query.all()

    today_query = (
        db.query(func.count(func.distinct(models.EscalationHistory.work_order_id)))
        .join(
            work_models.WorkOrder,
            work_models.WorkOrder.id == models.EscalationHistory.work_order_id,
        )
        .filter(models.EscalationHistory.escalated_at >= start_of_day)
    )
    if warehouse_id:
        today_query = today_query.filter(work_models.WorkOrder.warehouse_id == warehouse_id)

    by_level = Counter(wo.escalation_level or 1 for wo in escalated)
    by_priority = Counter(wo.priority.value for wo in escalated)
    return {
        "total_escalated": len(escalated),
        "escalated_today": int(today_query.scalar() or 0),
        "by_level": dict(sorted(by_level.items())),
        "by_priority": dict(by_priority),
    }
