# backend/cmmsdb/apps/maintenance_program/service.py
#
# Service / business-logic functions for the maintenance_program module.
#
# Responsibilities:
# - Calendar arithmetic for PM frequencies.
# - PM generation: decide whether a template is due and create the
#   preventive work order (plus checklist) for that occurrence.
# - Job handler for `pm_generation`, which keeps one self-rescheduling job
#   chain alive per active template.
# - Schedule / compliance reporting per template and per warehouse.

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cmmsdb.apps.accounts import models as account_models
from cmmsdb.apps.jobs import models as job_models
from cmmsdb.apps.jobs import services as job_services
from cmmsdb.apps.notifications.models import NotificationType
from cmmsdb.utils.datetimes import add_months, ensure_utc
from cmmsdb.utils.identifiers import generate_wo_number

from ..work.models import (
    INACTIVE_STATUSES,
    WorkOrder,
    WorkOrderChecklistItem,
    WorkOrderPriorityEnum,
    WorkOrderStatusEnum,
    WorkOrderTypeEnum,
)
from .models import PmFrequencyEnum, PmTemplate

logger = logging.getLogger(__name__)

DUE_SOON_WINDOW = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Frequency arithmetic
# ---------------------------------------------------------------------------


def advance(instant: datetime, frequency: PmFrequencyEnum) -> datetime:
    """Return `instant` moved forward by one period of `frequency`."""
    frequency = PmFrequencyEnum(frequency)
    if frequency == PmFrequencyEnum.DAILY:
        return instant + timedelta(days=1)
    if frequency == PmFrequencyEnum.WEEKLY:
        return instant + timedelta(days=7)
    if frequency == PmFrequencyEnum.MONTHLY:
        return add_months(instant, 1)
    if frequency == PmFrequencyEnum.QUARTERLY:
        return add_months(instant, 3)
    return add_months(instant, 12)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def get_template(db: Session, template_id: str) -> Optional[PmTemplate]:
    return db.get(PmTemplate, template_id)


def list_active_templates(db: Session, *, warehouse_id: Optional[str] = None) -> List[PmTemplate]:
    query = db.query(PmTemplate).filter(PmTemplate.active.is_(True))
    if warehouse_id:
        query = query.filter(PmTemplate.warehouse_id == warehouse_id)
    return query.order_by(PmTemplate.created_at.asc(), PmTemplate.id.asc()).all()


def _latest_generated_work_order(db: Session, template_id: str) -> Optional[WorkOrder]:
    return (
        db.query(WorkOrder)
        .filter(
            WorkOrder.pm_template_id == template_id,
            WorkOrder.type == WorkOrderTypeEnum.PREVENTIVE,
        )
        .order_by(WorkOrder.created_at.desc(), WorkOrder.id.desc())
        .first()
    )


def _latest_completed_work_order(db: Session, template_id: str) -> Optional[WorkOrder]:
    return (
        db.query(WorkOrder)
        .filter(
            WorkOrder.pm_template_id == template_id,
            WorkOrder.type == WorkOrderTypeEnum.PREVENTIVE,
            WorkOrder.status.in_(list(INACTIVE_STATUSES)),
        )
        .order_by(WorkOrder.created_at.desc(), WorkOrder.id.desc())
        .first()
    )


def compute_next_due(db: Session, template: PmTemplate) -> datetime:
    """
    Next occurrence of the template: one period after the most recent
    generated work order, or one period after the template was created when
    nothing has been generated yet.
    """
    latest = _latest_generated_work_order(db, template.id)
    anchor = ensure_utc(latest.created_at) if latest else ensure_utc(template.created_at)
    return advance(anchor, template.frequency)


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


@dataclass
class PmEvaluation:
    template_id: str
    due_at: Optional[datetime]
    next_run_at: Optional[datetime]
    work_order: Optional[WorkOrder] = None
    skipped_reason: Optional[str] = None

    @property
    def fired(self) -> bool:
        return self.work_order is not None


def _checklist_steps(template: PmTemplate) -> List[dict]:
    if not template.checklist:
        return [{"component": template.component, "action": template.action}]
    if not isinstance(template.checklist, list):
        raise ValueError(f"PM template {template.id} checklist must be a list")
    steps = []
    for step in template.checklist:
        if not isinstance(step, dict):
            raise ValueError(f"PM template {template.id} has a malformed checklist entry")
        steps.append(
            {
                "component": step.get("component") or template.component,
                "action": step.get("action") or template.action,
            }
        )
    return steps


def _build_work_order(template: PmTemplate, *, due_at: datetime, now: datetime) -> WorkOrder:
    duration = template.estimated_duration or 60
    frequency = PmFrequencyEnum(template.frequency)
    work_order = WorkOrder(
        wo_number=generate_wo_number("PM", now),
        type=WorkOrderTypeEnum.PREVENTIVE,
        status=WorkOrderStatusEnum.NEW,
        priority=template.priority or WorkOrderPriorityEnum.MEDIUM,
        description=f"Preventive Maintenance: {template.component} - {template.action}",
        asset_model=template.model,
        notes=f"Auto-generated PM based on {frequency.value} maintenance schedule",
        estimated_hours=round(duration / 60.0, 2),
        warehouse_id=template.warehouse_id,
        pm_template_id=template.id,
        pm_due_at=due_at,
        due_date=now + timedelta(minutes=duration),
        created_at=now,
        updated_at=now,
    )
    for index, step in enumerate(_checklist_steps(template)):
        work_order.checklist_items.append(
            WorkOrderChecklistItem(
                component=step["component"],
                action=step["action"],
                sort_order=index,
                created_at=now,
            )
        )
    return work_order


def evaluate_template(
    db: Session,
    template: PmTemplate,
    now: Optional[datetime] = None,
) -> PmEvaluation:
    """
    Evaluate one template at `now`.

    - inactive: nothing is created and the chain ends (`next_run_at` is None);
    - not yet due: nothing is created, the next run is at the due instant;
    - due: one preventive work order is created for the occurrence and the
      next run is one period after `now`. Missed periods are never
      back-filled; a long-overdue template fires once and restarts from now.

    Re-running for an occurrence that already has a work order creates
    nothing, including when a concurrent worker inserted it first.
    """
    now = now or _utcnow()
    if not template.active:
        return PmEvaluation(
            template_id=template.id,
            due_at=None,
            next_run_at=None,
            skipped_reason="inactive",
        )

    next_due = compute_next_due(db, template)
    if now < next_due:
        return PmEvaluation(
            template_id=template.id,
            due_at=next_due,
            next_run_at=next_due,
            skipped_reason="not_due",
        )

    existing = (
        db.query(WorkOrder)
        .filter(
            WorkOrder.pm_template_id == template.id,
            WorkOrder.type == WorkOrderTypeEnum.PREVENTIVE,
            (WorkOrder.created_at >= next_due) | (WorkOrder.pm_due_at == next_due),
        )
        .first()
    )
    if existing:
        return PmEvaluation(
            template_id=template.id,
            due_at=next_due,
            next_run_at=advance(ensure_utc(existing.created_at), template.frequency),
            skipped_reason="already_generated",
        )

    if advance(next_due, template.frequency) <= now:
        logger.warning(
            "PM template missed one or more periods; generating once and rescheduling from now",
            extra={"template_id": template.id, "due_at": next_due.isoformat()},
        )

    work_order = _build_work_order(template, due_at=next_due, now=now)
    try:
        with db.begin_nested():
            db.add(work_order)
            db.flush()
    except IntegrityError:
        # Any other clash, such as a `wo_number` collision, propagates for retry.
        occurrence = (
            db.query(WorkOrder.id)
            .filter(
                WorkOrder.pm_template_id == template.id,
                WorkOrder.pm_due_at == next_due,
            )
            .first()
        )
        if occurrence is None:
            raise
        logger.info(
            "PM work order for this occurrence already exists",
            extra={"template_id": template.id, "due_at": next_due.isoformat()},
        )
        return PmEvaluation(
            template_id=template.id,
            due_at=next_due,
            next_run_at=advance(now, template.frequency),
            skipped_reason="already_generated",
        )

    logger.info(
        "Generated PM work order",
        extra={
            "template_id": template.id,
            "work_order_id": work_order.id,
            "wo_number": work_order.wo_number,
        },
    )
    return PmEvaluation(
        template_id=template.id,
        due_at=next_due,
        next_run_at=advance(now, template.frequency),
        work_order=work_order,
    )


def _pm_due_notifications(db: Session, work_order: WorkOrder) -> List[job_services.JobRequest]:
    recipients = (
        db.query(account_models.Profile)
        .filter(
            account_models.Profile.warehouse_id == work_order.warehouse_id,
            account_models.Profile.active.is_(True),
            account_models.Profile.role.in_(
                [account_models.ProfileRole.SUPERVISOR, account_models.ProfileRole.MANAGER]
            ),
        )
        .order_by(account_models.Profile.created_at.asc(), account_models.Profile.id.asc())
        .all()
    )
    return [
        job_services.JobRequest(
            job_type=job_models.JobTypeEnum.NOTIFICATION_SEND,
            payload={
                "user_id": profile.id,
                "type": NotificationType.PM_DUE.value,
                "title": "Preventive Maintenance Due",
                "message": (
                    f"PM work order {work_order.wo_number} has been created for "
                    f"{work_order.asset_model}"
                ),
                "related_entity": {"type": "work_order", "id": work_order.id},
                "warehouse_id": work_order.warehouse_id,
            },
        )
        for profile in recipients
    ]


def bootstrap_pm_chains(
    db: Session,
    *,
    now: Optional[datetime] = None,
    warehouse_id: Optional[str] = None,
) -> List[job_services.JobRequest]:
    """
    One `pm_generation` request per active template. Requests carry the
    template's chain key, so templates that already have a live job keep it.
    """
    now = now or _utcnow()
    return [
        job_services.JobRequest(
            job_type=job_models.JobTypeEnum.PM_GENERATION,
            payload={"template_id": template.id},
            scheduled_at=now,
            dedupe_key=job_services.pm_generation_dedupe_key(template.id),
        )
        for template in list_active_templates(db, warehouse_id=warehouse_id)
    ]


def handle_pm_generation(
    db: Session,
    job: job_models.Job,
    now: datetime,
) -> List[job_services.JobRequest]:
    """
    `pm_generation` job handler.

    With a `template_id` the template is evaluated and its successor job is
    returned. Without one the job is a sweep that (re)starts the chain of
    every active template.
    """
    payload = job.payload or {}
    template_id = payload.get("template_id")
    if not template_id:
        return bootstrap_pm_chains(db, now=now, warehouse_id=payload.get("warehouse_id"))

    try:
        template = get_template(db, template_id)
    except LookupError as exc:
        # Unknown enum value stored for frequency or priority.
        raise job_services.JobDataError(f"PM template {template_id} is invalid: {exc}") from exc
    if template is None:
        raise job_services.JobDataError(f"PM template {template_id} not found")

    try:
        evaluation = evaluate_template(db, template, now)
    except ValueError as exc:
        raise job_services.JobDataError(str(exc)) from exc

    follow_ups: List[job_services.JobRequest] = []
    if evaluation.work_order is not None:
        follow_ups.extend(_pm_due_notifications(db, evaluation.work_order))
    if evaluation.next_run_at is not None:
        follow_ups.append(
            job_services.JobRequest(
                job_type=job_models.JobTypeEnum.PM_GENERATION,
                payload={"template_id": template.id},
                scheduled_at=evaluation.next_run_at,
                dedupe_key=job_services.pm_generation_dedupe_key(template.id),
            )
        )
    else:
        logger.info("PM template inactive; generation chain ends", extra={"template_id": template.id})
    return follow_ups


# ---------------------------------------------------------------------------
# Schedule / compliance reporting
# ---------------------------------------------------------------------------


@dataclass
class PmSchedule:
    template_id: str
    frequency: PmFrequencyEnum
    active: bool
    next_due_at: datetime
    last_generated_at: Optional[datetime]
    last_completed_at: Optional[datetime]
    compliance_due_at: datetime
    compliance_status: str

    @property
    def is_overdue(self) -> bool:
        return self.compliance_status == "overdue"


def get_pm_schedule(
    db: Session,
    template: PmTemplate,
    now: Optional[datetime] = None,
) -> PmSchedule:
    """
    Schedule view of one template.

    `next_due_at` is when the generator will next fire. Compliance is judged
    against completed work: the template is overdue when one period has
    passed since the last completed PM work order (or since the template was
    created), and due when that point is less than 24 hours away.
    """
    now = now or _utcnow()
    latest = _latest_generated_work_order(db, template.id)
    completed = _latest_completed_work_order(db, template.id)

    last_generated_at = ensure_utc(latest.created_at) if latest else None
    last_completed_at = None
    if completed is not None:
        last_completed_at = ensure_utc(completed.completed_at or completed.created_at)

    compliance_due_at = advance(last_completed_at or ensure_utc(template.created_at), template.frequency)
    if compliance_due_at < now:
        status = "overdue"
    elif compliance_due_at <= now + DUE_SOON_WINDOW:
        status = "due"
    else:
        status = "compliant"

    return PmSchedule(
        template_id=template.id,
        frequency=template.frequency,
        active=bool(template.active),
        next_due_at=compute_next_due(db, template),
        last_generated_at=last_generated_at,
        last_completed_at=last_completed_at,
        compliance_due_at=compliance_due_at,
        compliance_status=status,
    )


def compliance_summary(
    db: Session,
    *,
    warehouse_id: str,
    now: Optional[datetime] = None,
) -> dict:
    now = now or _utcnow()
    schedules = [get_pm_schedule(db, t, now) for t in list_active_templates(db, warehouse_id=warehouse_id)]
    total = len(schedules)
    overdue = sum(1 for s in schedules if s.is_overdue)
    due = sum(1 for s in schedules if s.compliance_status == "due")
    completed_dates = [s.last_completed_at for s in schedules if s.last_completed_at]
    return {
        "warehouse_id": warehouse_id,
        "total_templates": total,
        "overdue_count": overdue,
        "due_count": due,
        "compliance_percentage": round((total - overdue) / total * 100) if total else 100,
        "next_due_at": min((s.next_due_at for s in schedules), default=None),
        "last_completed_at": max(completed_dates, default=None),
    }
