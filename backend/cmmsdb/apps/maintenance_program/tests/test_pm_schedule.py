from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException

from cmmsdb.apps.accounts import models as account_models
from cmmsdb.apps.maintenance_program import models as pm_models
from cmmsdb.apps.maintenance_program import router as pm_router
from cmmsdb.apps.maintenance_program import service as pm_service
from cmmsdb.apps.work import models as work_models
from cmmsdb.apps.work import services as work_services

JAN_1 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _create_template(db_session, warehouse_id: str, frequency, created_at=JAN_1) -> pm_models.PmTemplate:
    template = pm_models.PmTemplate(
        model="RT-40",
        component="Drive wheel",
        action="Check wear",
        frequency=frequency,
        warehouse_id=warehouse_id,
        created_at=created_at,
    )
    db_session.add(template)
    db_session.commit()
    return template


def _complete(db_session, work_order, when: datetime) -> None:
    for status in (
        work_models.WorkOrderStatusEnum.IN_PROGRESS,
        work_models.WorkOrderStatusEnum.COMPLETED,
    ):
        work_services.transition_status(db_session, work_order=work_order, new_status=status, now=when)
    db_session.commit()


def test_schedule_status_moves_from_compliant_to_overdue(db_session):
    warehouse = account_models.Warehouse(name="North DC")
    db_session.add(warehouse)
    db_session.commit()
    template = _create_template(db_session, warehouse.id, pm_models.PmFrequencyEnum.WEEKLY)

    compliant = pm_service.get_pm_schedule(db_session, template, JAN_1 + timedelta(days=1))
    due = pm_service.get_pm_schedule(db_session, template, JAN_1 + timedelta(days=6, hours=12))
    overdue = pm_service.get_pm_schedule(db_session, template, JAN_1 + timedelta(days=8))

    assert compliant.compliance_status == "compliant"
    assert compliant.next_due_at == JAN_1 + timedelta(days=7)
    assert compliant.last_generated_at is None
    assert due.compliance_status == "due"
    assert overdue.is_overdue is True


def test_completed_pm_work_restores_compliance(db_session):
    warehouse = account_models.Warehouse(name="North DC")
    db_session.add(warehouse)
    db_session.commit()
    template = _create_template(db_session, warehouse.id, pm_models.PmFrequencyEnum.WEEKLY)
    fire_at = JAN_1 + timedelta(days=8)
    work_order = pm_service.evaluate_template(db_session, template, fire_at).work_order
    db_session.commit()

    before = pm_service.get_pm_schedule(db_session, template, fire_at + timedelta(hours=2))
    assert before.is_overdue is True
    assert before.last_generated_at == fire_at
    assert before.next_due_at == fire_at + timedelta(days=7)

    completed_at = fire_at + timedelta(hours=3)
    _complete(db_session, work_order, completed_at)

    after = pm_service.get_pm_schedule(db_session, template, fire_at + timedelta(hours=4))
    assert after.compliance_status == "compliant"
    assert after.last_completed_at == completed_at
    assert after.compliance_due_at == completed_at + timedelta(days=7)


def test_compliance_summary_counts_active_templates(db_session):
    warehouse = account_models.Warehouse(name="South DC")
    db_session.add(warehouse)
    db_session.commit()
    _create_template(db_session, warehouse.id, pm_models.PmFrequencyEnum.DAILY)
    _create_template(db_session, warehouse.id, pm_models.PmFrequencyEnum.MONTHLY)
    _create_template(db_session, warehouse.id, pm_models.PmFrequencyEnum.ANNUALLY)
    now = JAN_1 + timedelta(days=3)

    summary = pm_service.compliance_summary(db_session, warehouse_id=warehouse.id, now=now)

    assert summary["total_templates"] == 3
    assert summary["overdue_count"] == 1
    assert summary["due_count"] == 0
    assert summary["compliance_percentage"] == 67
    assert summary["next_due_at"] == JAN_1 + timedelta(days=1)
    assert summary["last_completed_at"] is None


def test_compliance_summary_without_templates_is_fully_compliant(db_session):
    summary = pm_service.compliance_summary(db_session, warehouse_id="empty", now=JAN_1)

    assert summary["total_templates"] == 0
    assert summary["compliance_percentage"] == 100
    assert summary["next_due_at"] is None


def test_schedule_endpoints(db_session):
    warehouse = account_models.Warehouse(name="East DC")
    db_session.add(warehouse)
    db_session.commit()
    template = _create_template(db_session, warehouse.id, pm_models.PmFrequencyEnum.QUARTERLY)

    schedule = pm_router.get_template_schedule(template.id, db=db_session)
    assert schedule.template_id == template.id
    assert schedule.frequency == pm_models.PmFrequencyEnum.QUARTERLY

    summary = pm_router.get_compliance(warehouse_id=warehouse.id, db=db_session)
    assert summary["total_templates"] == 1

    with pytest.raises(HTTPException) as exc:
        pm_router.get_template_schedule("missing", db=db_session)
    assert exc.value.status_code == 404
