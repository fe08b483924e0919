from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException

from cmmsdb.apps.accounts import models as account_models
from cmmsdb.apps.escalation import models as escalation_models
from cmmsdb.apps.escalation import router as escalation_router
from cmmsdb.apps.escalation import schemas as escalation_schemas
from cmmsdb.apps.escalation import services as escalation_services
from cmmsdb.apps.work import models as work_models
from cmmsdb.apps.work import services as work_services

T0 = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


def _setup(db_session):
    warehouse = account_models.Warehouse(name="Main DC")
    db_session.add(warehouse)
    db_session.flush()
    technician = account_models.Profile(
        email="tech@example.com",
        first_name="Tech",
        last_name="One",
        role=account_models.ProfileRole.TECHNICIAN,
        warehouse_id=warehouse.id,
    )
    manager = account_models.Profile(
        email="mgr@example.com",
        first_name="Ops",
        last_name="Manager",
        role=account_models.ProfileRole.MANAGER,
        warehouse_id=warehouse.id,
    )
    db_session.add_all([technician, manager])
    db_session.commit()
    work_order = work_services.create_work_order(
        db_session,
        warehouse_id=warehouse.id,
        description="Dock door sensor fault",
        priority=work_models.WorkOrderPriorityEnum.HIGH,
        assigned_to=technician.id,
        now=T0,
    )
    db_session.commit()
    return warehouse, technician, manager, work_order


def test_manual_escalation_reassigns_and_records_history(db_session):
    warehouse, technician, manager, work_order = _setup(db_session)

    action = escalation_services.manually_escalate_work_order(
        db_session,
        work_order_id=work_order.id,
        escalate_to_user_id=manager.id,
        reason="Customer complaint",
        escalated_by_user_id=technician.id,
        now=T0 + timedelta(hours=1),
    )
    db_session.commit()

    assert action.action == escalation_models.MANUAL_ESCALATION_ACTION
    assert action.rule_id is None
    assert action.escalation_level == 1
    db_session.refresh(work_order)
    assert work_order.assigned_to == manager.id
    assert work_order.escalated is True
    history = escalation_services.list_escalation_history(db_session, work_order_id=work_order.id)
    assert history[0].escalated_from == technician.id
    assert history[0].reason == "Customer complaint"


def test_manual_escalation_rejects_closed_work_or_unknown_target(db_session):
    _warehouse, _technician, manager, work_order = _setup(db_session)

    with pytest.raises(ValueError):
        escalation_services.manually_escalate_work_order(
            db_session,
            work_order_id=work_order.id,
            escalate_to_user_id="nobody",
            reason="Test",
        )
    with pytest.raises(ValueError):
        escalation_services.manually_escalate_work_order(
            db_session,
            work_order_id="missing",
            escalate_to_user_id=manager.id,
            reason="Test",
        )

    for status in (
        work_models.WorkOrderStatusEnum.IN_PROGRESS,
        work_models.WorkOrderStatusEnum.COMPLETED,
    ):
        work_services.transition_status(db_session, work_order=work_order, new_status=status)
    db_session.commit()

    with pytest.raises(ValueError):
        escalation_services.manually_escalate_work_order(
            db_session,
            work_order_id=work_order.id,
            escalate_to_user_id=manager.id,
            reason="Too late",
        )


def test_active_escalations_and_stats(db_session):
    warehouse, _technician, manager, work_order = _setup(db_session)
    quiet = work_services.create_work_order(
        db_session,
        warehouse_id=warehouse.id,
        description="Label printer jam",
        now=T0,
    )
    now = T0 + timedelta(hours=2)
    escalation_services.manually_escalate_work_order(
        db_session,
        work_order_id=work_order.id,
        escalate_to_user_id=manager.id,
        reason="Blocking outbound",
        now=now,
    )
    db_session.commit()

    active = escalation_services.list_active_escalations(db_session, warehouse_id=warehouse.id)
    assert [wo.id for wo in active] == [work_order.id]
    assert quiet.id not in {wo.id for wo in active}

    stats = escalation_services.get_escalation_stats(db_session, warehouse_id=warehouse.id, now=now)
    assert stats == {
        "total_escalated": 1,
        "escalated_today": 1,
        "by_level": {1: 1},
        "by_priority": {"high": 1},
    }
    next_day = escalation_services.get_escalation_stats(
        db_session,
        warehouse_id=warehouse.id,
        now=now + timedelta(days=1),
    )
    assert next_day["escalated_today"] == 0


def test_rule_endpoints(db_session):
    warehouse, _technician, manager, _work_order = _setup(db_session)

    created = escalation_router.create_rule(
        escalation_schemas.EscalationRuleCreate(
            work_order_type=work_models.WorkOrderTypeEnum.CORRECTIVE,
            priority=work_models.WorkOrderPriorityEnum.HIGH,
            timeout_hours=12,
            escalate_to=manager.id,
            warehouse_id=warehouse.id,
        ),
        db=db_session,
    )
    assert created.id is not None

    rules = escalation_router.list_rules(warehouse_id=warehouse.id, active_only=True, db=db_session)
    assert [rule.id for rule in rules] == [created.id]

    updated = escalation_router.update_rule(
        created.id,
        escalation_schemas.EscalationRuleUpdate(timeout_hours=6),
        db=db_session,
    )
    assert updated.timeout_hours == 6
    assert updated.escalate_to == manager.id

    with pytest.raises(HTTPException) as exc:
        escalation_router.update_rule(
            "missing",
            escalation_schemas.EscalationRuleUpdate(active=False),
            db=db_session,
        )
    assert exc.value.status_code == 404

    with pytest.raises(HTTPException) as exc:
        escalation_router.create_rule(
            escalation_schemas.EscalationRuleCreate(
                work_order_type=work_models.WorkOrderTypeEnum.CORRECTIVE,
                priority=work_models.WorkOrderPriorityEnum.LOW,
                timeout_hours=4,
                escalate_to="no-such-profile",
            ),
            db=db_session,
        )
    assert exc.value.status_code == 400


def test_work_order_escalation_endpoints(db_session):
    _warehouse, _technician, manager, work_order = _setup(db_session)

    action = escalation_router.escalate_work_order(
        work_order.id,
        escalation_schemas.ManualEscalationRequest(
            escalate_to_user_id=manager.id,
            reason="Shift handover",
        ),
        db=db_session,
    )
    assert action.escalation_level == 1

    history = escalation_router.list_work_order_escalations(work_order.id, db=db_session)
    assert len(history) == 1
    assert history[0].action == escalation_models.MANUAL_ESCALATION_ACTION

    with pytest.raises(HTTPException) as exc:
        escalation_router.list_work_order_escalations("missing", db=db_session)
    assert exc.value.status_code == 404

    with pytest.raises(HTTPException) as exc:
        escalation_router.escalate_work_order(
            work_order.id,
            escalation_schemas.ManualEscalationRequest(escalate_to_user_id="nobody", reason="x"),
            db=db_session,
        )
    assert exc.value.status_code == 400
