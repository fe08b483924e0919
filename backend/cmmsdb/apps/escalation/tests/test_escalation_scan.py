from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from cmmsdb.apps.accounts import models as account_models
from cmmsdb.apps.escalation import models as escalation_models
from cmmsdb.apps.escalation import services as escalation_services
from cmmsdb.apps.jobs import models as job_models
from cmmsdb.apps.jobs import services as job_services
from cmmsdb.apps.work import models as work_models
from cmmsdb.apps.work import services as work_services

T0 = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)
CORRECTIVE = work_models.WorkOrderTypeEnum.CORRECTIVE
HIGH = work_models.WorkOrderPriorityEnum.HIGH
Action = escalation_models.EscalationActionEnum


def _create_warehouse(db_session, name: str = "Main DC") -> account_models.Warehouse:
    warehouse = account_models.Warehouse(name=name)
    db_session.add(warehouse)
    db_session.commit()
    return warehouse


def _create_profile(db_session, warehouse_id: str, role, email: str) -> account_models.Profile:
    profile = account_models.Profile(
        email=email,
        first_name=email.split("@")[0],
        last_name="User",
        role=role,
        warehouse_id=warehouse_id,
        active=True,
    )
    db_session.add(profile)
    db_session.commit()
    return profile


def _create_work_order(db_session, warehouse_id: str, **kwargs) -> work_models.WorkOrder:
    kwargs.setdefault("type", CORRECTIVE)
    kwargs.setdefault("priority", HIGH)
    kwargs.setdefault("now", T0)
    work_order = work_services.create_work_order(
        db_session,
        warehouse_id=warehouse_id,
        description="Conveyor belt misaligned",
        **kwargs,
    )
    db_session.commit()
    return work_order


def _notification_jobs(db_session):
    return (
        db_session.query(job_models.Job)
        .filter(job_models.Job.job_type == job_models.JobTypeEnum.NOTIFICATION_SEND)
        .all()
    )


def test_work_order_past_timeout_is_escalated(db_session):
    warehouse = _create_warehouse(db_session)
    supervisor = _create_profile(db_session, warehouse.id, account_models.ProfileRole.SUPERVISOR, "u1@example.com")
    rule = escalation_services.create_rule(
        db_session,
        work_order_type=CORRECTIVE,
        priority=HIGH,
        timeout_hours=4,
        escalation_action=Action.NOTIFY_SUPERVISOR,
        escalate_to=supervisor.id,
        warehouse_id=warehouse.id,
        now=T0,
    )
    work_order = _create_work_order(db_session, warehouse.id)

    actions = escalation_services.scan(db_session, T0 + timedelta(hours=5))
    db_session.commit()

    assert len(actions) == 1
    assert actions[0].escalation_level == 1
    assert actions[0].escalated_to == supervisor.id
    db_session.refresh(work_order)
    assert work_order.escalation_level == 1
    assert work_order.escalated is True
    assert work_order.assigned_to is None

    history = escalation_services.list_escalation_history(db_session, work_order_id=work_order.id)
    assert len(history) == 1
    assert history[0].rule_id == rule.id
    assert history[0].escalation_level == 1
    assert history[0].escalated_to == supervisor.id
    assert history[0].action == "notify_supervisor"

    jobs = _notification_jobs(db_session)
    assert len(jobs) == 1
    assert jobs[0].payload["user_id"] == supervisor.id
    assert jobs[0].payload["type"] == "wo_escalated"
    assert jobs[0].payload["title"] == "Work Order Escalated - Level 1"


def test_work_order_inside_timeout_is_left_alone(db_session):
    warehouse = _create_warehouse(db_session)
    supervisor = _create_profile(db_session, warehouse.id, account_models.ProfileRole.SUPERVISOR, "u1@example.com")
    escalation_services.create_rule(
        db_session,
        work_order_type=CORRECTIVE,
        priority=HIGH,
        timeout_hours=4,
        escalate_to=supervisor.id,
        warehouse_id=warehouse.id,
    )
    work_order = _create_work_order(db_session, warehouse.id)

    assert escalation_services.scan(db_session, T0 + timedelta(hours=3, minutes=59)) == []
    db_session.refresh(work_order)
    assert work_order.escalation_level == 0
    assert _notification_jobs(db_session) == []


def test_completed_work_orders_are_never_escalated(db_session):
    warehouse = _create_warehouse(db_session)
    technician = _create_profile(db_session, warehouse.id, account_models.ProfileRole.TECHNICIAN, "tech@example.com")
    supervisor = _create_profile(db_session, warehouse.id, account_models.ProfileRole.SUPERVISOR, "u1@example.com")
    escalation_services.create_rule(
        db_session,
        work_order_type=CORRECTIVE,
        priority=HIGH,
        timeout_hours=1,
        escalate_to=supervisor.id,
        warehouse_id=warehouse.id,
    )
    work_order = _create_work_order(db_session, warehouse.id, assigned_to=technician.id)
    for status in (
        work_models.WorkOrderStatusEnum.IN_PROGRESS,
        work_models.WorkOrderStatusEnum.COMPLETED,
    ):
        work_services.transition_status(db_session, work_order=work_order, new_status=status, now=T0)
    db_session.commit()

    assert escalation_services.scan(db_session, T0 + timedelta(days=3)) == []
    db_session.refresh(work_order)
    assert work_order.escalation_level == 0


def test_repeat_breach_escalates_once_per_window(db_session):
    warehouse = _create_warehouse(db_session)
    supervisor = _create_profile(db_session, warehouse.id, account_models.ProfileRole.SUPERVISOR, "u1@example.com")
    escalation_services.create_rule(
        db_session,
        work_order_type=CORRECTIVE,
        priority=HIGH,
        timeout_hours=4,
        escalate_to=supervisor.id,
        warehouse_id=warehouse.id,
    )
    work_order = _create_work_order(db_session, warehouse.id)

    # Twelve hours overdue still only moves one level per pass.
    assert len(escalation_services.scan(db_session, T0 + timedelta(hours=12))) == 1
    db_session.commit()
    assert escalation_services.scan(db_session, T0 + timedelta(hours=15)) == []
    actions = escalation_services.scan(db_session, T0 + timedelta(hours=16))
    db_session.commit()

    assert [a.escalation_level for a in actions] == [2]
    db_session.refresh(work_order)
    assert work_order.escalation_level == 2


def test_escalation_stops_at_max_level(db_session):
    warehouse = _create_warehouse(db_session)
    supervisor = _create_profile(db_session, warehouse.id, account_models.ProfileRole.SUPERVISOR, "u1@example.com")
    escalation_services.create_rule(
        db_session,
        work_order_type=CORRECTIVE,
        priority=HIGH,
        timeout_hours=1,
        escalate_to=supervisor.id,
        warehouse_id=warehouse.id,
    )
    work_order = _create_work_order(db_session, warehouse.id)

    for hours in range(1, 6):
        escalation_services.scan(db_session, T0 + timedelta(hours=hours), max_level=2)
        db_session.commit()

    db_session.refresh(work_order)
    assert work_order.escalation_level == 2


def test_strictest_rule_wins(db_session):
    warehouse = _create_warehouse(db_session)
    global_rule = escalation_services.create_rule(
        db_session,
        work_order_type=CORRECTIVE,
        priority=HIGH,
        timeout_hours=8,
        warehouse_id=None,
        now=T0,
    )
    strict = escalation_services.create_rule(
        db_session,
        work_order_type=CORRECTIVE,
        priority=HIGH,
        timeout_hours=2,
        warehouse_id=warehouse.id,
        now=T0 + timedelta(seconds=1),
    )
    same_timeout_later = escalation_services.create_rule(
        db_session,
        work_order_type=CORRECTIVE,
        priority=HIGH,
        timeout_hours=2,
        warehouse_id=warehouse.id,
        now=T0 + timedelta(seconds=2),
    )
    db_session.commit()

    rule = escalation_services.find_applicable_rule(
        db_session,
        work_order_type=CORRECTIVE,
        priority=HIGH,
        warehouse_id=warehouse.id,
    )

    assert rule.id == strict.id
    assert rule.id not in {global_rule.id, same_timeout_later.id}


def test_global_rule_applies_and_target_resolves_by_role(db_session):
    warehouse = _create_warehouse(db_session)
    manager = _create_profile(db_session, warehouse.id, account_models.ProfileRole.MANAGER, "mgr@example.com")
    other = _create_warehouse(db_session, name="Overflow DC")
    _create_profile(db_session, other.id, account_models.ProfileRole.MANAGER, "other-mgr@example.com")
    escalation_services.create_rule(
        db_session,
        work_order_type=work_models.WorkOrderTypeEnum.EMERGENCY,
        priority=work_models.WorkOrderPriorityEnum.CRITICAL,
        timeout_hours=4,
        escalation_action=Action.NOTIFY_MANAGER,
        warehouse_id=None,
    )
    _create_work_order(
        db_session,
        warehouse.id,
        type=work_models.WorkOrderTypeEnum.EMERGENCY,
        priority=work_models.WorkOrderPriorityEnum.CRITICAL,
    )

    actions = escalation_services.scan(db_session, T0 + timedelta(hours=4))

    assert [a.escalated_to for a in actions] == [manager.id]


def test_work_order_without_rule_is_untouched(db_session):
    warehouse = _create_warehouse(db_session)
    _create_profile(db_session, warehouse.id, account_models.ProfileRole.SUPERVISOR, "u1@example.com")
    inactive = escalation_services.create_rule(
        db_session,
        work_order_type=CORRECTIVE,
        priority=work_models.WorkOrderPriorityEnum.LOW,
        timeout_hours=1,
        warehouse_id=warehouse.id,
        active=False,
    )
    work_order = _create_work_order(db_session, warehouse.id, priority=work_models.WorkOrderPriorityEnum.LOW)

    assert escalation_services.scan(db_session, T0 + timedelta(days=10)) == []
    db_session.refresh(work_order)
    assert work_order.escalation_level == 0
    assert inactive.active is False


def test_auto_reassign_moves_assignee(db_session):
    warehouse = _create_warehouse(db_session)
    technician = _create_profile(db_session, warehouse.id, account_models.ProfileRole.TECHNICIAN, "tech@example.com")
    supervisor = _create_profile(db_session, warehouse.id, account_models.ProfileRole.SUPERVISOR, "sup@example.com")
    escalation_services.create_rule(
        db_session,
        work_order_type=CORRECTIVE,
        priority=HIGH,
        timeout_hours=4,
        escalation_action=Action.AUTO_REASSIGN,
        warehouse_id=warehouse.id,
    )
    work_order = _create_work_order(db_session, warehouse.id, assigned_to=technician.id)

    actions = escalation_services.scan(db_session, T0 + timedelta(hours=4))
    db_session.commit()

    assert len(actions) == 1
    db_session.refresh(work_order)
    assert work_order.assigned_to == supervisor.id
    history = escalation_services.list_escalation_history(db_session, work_order_id=work_order.id)
    assert history[0].escalated_from == technician.id
    assert history[0].escalated_to == supervisor.id
    assert _notification_jobs(db_session)[0].payload["type"] == "wo_assigned"


def test_missing_target_skips_without_level_change(db_session):
    warehouse = _create_warehouse(db_session)
    _create_profile(db_session, warehouse.id, account_models.ProfileRole.SUPERVISOR, "sup@example.com")
    escalation_services.create_rule(
        db_session,
        work_order_type=CORRECTIVE,
        priority=HIGH,
        timeout_hours=4,
        escalation_action=Action.NOTIFY_MANAGER,
        warehouse_id=warehouse.id,
    )
    work_order = _create_work_order(db_session, warehouse.id)

    assert escalation_services.scan(db_session, T0 + timedelta(hours=6)) == []
    db_session.refresh(work_order)
    assert work_order.escalation_level == 0
    assert work_order.escalated is False


def test_one_failing_work_order_does_not_stop_the_scan(db_session, monkeypatch):
    warehouse = _create_warehouse(db_session)
    supervisor = _create_profile(db_session, warehouse.id, account_models.ProfileRole.SUPERVISOR, "u1@example.com")
    escalation_services.create_rule(
        db_session,
        work_order_type=CORRECTIVE,
        priority=HIGH,
        timeout_hours=4,
        escalate_to=supervisor.id,
        warehouse_id=warehouse.id,
    )
    broken = _create_work_order(db_session, warehouse.id)
    healthy = _create_work_order(db_session, warehouse.id, now=T0 + timedelta(minutes=1))

    original = escalation_services._resolve_target

    def flaky_resolve(db, *, rule, work_order):
        if work_order.id == broken.id:
            raise RuntimeError("lookup failed")
        return original(db, rule=rule, work_order=work_order)

    monkeypatch.setattr(escalation_services, "_resolve_target", flaky_resolve)

    actions = escalation_services.scan(db_session, T0 + timedelta(hours=5))
    db_session.commit()

    assert [a.work_order_id for a in actions] == [healthy.id]
    db_session.refresh(broken)
    assert broken.escalation_level == 0


def test_escalation_check_job_runs_scan(db_session):
    warehouse = _create_warehouse(db_session)
    supervisor = _create_profile(db_session, warehouse.id, account_models.ProfileRole.SUPERVISOR, "u1@example.com")
    escalation_services.create_rule(
        db_session,
        work_order_type=CORRECTIVE,
        priority=HIGH,
        timeout_hours=4,
        escalate_to=supervisor.id,
        warehouse_id=warehouse.id,
    )
    work_order = _create_work_order(db_session, warehouse.id)
    now = T0 + timedelta(hours=5)
    job_services.enqueue(
        db_session,
        job_models.JobTypeEnum.ESCALATION_CHECK,
        {"warehouse_id": warehouse.id},
        now=now,
    )
    db_session.commit()

    summary = job_services.run_due_jobs(db_session, now=now)

    assert summary["completed"] == 1
    db_session.refresh(work_order)
    assert work_order.escalation_level == 1
    assert len(_notification_jobs(db_session)) == 1


def test_ensure_default_rules_seeds_once(db_session):
    warehouse = _create_warehouse(db_session)

    created = escalation_services.ensure_default_rules(db_session, warehouse_id=warehouse.id, now=T0)
    db_session.commit()

    assert len(created) == 4
    emergency = escalation_services.find_applicable_rule(
        db_session,
        work_order_type=work_models.WorkOrderTypeEnum.EMERGENCY,
        priority=work_models.WorkOrderPriorityEnum.CRITICAL,
        warehouse_id=warehouse.id,
    )
    assert emergency.timeout_hours == 4
    assert emergency.escalation_action == Action.NOTIFY_MANAGER
    assert escalation_services.ensure_default_rules(db_session, warehouse_id=warehouse.id) == []


def test_rule_validation(db_session):
    warehouse = _create_warehouse(db_session)

    with pytest.raises(ValueError):
        escalation_services.create_rule(
            db_session,
            work_order_type=CORRECTIVE,
            priority=HIGH,
            timeout_hours=0,
            warehouse_id=warehouse.id,
        )
    with pytest.raises(ValueError):
        escalation_services.create_rule(
            db_session,
            work_order_type=CORRECTIVE,
            priority=HIGH,
            timeout_hours=4,
            escalate_to="no-such-profile",
            warehouse_id=warehouse.id,
        )

    rule = escalation_services.create_rule(
        db_session,
        work_order_type=CORRECTIVE,
        priority=HIGH,
        timeout_hours=4,
        warehouse_id=warehouse.id,
    )
    with pytest.raises(ValueError):
        escalation_services.update_rule(db_session, rule, changes={"timeout_hours": 0})
    escalation_services.update_rule(db_session, rule, changes={"timeout_hours": 6, "active": False})
    assert rule.timeout_hours == 6
    assert rule.active is False
