from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from cmmsdb.apps.accounts import models as account_models
from cmmsdb.apps.jobs import models as job_models
from cmmsdb.apps.jobs import services as job_services
from cmmsdb.apps.maintenance_program import models as pm_models
from cmmsdb.apps.maintenance_program import service as pm_service
from cmmsdb.apps.scheduler.orchestrator import SchedulerOrchestrator

NOW = datetime(2024, 3, 1, 6, 0, tzinfo=timezone.utc)


def _seed_templates(session_factory, active: int = 2, inactive: int = 1) -> None:
    db = session_factory()
    try:
        warehouse = account_models.Warehouse(name="Main DC")
        db.add(warehouse)
        db.flush()
        for index in range(active + inactive):
            db.add(
                pm_models.PmTemplate(
                    model="FL-2000",
                    component=f"Component {index}",
                    action="Inspect",
                    frequency=pm_models.PmFrequencyEnum.WEEKLY,
                    warehouse_id=warehouse.id,
                    active=index < active,
                    created_at=NOW - timedelta(days=30),
                )
            )
        db.commit()
    finally:
        db.close()


def _jobs(session_factory):
    db = session_factory()
    try:
        return db.query(job_models.Job).order_by(job_models.Job.id).all()
    finally:
        db.close()


def _orchestrator(session_factory, **kwargs) -> SchedulerOrchestrator:
    kwargs.setdefault("clock", lambda: NOW)
    kwargs.setdefault("interval_seconds", 3600)
    return SchedulerOrchestrator(session_factory, **kwargs)


def test_tick_enqueues_one_live_job_per_chain(session_factory):
    _seed_templates(session_factory)
    orchestrator = _orchestrator(session_factory)

    first = orchestrator.tick()
    second = orchestrator.tick(NOW + timedelta(minutes=30))

    assert first["escalation_job_id"] == second["escalation_job_id"]
    assert sorted(first["pm_job_ids"]) == sorted(second["pm_job_ids"])
    assert len(first["pm_job_ids"]) == 2

    jobs = _jobs(session_factory)
    assert len(jobs) == 3
    escalation = [j for j in jobs if j.job_type == job_models.JobTypeEnum.ESCALATION_CHECK]
    assert [j.dedupe_key for j in escalation] == [job_services.ESCALATION_CHECK_DEDUPE_KEY]
    pm_keys = {j.dedupe_key for j in jobs if j.job_type == job_models.JobTypeEnum.PM_GENERATION}
    assert all(key.startswith("pm_generation:") for key in pm_keys)


def test_tick_failure_is_logged_and_retried_next_tick(session_factory, monkeypatch):
    _seed_templates(session_factory)
    orchestrator = _orchestrator(session_factory)
    original = pm_service.bootstrap_pm_chains

    def broken(db, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(pm_service, "bootstrap_pm_chains", broken)
    assert orchestrator.tick() is None
    assert _jobs(session_factory) == []

    monkeypatch.setattr(pm_service, "bootstrap_pm_chains", original)
    summary = orchestrator.tick()
    assert summary is not None
    assert len(_jobs(session_factory)) == 3


def test_tick_recovers_stale_jobs(session_factory):
    db = session_factory()
    job_id = job_services.enqueue(db, job_models.JobTypeEnum.ESCALATION_CHECK, now=NOW - timedelta(hours=2))
    job = db.get(job_models.Job, job_id)
    job.status = job_models.JobStatusEnum.PROCESSING
    job.claimed_at = NOW - timedelta(hours=1)
    db.commit()
    db.close()

    summary = _orchestrator(session_factory).tick()

    assert summary["recovered"] == 1
    recovered = next(j for j in _jobs(session_factory) if j.id == job_id)
    assert recovered.status == job_models.JobStatusEnum.PENDING
    assert recovered.attempts == 1


def test_worker_finishes_current_job_and_claims_no_more_after_stop(session_factory):
    db = session_factory()
    for _ in range(3):
        job_services.enqueue(db, job_models.JobTypeEnum.ESCALATION_CHECK, now=NOW)
    db.commit()
    db.close()
    orchestrator = _orchestrator(session_factory)

    orchestrator._stop_event.set()
    assert orchestrator.run_worker_once() == 1

    statuses = sorted(j.status.value for j in _jobs(session_factory))
    assert statuses == ["completed", "pending", "pending"]

    orchestrator._stop_event.clear()
    assert orchestrator.run_worker_once() == 2


def test_start_and_stop_are_idempotent(session_factory):
    orchestrator = _orchestrator(session_factory, run_worker=False)

    assert orchestrator.stop() is False
    assert orchestrator.start() is True
    try:
        assert orchestrator.start() is False
        assert orchestrator.is_running is True
    finally:
        assert orchestrator.stop(timeout=5) is True
    assert orchestrator.is_running is False
    assert orchestrator.stop() is False


def test_interval_must_be_positive(session_factory):
    with pytest.raises(ValueError):
        SchedulerOrchestrator(session_factory, interval_seconds=0)
