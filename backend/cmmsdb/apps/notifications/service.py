from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from cmmsdb.apps.accounts import models as account_models
from cmmsdb.apps.jobs import models as job_models
from cmmsdb.apps.jobs import services as job_services

from . import models, providers

logger = logging.getLogger(__name__)


def enqueue_notification(
    db: Session,
    *,
    user_id: str,
    notification_type: models.NotificationType,
    title: str,
    message: str,
    related_entity: Optional[dict] = None,
    warehouse_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    payload = {
        "user_id": user_id,
        "type": models.NotificationType(notification_type).value,
        "title": title,
        "message": message,
        "related_entity": related_entity,
        "warehouse_id": warehouse_id,
    }
    return job_services.enqueue(
        db,
        job_models.JobTypeEnum.NOTIFICATION_SEND,
        payload,
        now=now,
    )


def _require(payload: dict, key: str) -> str:
    value = payload.get(key)
    if not value or not isinstance(value, str):
        raise job_services.JobDataError(f"notification_send payload is missing '{key}'")
    return value


def handle_notification_send(db: Session, job: job_models.Job, now: datetime) -> None:
    """
    Deliver one notification through the configured sink and record it in-app.

    A notification already recorded for this job means an earlier delivery
    succeeded and only the completion was lost, so nothing is sent again.
    """
    payload = job.payload or {}
    user_id = _require(payload, "user_id")
    title = _require(payload, "title")
    message = _require(payload, "message")
    try:
        notification_type = models.NotificationType(_require(payload, "type"))
    except ValueError as exc:
        raise job_services.JobDataError(str(exc)) from exc

    existing = (
        db.query(models.Notification)
        .filter(models.Notification.source_job_id == job.id)
        .first()
    )
    if existing:
        logger.info("Notification already delivered", extra={"job_id": job.id})
        return None

    recipient = db.query(account_models.Profile).filter(account_models.Profile.id == user_id).first()
    if not recipient:
        raise job_services.JobDataError(f"Notification recipient {user_id} does not exist")

    related_entity = payload.get("related_entity") or None
    sink, configured = providers.get_notification_sink()
    if configured:
        sink.send(
            user_id=user_id,
            notification_type=notification_type.value,
            title=title,
            message=message,
            related_entity=related_entity,
        )

    notification = models.Notification(
        user_id=user_id,
        warehouse_id=payload.get("warehouse_id") or recipient.warehouse_id,
        notification_type=notification_type,
        title=title,
        message=message,
        related_entity_type=(related_entity or {}).get("type"),
        related_entity_id=(related_entity or {}).get("id"),
        source_job_id=job.id,
        created_at=now,
    )
    db.add(notification)
    db.flush()
    return None
