"""Job handler registry."""

from __future__ import annotations

from typing import Mapping

from cmmsdb.apps.escalation import services as escalation_services
from cmmsdb.apps.maintenance_program import service as pm_service
from cmmsdb.apps.notifications import service as notification_service

from .models import JobTypeEnum
from .services import JobHandler

JOB_HANDLERS: Mapping[JobTypeEnum, JobHandler] = {
    JobTypeEnum.ESCALATION_CHECK: escalation_services.handle_escalation_check,
    JobTypeEnum.PM_GENERATION: pm_service.handle_pm_generation,
    JobTypeEnum.NOTIFICATION_SEND: notification_service.handle_notification_send,
}
