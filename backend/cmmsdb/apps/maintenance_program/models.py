# backend/cmmsdb/apps/maintenance_program/models.py
#
# ORM model for the maintenance program module:
# - PmTemplate : a recurring preventive-maintenance task definition
#                (asset model / component / action) with a calendar frequency.
#
# Templates are maintained by the host application; the PM generator only
# reads them. Work orders generated from a template point back at it through
# WorkOrder.pm_template_id.

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Enum as SQLEnum,
)

from ...database import Base
from ...utils.identifiers import generate_uuid7
from ..work.models import WorkOrderPriorityEnum


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class PmFrequencyEnum(str, Enum):
    """Calendar recurrence of a PM template."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


# ---------------------------------------------------------------------------
# PmTemplate
# ---------------------------------------------------------------------------


class PmTemplate(Base):
    """
    Preventive maintenance template.

    `checklist` is an optional JSON list of {"component", "action"} steps
    copied onto every generated work order. Without it a single checklist
    item is built from the template's own component / action.
    """

    __tablename__ = "pm_templates"
    __table_args__ = (
        Index("ix_pm_templates_warehouse_active", "warehouse_id", "active"),
        CheckConstraint("estimated_duration > 0", name="ck_pm_templates_duration_positive"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)

    model = Column(String(128), nullable=False, index=True)
    component = Column(String(255), nullable=False)
    action = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    frequency = Column(
        SQLEnum(PmFrequencyEnum, name="pm_frequency_enum", native_enum=False),
        nullable=False,
    )
    # Minutes.
    estimated_duration = Column(Integer, nullable=False, default=60)
    priority = Column(
        SQLEnum(WorkOrderPriorityEnum, name="pm_template_priority_enum", native_enum=False),
        nullable=False,
        default=WorkOrderPriorityEnum.MEDIUM,
    )
    checklist = Column(JSON, nullable=True)

    active = Column(Boolean, nullable=False, default=True, index=True)
    warehouse_id = Column(
        String(36),
        ForeignKey("warehouses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return f"<PmTemplate id={self.id} {self.model} {self.component} {self.frequency}>"
