# backend/cmmsdb/apps/work/models.py

"""
Work module ORM models.

- WorkOrder: a trackable maintenance task (corrective, preventive or
  emergency) with an ordered lifecycle and escalation bookkeeping.
- WorkOrderChecklistItem: component / action steps under a work order,
  copied from the PM template for generated preventive work.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Enum as SQLEnum,
)
from sqlalchemy.orm import relationship

from ...database import Base
from ...utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations – kept as strings to match API and DB values
# ---------------------------------------------------------------------------


class WorkOrderTypeEnum(str, Enum):
    CORRECTIVE = "corrective"
    PREVENTIVE = "preventive"
    EMERGENCY = "emergency"


class WorkOrderStatusEnum(str, Enum):
    """Ordered lifecycle state of the work order."""

    NEW = "new"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    VERIFIED = "verified"
    CLOSED = "closed"


class WorkOrderPriorityEnum(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ChecklistItemStatusEnum(str, Enum):
    PENDING = "pending"
    DONE = "done"
    SKIPPED = "skipped"
    ISSUE = "issue"


# Completed work is no longer monitored for timeouts, even before it is
# formally verified or closed.
INACTIVE_STATUSES = frozenset(
    {
        WorkOrderStatusEnum.COMPLETED,
        WorkOrderStatusEnum.VERIFIED,
        WorkOrderStatusEnum.CLOSED,
    }
)

OPEN_STATUSES = tuple(s for s in WorkOrderStatusEnum if s not in INACTIVE_STATUSES)


# ---------------------------------------------------------------------------
# WorkOrder
# ---------------------------------------------------------------------------


class WorkOrder(Base):
    """
    Maintenance work order.

    Escalation fields (`escalated`, `escalation_level`) are written only by
    the escalation evaluator, always through a conditional update keyed on
    the level that was read, so two concurrent scans cannot both bump it.

    PM traceability: `pm_template_id` + `pm_due_at` identify the template
    occurrence a generated work order satisfies; the pair is unique so a
    redelivered generation job cannot create a second copy.
    """

    __tablename__ = "work_orders"
    __table_args__ = (
        UniqueConstraint("pm_template_id", "pm_due_at", name="uq_work_orders_pm_occurrence"),
        Index("ix_work_orders_warehouse_status", "warehouse_id", "status"),
        Index("ix_work_orders_pm_template_created", "pm_template_id", "created_at"),
        Index("ix_work_orders_escalated", "warehouse_id", "escalated"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    wo_number = Column(String(64), nullable=False, unique=True, index=True)

    type = Column(
        SQLEnum(WorkOrderTypeEnum, name="work_order_type_enum", native_enum=False),
        nullable=False,
        default=WorkOrderTypeEnum.CORRECTIVE,
        index=True,
    )
    status = Column(
        SQLEnum(WorkOrderStatusEnum, name="work_order_status_enum", native_enum=False),
        nullable=False,
        default=WorkOrderStatusEnum.NEW,
        index=True,
    )
    priority = Column(
        SQLEnum(WorkOrderPriorityEnum, name="work_order_priority_enum", native_enum=False),
        nullable=False,
        default=WorkOrderPriorityEnum.MEDIUM,
        index=True,
    )

    description = Column(String(1024), nullable=False)
    area = Column(String(128), nullable=True)
    asset_model = Column(String(128), nullable=True)
    notes = Column(Text, nullable=True)
    estimated_hours = Column(Float, nullable=True)

    warehouse_id = Column(
        String(36),
        ForeignKey("warehouses.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    requested_by = Column(String(36), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)
    assigned_to = Column(
        String(36),
        ForeignKey("profiles.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    escalated = Column(Boolean, nullable=False, default=False)
    escalation_level = Column(Integer, nullable=False, default=0)

    pm_template_id = Column(
        String(36),
        ForeignKey("pm_templates.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    pm_due_at = Column(DateTime(timezone=True), nullable=True)

    due_date = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    checklist_items = relationship(
        "WorkOrderChecklistItem",
        back_populates="work_order",
        cascade="all, delete-orphan",
        order_by="WorkOrderChecklistItem.sort_order",
        lazy="selectin",
    )

    @property
    def is_active(self) -> bool:
        return self.status not in INACTIVE_STATUSES

    def __repr__(self) -> str:
        return (
            f"<WorkOrder id={self.id} wo_number={self.wo_number} status={self.status} "
            f"level={self.escalation_level}>"
        )


# ---------------------------------------------------------------------------
# WorkOrderChecklistItem
# ---------------------------------------------------------------------------


class WorkOrderChecklistItem(Base):
    __tablename__ = "work_order_checklist_items"

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    work_order_id = Column(
        String(36),
        ForeignKey("work_orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    component = Column(String(255), nullable=False)
    action = Column(String(255), nullable=False)
    status = Column(
        SQLEnum(ChecklistItemStatusEnum, name="checklist_item_status_enum", native_enum=False),
        nullable=False,
        default=ChecklistItemStatusEnum.PENDING,
    )
    notes = Column(Text, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    work_order = relationship("WorkOrder", back_populates="checklist_items")
