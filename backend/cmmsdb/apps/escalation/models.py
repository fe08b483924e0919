from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
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
from sqlalchemy.orm import relationship

from ...database import Base
from ...utils.identifiers import generate_uuid7
from ..work.models import WorkOrderPriorityEnum, WorkOrderTypeEnum


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EscalationActionEnum(str, Enum):
    NOTIFY_SUPERVISOR = "notify_supervisor"
    NOTIFY_MANAGER = "notify_manager"
    AUTO_REASSIGN = "auto_reassign"


# History rows written by a person rather than a rule.
MANUAL_ESCALATION_ACTION = "manual_escalation"


class EscalationRule(Base):
    """
    Time-based escalation policy for one (work order type, priority) pair.

    `warehouse_id` NULL means the rule applies to every warehouse. When
    several active rules match a work order the strictest one wins: smallest
    `timeout_hours`, then smallest id.
    """

    __tablename__ = "escalation_rules"
    __table_args__ = (
        Index(
            "ix_escalation_rules_match",
            "work_order_type",
            "priority",
            "warehouse_id",
            "active",
        ),
        CheckConstraint("timeout_hours >= 1", name="ck_escalation_rules_timeout_min"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    work_order_type = Column(
        SQLEnum(WorkOrderTypeEnum, name="escalation_rule_wo_type_enum", native_enum=False),
        nullable=False,
    )
    priority = Column(
        SQLEnum(WorkOrderPriorityEnum, name="escalation_rule_priority_enum", native_enum=False),
        nullable=False,
    )
    timeout_hours = Column(Integer, nullable=False)
    escalation_action = Column(
        SQLEnum(EscalationActionEnum, name="escalation_action_enum", native_enum=False),
        nullable=False,
        default=EscalationActionEnum.NOTIFY_SUPERVISOR,
    )
    escalate_to = Column(String(36), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)
    warehouse_id = Column(
        String(36),
        ForeignKey("warehouses.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return (
            f"<EscalationRule id={self.id} {self.work_order_type}/{self.priority} "
            f"timeout={self.timeout_hours}h action={self.escalation_action}>"
        )


class EscalationHistory(Base):
    """Append-only record of every escalation, automatic or manual."""

    __tablename__ = "escalation_history"
    __table_args__ = (
        Index("ix_escalation_history_wo_at", "work_order_id", "escalated_at"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    work_order_id = Column(
        String(36),
        ForeignKey("work_orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    rule_id = Column(
        String(36),
        ForeignKey("escalation_rules.id", ondelete="SET NULL"),
        nullable=True,
    )
    escalation_level = Column(Integer, nullable=False)
    escalated_from = Column(String(36), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)
    escalated_to = Column(String(36), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)
    action = Column(String(64), nullable=False)
    reason = Column(Text, nullable=True)
    escalated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)

    rule = relationship("EscalationRule")

    def __repr__(self) -> str:
        return f"<EscalationHistory wo={self.work_order_id} level={self.escalation_level} action={self.action}>"
