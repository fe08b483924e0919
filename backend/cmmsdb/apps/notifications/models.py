from __future__ import annotations

from datetime import datetime, timezone
import enum

from sqlalchemy import Boolean, Column, DateTime, Enum as SAEnum, ForeignKey, Index, String, Text

from cmmsdb.database import Base
from cmmsdb.utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationType(str, enum.Enum):
    WO_ASSIGNED = "wo_assigned"
    WO_OVERDUE = "wo_overdue"
    WO_ESCALATED = "wo_escalated"
    PM_DUE = "pm_due"
    EQUIPMENT_ALERT = "equipment_alert"
    PART_LOW_STOCK = "part_low_stock"


class Notification(Base):
    """
    In-app notification written when a `notification_send` job is delivered.

    `source_job_id` is unique so a redelivered job never produces a second
    notification for the same request.
    """

    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_user_read", "user_id", "read"),
        Index("ix_notifications_warehouse_created", "warehouse_id", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7, index=True)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    warehouse_id = Column(String(36), ForeignKey("warehouses.id", ondelete="SET NULL"), nullable=True)

    notification_type = Column(
        SAEnum(NotificationType, name="notification_type_enum", native_enum=False),
        nullable=False,
        index=True,
    )
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    related_entity_type = Column(String(64), nullable=True)
    related_entity_id = Column(String(36), nullable=True)
    read = Column(Boolean, nullable=False, default=False)

    source_job_id = Column(String(36), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)

    def __repr__(self) -> str:
        return f"<Notification id={self.id} user={self.user_id} type={self.notification_type}>"
