# backend/cmmsdb/apps/accounts/models.py
#
# Warehouses and staff profiles.
#
# Both tables are owned by the surrounding CMMS application; the scheduling
# engine only reads them to scope work and to resolve escalation targets and
# notification recipients by role.

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
)
from sqlalchemy.orm import relationship

from cmmsdb.database import Base
from cmmsdb.utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# ENUMS
# ---------------------------------------------------------------------------


class ProfileRole(str, enum.Enum):
    """
    Roles used for escalation routing.

    Escalation rules without an explicit `escalate_to` resolve their target
    by role within the work order's warehouse (supervisor / manager).
    """

    TECHNICIAN = "technician"
    SUPERVISOR = "supervisor"
    MANAGER = "manager"
    ADMIN = "admin"
    INVENTORY_CLERK = "inventory_clerk"
    CONTRACTOR = "contractor"
    REQUESTER = "requester"


# ---------------------------------------------------------------------------
# Warehouse
# ---------------------------------------------------------------------------


class Warehouse(Base):
    """
    A maintenance site. Every work order, template and rule is scoped to one.

    Operating hours are informational metadata; the engine does not shift
    deadlines around them.
    """

    __tablename__ = "warehouses"

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    name = Column(String(255), nullable=False)
    address = Column(String(512), nullable=True)
    timezone = Column(String(64), nullable=False, default="UTC")
    operating_hours_start = Column(String(5), nullable=False, default="08:00")
    operating_hours_end = Column(String(5), nullable=False, default="17:00")
    emergency_contact = Column(String(255), nullable=True)

    active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    profiles = relationship("Profile", back_populates="warehouse", lazy="selectin")

    def __repr__(self) -> str:
        return f"<Warehouse {self.id} {self.name}>"


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


class Profile(Base):
    __tablename__ = "profiles"
    __table_args__ = (
        Index("ix_profiles_warehouse_role_active", "warehouse_id", "role", "active"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    email = Column(String(255), nullable=False, unique=True, index=True)
    first_name = Column(String(128), nullable=False)
    last_name = Column(String(128), nullable=False)

    role = Column(
        Enum(ProfileRole, name="profile_role_enum", native_enum=False),
        nullable=False,
        default=ProfileRole.TECHNICIAN,
        index=True,
    )
    warehouse_id = Column(
        String(36),
        ForeignKey("warehouses.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    warehouse = relationship("Warehouse", back_populates="profiles")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def __repr__(self) -> str:
        return f"<Profile {self.id} role={self.role}>"
