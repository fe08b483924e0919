"""create scheduling engine tables

Revision ID: 5d8e2a7c4b10
Revises:
Create Date: 2026-01-12 09:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5d8e2a7c4b10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Enums are stored as plain strings (native_enum=False on the models).
_ENUM = sa.String(32)


def upgrade() -> None:
    op.create_table(
        "warehouses",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("address", sa.String(length=512), nullable=True),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="UTC"),
        sa.Column("operating_hours_start", sa.String(length=5), nullable=False, server_default="08:00"),
        sa.Column("operating_hours_end", sa.String(length=5), nullable=False, server_default="17:00"),
        sa.Column("emergency_contact", sa.String(length=255), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_warehouses_active", "warehouses", ["active"])

    op.create_table(
        "profiles",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("first_name", sa.String(length=128), nullable=False),
        sa.Column("last_name", sa.String(length=128), nullable=False),
        sa.Column("role", _ENUM, nullable=False),
        sa.Column(
            "warehouse_id",
            sa.String(length=36),
            sa.ForeignKey("warehouses.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_profiles_email", "profiles", ["email"], unique=True)
    op.create_index("ix_profiles_role", "profiles", ["role"])
    op.create_index("ix_profiles_warehouse_id", "profiles", ["warehouse_id"])
    op.create_index("ix_profiles_active", "profiles", ["active"])
    op.create_index("ix_profiles_warehouse_role_active", "profiles", ["warehouse_id", "role", "active"])

    op.create_table(
        "pm_templates",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("model", sa.String(length=128), nullable=False),
        sa.Column("component", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("frequency", _ENUM, nullable=False),
        sa.Column("estimated_duration", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("priority", _ENUM, nullable=False),
        sa.Column("checklist", sa.JSON(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "warehouse_id",
            sa.String(length=36),
            sa.ForeignKey("warehouses.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("estimated_duration > 0", name="ck_pm_templates_duration_positive"),
    )
    op.create_index("ix_pm_templates_model", "pm_templates", ["model"])
    op.create_index("ix_pm_templates_active", "pm_templates", ["active"])
    op.create_index("ix_pm_templates_warehouse_id", "pm_templates", ["warehouse_id"])
    op.create_index("ix_pm_templates_warehouse_active", "pm_templates", ["warehouse_id", "active"])

    op.create_table(
        "work_orders",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("wo_number", sa.String(length=64), nullable=False),
        sa.Column("type", _ENUM, nullable=False),
        sa.Column("status", _ENUM, nullable=False),
        sa.Column("priority", _ENUM, nullable=False),
        sa.Column("description", sa.String(length=1024), nullable=False),
        sa.Column("area", sa.String(length=128), nullable=True),
        sa.Column("asset_model", sa.String(length=128), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("estimated_hours", sa.Float(), nullable=True),
        sa.Column(
            "warehouse_id",
            sa.String(length=36),
            sa.ForeignKey("warehouses.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "requested_by",
            sa.String(length=36),
            sa.ForeignKey("profiles.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "assigned_to",
            sa.String(length=36),
            sa.ForeignKey("profiles.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("escalated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("escalation_level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "pm_template_id",
            sa.String(length=36),
            sa.ForeignKey("pm_templates.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("pm_due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("pm_template_id", "pm_due_at", name="uq_work_orders_pm_occurrence"),
    )
    op.create_index("ix_work_orders_wo_number", "work_orders", ["wo_number"], unique=True)
    op.create_index("ix_work_orders_type", "work_orders", ["type"])
    op.create_index("ix_work_orders_status", "work_orders", ["status"])
    op.create_index("ix_work_orders_priority", "work_orders", ["priority"])
    op.create_index("ix_work_orders_warehouse_id", "work_orders", ["warehouse_id"])
    op.create_index("ix_work_orders_assigned_to", "work_orders", ["assigned_to"])
    op.create_index("ix_work_orders_pm_template_id", "work_orders", ["pm_template_id"])
    op.create_index("ix_work_orders_created_at", "work_orders", ["created_at"])
    op.create_index("ix_work_orders_warehouse_status", "work_orders", ["warehouse_id", "status"])
    op.create_index("ix_work_orders_pm_template_created", "work_orders", ["pm_template_id", "created_at"])
    op.create_index("ix_work_orders_escalated", "work_orders", ["warehouse_id", "escalated"])

    op.create_table(
        "work_order_checklist_items",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "work_order_id",
            sa.String(length=36),
            sa.ForeignKey("work_orders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("component", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("status", _ENUM, nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_work_order_checklist_items_work_order_id",
        "work_order_checklist_items",
        ["work_order_id"],
    )

    op.create_table(
        "escalation_rules",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("work_order_type", _ENUM, nullable=False),
        sa.Column("priority", _ENUM, nullable=False),
        sa.Column("timeout_hours", sa.Integer(), nullable=False),
        sa.Column("escalation_action", _ENUM, nullable=False),
        sa.Column(
            "escalate_to",
            sa.String(length=36),
            sa.ForeignKey("profiles.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "warehouse_id",
            sa.String(length=36),
            sa.ForeignKey("warehouses.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("timeout_hours >= 1", name="ck_escalation_rules_timeout_min"),
    )
    op.create_index("ix_escalation_rules_warehouse_id", "escalation_rules", ["warehouse_id"])
    op.create_index("ix_escalation_rules_active", "escalation_rules", ["active"])
    op.create_index(
        "ix_escalation_rules_match",
        "escalation_rules",
        ["work_order_type", "priority", "warehouse_id", "active"],
    )

    op.create_table(
        "escalation_history",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "work_order_id",
            sa.String(length=36),
            sa.ForeignKey("work_orders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "rule_id",
            sa.String(length=36),
            sa.ForeignKey("escalation_rules.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("escalation_level", sa.Integer(), nullable=False),
        sa.Column(
            "escalated_from",
            sa.String(length=36),
            sa.ForeignKey("profiles.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "escalated_to",
            sa.String(length=36),
            sa.ForeignKey("profiles.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("escalated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_escalation_history_work_order_id", "escalation_history", ["work_order_id"])
    op.create_index("ix_escalation_history_escalated_at", "escalation_history", ["escalated_at"])
    op.create_index("ix_escalation_history_wo_at", "escalation_history", ["work_order_id", "escalated_at"])

    op.create_table(
        "jobs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("job_type", _ENUM, nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", _ENUM, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("dedupe_key", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("dedupe_key", name="uq_jobs_dedupe_key"),
    )
    op.create_index("ix_jobs_status_scheduled", "jobs", ["status", "scheduled_at", "id"])
    op.create_index("ix_jobs_status_claimed", "jobs", ["status", "claimed_at"])
    op.create_index("ix_jobs_type_created", "jobs", ["job_type", "created_at"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(length=36),
            sa.ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "warehouse_id",
            sa.String(length=36),
            sa.ForeignKey("warehouses.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("notification_type", _ENUM, nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("related_entity_type", sa.String(length=64), nullable=True),
        sa.Column("related_entity_id", sa.String(length=36), nullable=True),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("source_job_id", sa.String(length=36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("source_job_id", name="uq_notifications_source_job_id"),
    )
    op.create_index("ix_notifications_id", "notifications", ["id"])
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
    op.create_index("ix_notifications_notification_type", "notifications", ["notification_type"])
    op.create_index("ix_notifications_created_at", "notifications", ["created_at"])
    op.create_index("ix_notifications_user_read", "notifications", ["user_id", "read"])
    op.create_index("ix_notifications_warehouse_created", "notifications", ["warehouse_id", "created_at"])


def downgrade() -> None:
    op.drop_table("notifications")
    op.drop_table("jobs")
    op.drop_table("escalation_history")
    op.drop_table("escalation_rules")
    op.drop_table("work_order_checklist_items")
    op.drop_table("work_orders")
    op.drop_table("pm_templates")
    op.drop_table("profiles")
    op.drop_table("warehouses")
