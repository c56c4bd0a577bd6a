"""create action plan lifecycle tables

Revision ID: 3c9e1f4a7b20
Revises:
Create Date: 2026-01-12 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "3c9e1f4a7b20"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=True),
        sa.Column("role", sa.String(length=20), server_default=sa.text("'staff'"), nullable=False),
        sa.Column("department_code", sa.String(length=40), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_department_code", "users", ["department_code"], unique=False)

    op.create_table(
        "system_settings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("is_lock_enabled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("lock_cutoff_day", sa.Integer(), server_default=sa.text("6"), nullable=False),
        sa.Column("carry_over_penalty_1", sa.Integer(), server_default=sa.text("80"), nullable=False),
        sa.Column("carry_over_penalty_2", sa.Integer(), server_default=sa.text("50"), nullable=False),
        sa.Column("revision_grace_days", sa.Integer(), server_default=sa.text("3"), nullable=False),
        sa.Column("unlock_default_days", sa.Integer(), server_default=sa.text("7"), nullable=False),
        sa.Column("updated_by", sa.String(length=36), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "monthly_lock_schedules",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("month_index", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("lock_date", sa.DateTime(), nullable=True),
        sa.Column("is_force_open", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("created_by", sa.String(length=36), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("month_index", "year", name="uq_monthly_lock_schedules_period"),
    )

    op.create_table(
        "action_plans",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("department_code", sa.String(length=40), nullable=False),
        sa.Column("company_id", sa.String(length=36), nullable=True),
        sa.Column("month", sa.String(length=3), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("goal_strategy", sa.Text(), nullable=True),
        sa.Column("action_plan", sa.Text(), nullable=True),
        sa.Column("indicator", sa.Text(), nullable=True),
        sa.Column("pic", sa.String(length=200), nullable=True),
        sa.Column("category", sa.String(length=60), nullable=True),
        sa.Column("area_focus", sa.String(length=200), nullable=True),
        sa.Column("report_format", sa.String(length=120), nullable=True),
        sa.Column("evidence", sa.Text(), nullable=True),
        sa.Column("outcome_link", sa.Text(), nullable=True),
        sa.Column("attachments", sa.JSON(), nullable=True),
        sa.Column("remark", sa.Text(), nullable=True),
        sa.Column("gap_category", sa.String(length=120), nullable=True),
        sa.Column("gap_analysis", sa.Text(), nullable=True),
        sa.Column("specify_reason", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=20), server_default=sa.text("'Open'"), nullable=False),
        sa.Column("submission_status", sa.String(length=20), server_default=sa.text("'draft'"), nullable=False),
        sa.Column("submitted_at", sa.DateTime(), nullable=True),
        sa.Column("submitted_by", sa.String(length=36), nullable=True),
        sa.Column("quality_score", sa.Integer(), nullable=True),
        sa.Column("max_possible_score", sa.Integer(), server_default=sa.text("100"), nullable=False),
        sa.Column("admin_feedback", sa.Text(), nullable=True),
        sa.Column("reviewed_by", sa.String(length=36), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(), nullable=True),
        sa.Column("unlock_status", sa.String(length=20), nullable=True),
        sa.Column("unlock_reason", sa.Text(), nullable=True),
        sa.Column("unlock_requested_at", sa.DateTime(), nullable=True),
        sa.Column("unlock_requested_by", sa.String(length=36), nullable=True),
        sa.Column("unlock_approved_by", sa.String(length=36), nullable=True),
        sa.Column("unlock_approved_at", sa.DateTime(), nullable=True),
        sa.Column("unlock_rejection_reason", sa.Text(), nullable=True),
        sa.Column("approved_until", sa.DateTime(), nullable=True),
        sa.Column("temporary_unlock_expiry", sa.DateTime(), nullable=True),
        sa.Column("is_blocked", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("blocker_reason", sa.Text(), nullable=True),
        sa.Column("blocker_category", sa.String(length=120), nullable=True),
        sa.Column("attention_level", sa.String(length=20), server_default=sa.text("'Standard'"), nullable=False),
        sa.Column("origin_plan_id", sa.String(length=36), nullable=True),
        sa.Column("resolution_type", sa.String(length=20), nullable=True),
        sa.Column("carry_over_status", sa.String(length=20), server_default=sa.text("'Normal'"), nullable=False),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.Column("deleted_by", sa.String(length=36), nullable=True),
        sa.Column("deletion_reason", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("created_by", sa.String(length=36), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("origin_plan_id", name="uq_action_plans_origin_plan_id"),
    )
    op.create_index("ix_action_plans_company_id", "action_plans", ["company_id"], unique=False)
    op.create_index("ix_action_plans_period", "action_plans", ["department_code", "year", "month"], unique=False)
    op.create_index("ix_action_plans_deleted_at", "action_plans", ["deleted_at"], unique=False)

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("plan_id", sa.String(length=36), nullable=False),
        sa.Column("change_type", sa.String(length=40), nullable=False),
        sa.Column("actor", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("previous_value", sa.JSON(), nullable=True),
        sa.Column("new_value", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_plan_id", "audit_logs", ["plan_id"], unique=False)
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_created_at", table_name="audit_logs")
    op.drop_index("ix_audit_logs_plan_id", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_action_plans_deleted_at", table_name="action_plans")
    op.drop_index("ix_action_plans_period", table_name="action_plans")
    op.drop_index("ix_action_plans_company_id", table_name="action_plans")
    op.drop_table("action_plans")
    op.drop_table("monthly_lock_schedules")
    op.drop_table("system_settings")
    op.drop_index("ix_users_department_code", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
