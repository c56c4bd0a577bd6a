from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.db import Base


# -------------------------
# Helpers
# -------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def uuid_str() -> str:
    return str(uuid.uuid4())


# -------------------------
# Identity
# -------------------------

class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    role: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=text("'staff'"),
        default="staff",
    )
    department_code: Mapped[Optional[str]] = mapped_column(String(40), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


# -------------------------
# Lock configuration
# -------------------------

class SystemSettings(Base):
    """
    Tenant-wide lifecycle settings. Singleton row, id=1; a missing row means defaults.
    """
    __tablename__ = "system_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    is_lock_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("true"),
        default=True,
    )
    lock_cutoff_day: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("6"), default=6)
    carry_over_penalty_1: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("80"), default=80)
    carry_over_penalty_2: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("50"), default=50)
    revision_grace_days: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("3"), default=3)
    unlock_default_days: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("7"), default=7)
    updated_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class MonthlyLockSchedule(Base):
    """
    Per-period deadline override. month_index is zero-based (0 = Jan).
    """
    __tablename__ = "monthly_lock_schedules"
    __table_args__ = (
        UniqueConstraint("month_index", "year", name="uq_monthly_lock_schedules_period"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    month_index: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    lock_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    is_force_open: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("false"),
        default=False,
    )
    created_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


# -------------------------
# Action plans
# -------------------------

class ActionPlan(Base):
    """
    A departmental KPI commitment for one reporting period.

    origin_plan_id is a weak edge to the plan this one was carried over from:
    no FK, so deleting a parent never cascades and orphans stay valid.
    version is bumped on every write; clients use it to order their mirrors.
    """
    __tablename__ = "action_plans"
    __table_args__ = (
        Index("ix_action_plans_period", "department_code", "year", "month"),
        Index("ix_action_plans_deleted_at", "deleted_at"),
        UniqueConstraint("origin_plan_id", name="uq_action_plans_origin_plan_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    department_code: Mapped[str] = mapped_column(String(40), nullable=False)
    company_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    month: Mapped[str] = mapped_column(String(3), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)

    goal_strategy: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    action_plan: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    indicator: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pic: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(60), nullable=True)
    area_focus: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    report_format: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    evidence: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    outcome_link: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attachments: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    remark: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Failure analysis, only meaningful while Not Achieved.
    gap_category: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    gap_analysis: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    specify_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=text("'Open'"),
        default="Open",
    )
    submission_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=text("'draft'"),
        default="draft",
    )
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    submitted_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    quality_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_possible_score: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        server_default=text("100"),
        default=100,
    )
    admin_feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    unlock_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    unlock_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    unlock_requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    unlock_requested_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    unlock_approved_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    unlock_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    unlock_rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    approved_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    temporary_unlock_expiry: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    is_blocked: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("false"),
        default=False,
    )
    blocker_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    blocker_category: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    attention_level: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=text("'Standard'"),
        default="Standard",
    )

    origin_plan_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    resolution_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    carry_over_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=text("'Normal'"),
        default="Normal",
    )

    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    deleted_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    deletion_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("1"), default=1)
    created_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class AuditLog(Base):
    """
    Append-only change history for action plans.

    plan_id has no FK so history survives permanent deletes.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_plan_id", "plan_id"),
        Index("ix_audit_logs_created_at", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    plan_id: Mapped[str] = mapped_column(String(36), nullable=False)
    change_type: Mapped[str] = mapped_column(String(40), nullable=False)
    actor: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    previous_value: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    new_value: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
