from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.domain.contracts import (
    ATTENTION_STANDARD,
    RESOLUTION_CARRIED_OVER,
    RESOLUTION_DROPPED,
    STATUS_BLOCKED,
    STATUS_NOT_ACHIEVED,
    STATUS_ON_PROGRESS,
    SUBMISSION_SUBMITTED,
    TERMINAL_STATUSES,
    BlockerReport,
    BlockerResolution,
    PlanCreate,
    PlanFieldsUpdate,
    SoftDelete,
    StatusUpdate,
    actor_id,
)
from backend.app.domain.errors import PlanSubmitted, ValidationError
from backend.app.models import ActionPlan, utcnow
from backend.app.services import audit_service, notification_service
from backend.app.services.deadline_service import parse_month_name, month_short_name
from backend.app.services.escalation_service import (
    apply_blocker_reset,
    ensure_attention_level_allowed,
    is_escalated,
    validate_blocker_reason,
)
from backend.app.services.lock_service import ensure_plan_writable

logger = logging.getLogger(__name__)

NARRATIVE_FIELDS = (
    "goal_strategy",
    "action_plan",
    "indicator",
    "pic",
    "category",
    "area_focus",
    "report_format",
)

# Failure analysis that must not survive a plan leaving Not Achieved.
GAP_FIELDS = ("gap_category", "gap_analysis", "specify_reason", "remark", "outcome_link")

BLOCKER_FIELDS = ("is_blocked", "blocker_reason", "blocker_category", "attention_level")

FOLLOW_UP_CARRY_OVER = "carry_over"


def require_plan(db: Session, plan_id: str, *, include_deleted: bool = False) -> ActionPlan:
    plan = db.get(ActionPlan, plan_id)
    if not plan or (plan.deleted_at is not None and not include_deleted):
        raise HTTPException(status_code=404, detail="action plan not found")
    return plan


def normalize_month(month: str) -> str:
    index = parse_month_name(month)
    if index < 0:
        raise ValidationError(f"Invalid month: {month!r}", {"month": month})
    return month_short_name(index)


def touch_plan(plan: ActionPlan, now: datetime) -> None:
    plan.updated_at = now
    plan.version = (plan.version or 0) + 1


def is_graded(plan: ActionPlan) -> bool:
    return plan.submission_status == SUBMISSION_SUBMITTED and plan.quality_score is not None


def ensure_not_submitted(plan: ActionPlan) -> None:
    if plan.submission_status == SUBMISSION_SUBMITTED:
        raise PlanSubmitted(plan.id, graded=plan.quality_score is not None)


def _actor_label(actor) -> Optional[str]:
    if actor is None:
        return None
    return getattr(actor, "email", None) or actor_id(actor)


def _snapshot(plan: ActionPlan, fields) -> Dict[str, Any]:
    return audit_service.plan_snapshot(plan, fields)


def period_plans(
    db: Session,
    *,
    department_code: str,
    month: str,
    year: int,
    submission_status: Optional[str] = None,
) -> List[ActionPlan]:
    query = select(ActionPlan).where(
        ActionPlan.department_code == department_code,
        ActionPlan.month == month,
        ActionPlan.year == year,
        ActionPlan.deleted_at.is_(None),
    )
    if submission_status:
        query = query.where(ActionPlan.submission_status == submission_status)
    return list(
        db.execute(query.order_by(ActionPlan.created_at.asc(), ActionPlan.id.asc())).scalars().all()
    )


def create_plan(
    db: Session,
    *,
    payload: PlanCreate,
    actor=None,
    now: Optional[datetime] = None,
) -> ActionPlan:
    now = now or utcnow()
    plan = ActionPlan(
        department_code=payload.department_code,
        company_id=payload.company_id,
        month=payload.month,
        year=payload.year,
        status="Open",
        submission_status="draft",
        max_possible_score=100,
        carry_over_status="Normal",
        attention_level=ATTENTION_STANDARD,
        is_blocked=False,
        version=1,
        created_by=actor_id(actor),
        created_at=now,
        updated_at=now,
    )
    for key in NARRATIVE_FIELDS:
        setattr(plan, key, getattr(payload, key))
    ensure_plan_writable(db, plan, actor=actor, now=now)

    db.add(plan)
    db.flush()
    summary = (plan.action_plan or "")[:50]
    audit_service.record_change(
        db,
        plan_id=plan.id,
        change_type=audit_service.CREATED,
        actor=_actor_label(actor),
        description=f'Created action plan: "{summary}" for {plan.month} {plan.year}',
        new=_snapshot(plan, None),
    )
    return plan


def list_plans(
    db: Session,
    *,
    department_code: Optional[str] = None,
    month: Optional[str] = None,
    year: Optional[int] = None,
    company_id: Optional[str] = None,
    include_deleted: bool = False,
) -> List[ActionPlan]:
    query = select(ActionPlan)
    if department_code:
        query = query.where(ActionPlan.department_code == department_code.strip().upper())
    if month:
        query = query.where(ActionPlan.month == normalize_month(month))
    if year:
        query = query.where(ActionPlan.year == year)
    if company_id:
        query = query.where(ActionPlan.company_id == company_id)
    if not include_deleted:
        query = query.where(ActionPlan.deleted_at.is_(None))
    return list(
        db.execute(query.order_by(ActionPlan.created_at.asc(), ActionPlan.id.asc())).scalars().all()
    )


def list_deleted_plans(db: Session, *, department_code: Optional[str] = None) -> List[ActionPlan]:
    query = select(ActionPlan).where(ActionPlan.deleted_at.is_not(None))
    if department_code:
        query = query.where(ActionPlan.department_code == department_code.strip().upper())
    return list(db.execute(query.order_by(ActionPlan.deleted_at.desc())).scalars().all())


def get_origin(db: Session, plan: ActionPlan) -> Optional[ActionPlan]:
    """Parent of a carried-over plan, or None when it never existed or was purged."""
    if not plan.origin_plan_id:
        return None
    return db.get(ActionPlan, plan.origin_plan_id)


def update_plan_fields(
    db: Session,
    plan_id: str,
    *,
    payload: PlanFieldsUpdate,
    actor=None,
    now: Optional[datetime] = None,
) -> ActionPlan:
    now = now or utcnow()
    plan = require_plan(db, plan_id)
    ensure_not_submitted(plan)
    ensure_plan_writable(db, plan, actor=actor, now=now)

    updates = payload.model_dump(exclude_unset=True, exclude={"kind"})
    if not updates:
        return plan

    original = _snapshot(plan, list(updates.keys()) + ["month", "status"])
    for key, value in updates.items():
        setattr(plan, key, value)
    touch_plan(plan, now)
    db.flush()

    merged = dict(original)
    merged.update(_snapshot(plan, list(updates.keys())))
    audit_service.record_change(
        db,
        plan_id=plan.id,
        change_type=audit_service.classify_field_update(updates),
        actor=_actor_label(actor),
        description=json.dumps(audit_service.describe_changes(original, merged)),
        previous=original,
        new=_snapshot(plan, list(updates.keys())),
    )
    return plan


def update_status(
    db: Session,
    plan_id: str,
    *,
    payload: StatusUpdate,
    actor=None,
    now: Optional[datetime] = None,
) -> ActionPlan:
    """
    Move a draft plan between Open / On Progress / Blocked / Achieved / Not Achieved.

    Leaving Not Achieved wipes the failure analysis, and any status other than
    Not Achieved drops the carry-over/drop follow-up. Entering a final status or
    leaving Blocked resets every blocker field together. Entering Blocked needs
    a reason long enough for the chosen attention level.
    """
    now = now or utcnow()
    plan = require_plan(db, plan_id)
    ensure_not_submitted(plan)
    ensure_plan_writable(db, plan, actor=actor, now=now)

    new_status = payload.status
    previous_status = plan.status
    if new_status == previous_status and new_status != STATUS_BLOCKED and payload.follow_up is None:
        return plan
    if payload.follow_up == FOLLOW_UP_CARRY_OVER:
        # carry_over_service imports this module.
        from backend.app.services.carry_over_service import ensure_can_carry_over

        ensure_can_carry_over(plan)

    reason = None
    level = ATTENTION_STANDARD
    if new_status == STATUS_BLOCKED:
        level = payload.attention_level or plan.attention_level or ATTENTION_STANDARD
        ensure_attention_level_allowed(getattr(actor, "role", None), level)
        reason = validate_blocker_reason(payload.blocker_reason or plan.blocker_reason, level)

    tracked = ("status", "resolution_type") + BLOCKER_FIELDS + GAP_FIELDS
    before = _snapshot(plan, tracked)

    if previous_status == STATUS_NOT_ACHIEVED and new_status != STATUS_NOT_ACHIEVED:
        for key in GAP_FIELDS:
            setattr(plan, key, None)
    if new_status != STATUS_NOT_ACHIEVED:
        plan.resolution_type = None
    elif payload.follow_up is not None:
        plan.resolution_type = (
            RESOLUTION_CARRIED_OVER if payload.follow_up == FOLLOW_UP_CARRY_OVER else RESOLUTION_DROPPED
        )
    if new_status in TERMINAL_STATUSES or (
        previous_status == STATUS_BLOCKED and new_status != STATUS_BLOCKED
    ):
        apply_blocker_reset(plan)
    if new_status == STATUS_BLOCKED:
        plan.is_blocked = True
        plan.blocker_reason = reason
        plan.attention_level = level
        if payload.blocker_category is not None:
            plan.blocker_category = payload.blocker_category
    plan.status = new_status
    touch_plan(plan, now)
    db.flush()

    audit_service.record_change(
        db,
        plan_id=plan.id,
        change_type=audit_service.STATUS_UPDATE,
        actor=_actor_label(actor),
        description=(
            f"Changed Status from '{previous_status}' to '{new_status}'"
            if new_status != previous_status
            else f"Set follow-up to '{plan.resolution_type}'"
        ),
        previous=before,
        new=_snapshot(plan, tracked),
    )
    if new_status == STATUS_BLOCKED and is_escalated(plan):
        notification_service.notify(
            notification_service.BLOCKER_ESCALATED,
            plan.id,
            {"attention_level": plan.attention_level, "reason": plan.blocker_reason},
        )
    return plan


def report_blocker(
    db: Session,
    plan_id: str,
    *,
    payload: BlockerReport,
    actor=None,
    now: Optional[datetime] = None,
) -> ActionPlan:
    """Flag a blocker without forcing the status; an in-progress plan can be blocked."""
    now = now or utcnow()
    plan = require_plan(db, plan_id)
    ensure_not_submitted(plan)
    ensure_plan_writable(db, plan, actor=actor, now=now)
    if plan.status in TERMINAL_STATUSES:
        raise ValidationError(
            "A completed plan cannot carry a blocker.",
            {"plan_id": plan.id, "status": plan.status},
        )
    ensure_attention_level_allowed(getattr(actor, "role", None), payload.attention_level)
    reason = validate_blocker_reason(payload.reason, payload.attention_level)

    before = _snapshot(plan, BLOCKER_FIELDS)
    plan.is_blocked = True
    plan.blocker_reason = reason
    plan.attention_level = payload.attention_level
    plan.blocker_category = payload.blocker_category
    touch_plan(plan, now)
    db.flush()

    audit_service.record_change(
        db,
        plan_id=plan.id,
        change_type=audit_service.BLOCKER_REPORTED,
        actor=_actor_label(actor),
        description=f"Reported blocker ({payload.attention_level}): {audit_service.truncate_text(reason)}",
        previous=before,
        new=_snapshot(plan, BLOCKER_FIELDS),
    )
    if payload.attention_level != ATTENTION_STANDARD:
        notification_service.notify(
            notification_service.BLOCKER_ESCALATED,
            plan.id,
            {"attention_level": payload.attention_level, "reason": reason},
        )
    return plan


def resolve_blocker(
    db: Session,
    plan_id: str,
    *,
    payload: BlockerResolution,
    actor=None,
    now: Optional[datetime] = None,
) -> ActionPlan:
    now = now or utcnow()
    plan = require_plan(db, plan_id)
    ensure_not_submitted(plan)
    ensure_plan_writable(db, plan, actor=actor, now=now)
    if not plan.is_blocked and plan.status != STATUS_BLOCKED:
        raise ValidationError("This plan has no open blocker.", {"plan_id": plan.id})
    note = validate_blocker_reason(payload.resolution_note, plan.attention_level)

    tracked = ("status",) + BLOCKER_FIELDS
    before = _snapshot(plan, tracked)
    apply_blocker_reset(plan)
    if plan.status == STATUS_BLOCKED:
        plan.status = STATUS_ON_PROGRESS
    touch_plan(plan, now)
    db.flush()

    audit_service.record_change(
        db,
        plan_id=plan.id,
        change_type=audit_service.BLOCKER_RESOLVED,
        actor=_actor_label(actor),
        description=f"Resolved blocker: {audit_service.truncate_text(note)}",
        previous=before,
        new=_snapshot(plan, tracked),
    )
    return plan


def soft_delete_plan(
    db: Session,
    plan_id: str,
    *,
    payload: SoftDelete,
    actor=None,
    now: Optional[datetime] = None,
) -> ActionPlan:
    now = now or utcnow()
    plan = require_plan(db, plan_id)
    reason = (payload.reason or "").strip()
    if not reason:
        raise ValidationError("A deletion reason is required.", {"plan_id": plan.id})
    if is_graded(plan):
        raise PlanSubmitted(plan.id, graded=True)
    ensure_plan_writable(db, plan, actor=actor, now=now)

    plan.deleted_at = now
    plan.deleted_by = actor_id(actor)
    plan.deletion_reason = reason
    touch_plan(plan, now)
    db.flush()

    audit_service.record_change(
        db,
        plan_id=plan.id,
        change_type=audit_service.DELETED,
        actor=_actor_label(actor),
        description=f"Deleted action plan: {reason}",
        previous=None,
        new={"deleted_at": now.isoformat(), "deletion_reason": reason},
    )
    return plan


def restore_plan(
    db: Session,
    plan_id: str,
    *,
    actor=None,
    now: Optional[datetime] = None,
) -> ActionPlan:
    now = now or utcnow()
    plan = require_plan(db, plan_id, include_deleted=True)
    if plan.deleted_at is None:
        raise ValidationError("This plan is not deleted.", {"plan_id": plan.id})
    ensure_plan_writable(db, plan, actor=actor, now=now)

    before = _snapshot(plan, ("deleted_at", "deletion_reason"))
    plan.deleted_at = None
    plan.deleted_by = None
    plan.deletion_reason = None
    touch_plan(plan, now)
    db.flush()

    audit_service.record_change(
        db,
        plan_id=plan.id,
        change_type=audit_service.RESTORED,
        actor=_actor_label(actor),
        description="Restored action plan from recycle bin",
        previous=before,
        new=None,
    )
    return plan


def permanent_delete_plan(db: Session, plan_id: str) -> None:
    """Hard delete. Writes no audit row and leaves carry-over children in place."""
    plan = require_plan(db, plan_id, include_deleted=True)
    db.delete(plan)
    db.flush()
    logger.info("Permanently deleted action plan %s", plan_id)
