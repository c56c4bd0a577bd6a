from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from backend.app.domain.contracts import (
    AUTO_GRADE_FEEDBACK,
    RESOLUTION_CARRIED_OVER,
    RESOLUTION_DROPPED,
    STATUS_ACHIEVED,
    STATUS_NOT_ACHIEVED,
    STATUS_ON_PROGRESS,
    STATUS_OPEN,
    SUBMISSION_DRAFT,
    SUBMISSION_SUBMITTED,
    UNRESOLVED_STATUSES,
    VERDICT_CARRY_OVER,
    VERDICT_FAILED,
    VERDICT_REVISION,
    GradeUpdate,
    Resolution,
    actor_id,
    is_admin,
)
from backend.app.domain.errors import ItemRecalled, PeriodLocked, PlanSubmitted, ValidationError
from backend.app.models import ActionPlan, utcnow
from backend.app.services import audit_service, carry_over_service, notification_service
from backend.app.services.action_plan_service import (
    GAP_FIELDS,
    is_graded,
    normalize_month,
    period_plans,
    require_plan,
    touch_plan,
)
from backend.app.services.carry_over_service import CarryOverBatch, CarryOverResult
from backend.app.services.escalation_service import blocker_reset_fields
from backend.app.services.lock_service import is_plan_locked, lock_settings_provider, plan_deadline

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FinalizeResult:
    submitted: int
    auto_graded: int
    carry_over: CarryOverBatch


@dataclass(frozen=True)
class RecallResult:
    recalled: int
    skipped_graded: int
    children_deleted: List[str] = field(default_factory=list)
    children_preserved: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class GradeOutcome:
    plan: ActionPlan
    applied: bool
    carry_over: Optional[CarryOverResult] = None


def _actor_label(actor) -> Optional[str]:
    if actor is None:
        return None
    return getattr(actor, "email", None) or actor_id(actor)


def is_auto_graded(plan: ActionPlan) -> bool:
    return (
        plan.quality_score == 0
        and plan.status == STATUS_NOT_ACHIEVED
        and plan.reviewed_at is None
    )


def is_recallable(plan: ActionPlan) -> bool:
    if plan.submission_status != SUBMISSION_SUBMITTED or plan.deleted_at is not None:
        return False
    return plan.quality_score is None or is_auto_graded(plan)


def _ensure_period_writable(db: Session, plans: Sequence[ActionPlan], *, actor, now: datetime) -> None:
    if is_admin(actor) or not plans:
        return
    settings = lock_settings_provider.refresh(db)
    for plan in plans:
        if is_plan_locked(plan, settings, now):
            raise PeriodLocked(plan.id, plan.month, plan.year, plan_deadline(plan, settings))


# -------------------------
# Finalize / recall
# -------------------------

def finalize_month(
    db: Session,
    *,
    department_code: str,
    month: str,
    year: int,
    actor=None,
    now: Optional[datetime] = None,
) -> FinalizeResult:
    """
    Submit every draft plan of a department's month.

    Not Achieved plans are auto-scored 0 and skip the grading queue; Achieved
    plans wait for a grade. Afterwards every submitted Not Achieved plan tagged
    carried_over gets its successor, once: re-running finalize is safe.
    """
    now = now or utcnow()
    department_code = department_code.strip().upper()
    month = normalize_month(month)
    drafts = period_plans(
        db, department_code=department_code, month=month, year=year, submission_status=SUBMISSION_DRAFT
    )
    unresolved = [p for p in drafts if p.status in UNRESOLVED_STATUSES]
    if unresolved:
        raise ValidationError(
            f"{len(unresolved)} plan(s) must be resolved before the month can be submitted.",
            {"plan_ids": [p.id for p in unresolved]},
        )
    _ensure_period_writable(db, drafts, actor=actor, now=now)

    auto_graded = 0
    for plan in drafts:
        plan.submission_status = SUBMISSION_SUBMITTED
        plan.submitted_at = now
        plan.submitted_by = actor_id(actor)
        plan.reviewed_by = None
        plan.reviewed_at = None
        if plan.status == STATUS_NOT_ACHIEVED:
            plan.quality_score = 0
            plan.admin_feedback = AUTO_GRADE_FEEDBACK
            auto_graded += 1
        else:
            plan.quality_score = None
        touch_plan(plan, now)
        audit_service.record_change(
            db,
            plan_id=plan.id,
            change_type=audit_service.SUBMITTED,
            actor=_actor_label(actor),
            description=f"Submitted {plan.month} {plan.year} report ({plan.status})",
            new={"submission_status": SUBMISSION_SUBMITTED, "quality_score": plan.quality_score},
        )
    db.flush()

    candidates = (
        db.execute(
            select(ActionPlan).where(
                ActionPlan.department_code == department_code,
                ActionPlan.month == month,
                ActionPlan.year == year,
                ActionPlan.deleted_at.is_(None),
                ActionPlan.submission_status == SUBMISSION_SUBMITTED,
                ActionPlan.status == STATUS_NOT_ACHIEVED,
                ActionPlan.resolution_type == RESOLUTION_CARRIED_OVER,
            )
        )
        .scalars()
        .all()
    )
    batch = CarryOverBatch()
    if candidates:
        settings = lock_settings_provider.refresh(db)
        batch = carry_over_service.process_carry_overs(
            db, candidates, settings=settings, actor=actor, now=now
        )

    logger.info(
        "Finalized %s %s %s: submitted=%d auto_graded=%d carried_over=%d",
        department_code,
        month,
        year,
        len(drafts),
        auto_graded,
        len(batch.created),
    )
    return FinalizeResult(submitted=len(drafts), auto_graded=auto_graded, carry_over=batch)


def _recall(db: Session, plan: ActionPlan, *, actor, now: datetime) -> None:
    auto = is_auto_graded(plan)
    plan.submission_status = SUBMISSION_DRAFT
    plan.submitted_at = None
    plan.submitted_by = None
    if auto:
        plan.quality_score = None
        plan.admin_feedback = None
    touch_plan(plan, now)
    audit_service.record_change(
        db,
        plan_id=plan.id,
        change_type=audit_service.RECALLED,
        actor=_actor_label(actor),
        description=f"Recalled {plan.month} {plan.year} report to draft",
        new={"submission_status": SUBMISSION_DRAFT, "auto_grade_cleared": auto},
    )


def _cleanup_children(db: Session, sources: Sequence[ActionPlan]) -> Dict[str, List[str]]:
    deleted: List[str] = []
    preserved: List[str] = []
    for source in sources:
        if source.resolution_type != RESOLUTION_CARRIED_OVER:
            continue
        child = carry_over_service.find_child(db, source.id)
        if child is None:
            continue
        if child.status == STATUS_OPEN and child.submission_status == SUBMISSION_DRAFT:
            deleted.append(child.id)
            db.delete(child)
        else:
            logger.warning(
                "Keeping carry-over child %s of recalled plan %s: already edited (%s)",
                child.id,
                source.id,
                child.status,
            )
            preserved.append(child.id)
    db.flush()
    return {"deleted": deleted, "preserved": preserved}


def recall_month(
    db: Session,
    *,
    department_code: str,
    month: str,
    year: int,
    actor=None,
    now: Optional[datetime] = None,
) -> RecallResult:
    """
    Partial reversal of finalize_month.

    Ungraded and auto-graded items go back to draft; human-graded items stay
    put. Carry-over children of recalled items are removed only while untouched.
    """
    now = now or utcnow()
    department_code = department_code.strip().upper()
    month = normalize_month(month)
    submitted = period_plans(
        db, department_code=department_code, month=month, year=year, submission_status=SUBMISSION_SUBMITTED
    )
    eligible = [p for p in submitted if is_recallable(p)]
    _ensure_period_writable(db, eligible, actor=actor, now=now)

    for plan in eligible:
        _recall(db, plan, actor=actor, now=now)
    db.flush()
    children = _cleanup_children(db, eligible)

    logger.info(
        "Recalled %s %s %s: recalled=%d kept_graded=%d children_deleted=%d children_kept=%d",
        department_code,
        month,
        year,
        len(eligible),
        len(submitted) - len(eligible),
        len(children["deleted"]),
        len(children["preserved"]),
    )
    return RecallResult(
        recalled=len(eligible),
        skipped_graded=len(submitted) - len(eligible),
        children_deleted=children["deleted"],
        children_preserved=children["preserved"],
    )


def recall_plan(
    db: Session,
    plan_id: str,
    *,
    actor=None,
    now: Optional[datetime] = None,
) -> RecallResult:
    now = now or utcnow()
    plan = require_plan(db, plan_id)
    if plan.submission_status != SUBMISSION_SUBMITTED:
        raise ValidationError("This plan is not submitted.", {"plan_id": plan.id})
    if not is_recallable(plan):
        raise PlanSubmitted(plan.id, graded=True)
    _ensure_period_writable(db, [plan], actor=actor, now=now)

    _recall(db, plan, actor=actor, now=now)
    db.flush()
    children = _cleanup_children(db, [plan])
    return RecallResult(
        recalled=1,
        skipped_graded=0,
        children_deleted=children["deleted"],
        children_preserved=children["preserved"],
    )


def resolve_and_submit(
    db: Session,
    *,
    department_code: str,
    month: str,
    year: int,
    resolutions: Sequence[Resolution],
    actor=None,
    now: Optional[datetime] = None,
) -> FinalizeResult:
    """
    Close out every unresolved draft as Not Achieved (carried over or dropped),
    then finalize the month in the same transaction.
    """
    now = now or utcnow()
    department_code = department_code.strip().upper()
    month = normalize_month(month)
    drafts = period_plans(
        db, department_code=department_code, month=month, year=year, submission_status=SUBMISSION_DRAFT
    )
    unresolved = {p.id: p for p in drafts if p.status in UNRESOLVED_STATUSES}
    decisions = {r.plan_id: r.action for r in resolutions}

    missing = [plan_id for plan_id in unresolved if plan_id not in decisions]
    if missing:
        raise ValidationError(
            "Every unresolved plan needs a resolution.", {"plan_ids": missing}
        )
    unknown = [plan_id for plan_id in decisions if plan_id not in unresolved]
    if unknown:
        raise ValidationError(
            "Resolutions reference plans that are not unresolved drafts of this month.",
            {"plan_ids": unknown},
        )
    for plan_id, action in decisions.items():
        if action == "carry_over":
            carry_over_service.ensure_can_carry_over(unresolved[plan_id])
    _ensure_period_writable(db, drafts, actor=actor, now=now)

    for plan_id, action in decisions.items():
        plan = unresolved[plan_id]
        previous_status = plan.status
        before = audit_service.plan_snapshot(plan, ("status", "resolution_type", "is_blocked", "blocker_reason"))
        plan.status = STATUS_NOT_ACHIEVED
        plan.resolution_type = RESOLUTION_CARRIED_OVER if action == "carry_over" else RESOLUTION_DROPPED
        for key, value in blocker_reset_fields().items():
            setattr(plan, key, value)
        touch_plan(plan, now)
        db.flush()
        audit_service.record_change(
            db,
            plan_id=plan.id,
            change_type=audit_service.STATUS_UPDATE,
            actor=_actor_label(actor),
            description=(
                f"Changed Status from '{previous_status}' to '{STATUS_NOT_ACHIEVED}' "
                f"({plan.resolution_type.replace('_', ' ')})"
            ),
            previous=before,
            new=audit_service.plan_snapshot(plan, ("status", "resolution_type", "is_blocked", "blocker_reason")),
        )

    return finalize_month(
        db, department_code=department_code, month=month, year=year, actor=actor, now=now
    )


# -------------------------
# Grading
# -------------------------

def _clamp_score(score: Optional[int], plan: ActionPlan) -> int:
    cap = plan.max_possible_score if plan.max_possible_score is not None else 100
    return max(0, min(int(score or 0), cap))


def _grade_values(
    plan: ActionPlan,
    payload: GradeUpdate,
    *,
    revision_days: int,
    now: datetime,
) -> Dict[str, Any]:
    verdict = payload.verdict
    if verdict == VERDICT_REVISION:
        return {
            "status": STATUS_ON_PROGRESS,
            "submission_status": SUBMISSION_DRAFT,
            "quality_score": None,
            "submitted_at": None,
            "submitted_by": None,
            "temporary_unlock_expiry": now + timedelta(days=revision_days),
        }
    if verdict is None and payload.score is None:
        if not payload.feedback:
            raise ValidationError(
                "Feedback is required when sending a plan back to draft.", {"plan_id": plan.id}
            )
        return {
            "status": STATUS_ON_PROGRESS,
            "submission_status": SUBMISSION_DRAFT,
            "quality_score": None,
            "submitted_at": None,
            "submitted_by": None,
        }

    values: Dict[str, Any] = dict(blocker_reset_fields())
    if verdict == VERDICT_CARRY_OVER:
        values.update(
            status=STATUS_NOT_ACHIEVED,
            quality_score=_clamp_score(payload.score, plan),
            resolution_type=RESOLUTION_CARRIED_OVER,
        )
    elif verdict == VERDICT_FAILED or payload.status == STATUS_NOT_ACHIEVED:
        values.update(
            status=STATUS_NOT_ACHIEVED,
            quality_score=_clamp_score(payload.score, plan),
            resolution_type=RESOLUTION_DROPPED,
        )
    else:
        values.update(status=STATUS_ACHIEVED, quality_score=_clamp_score(payload.score, plan))
    return values


def grade_plan(
    db: Session,
    plan_id: str,
    *,
    payload: GradeUpdate,
    actor=None,
    now: Optional[datetime] = None,
) -> GradeOutcome:
    """
    Apply an administrator's grade or verdict to a submitted plan.

    The write is a conditional UPDATE on submission_status = 'submitted' and
    quality_score IS NULL. Losing that race to a recall raises ItemRecalled;
    losing it to another grade is a no-op.
    """
    now = now or utcnow()
    plan = require_plan(db, plan_id)
    if plan.submission_status != SUBMISSION_SUBMITTED:
        raise ItemRecalled(plan.id)
    if plan.quality_score is not None:
        return GradeOutcome(plan=plan, applied=False)

    if payload.verdict == VERDICT_CARRY_OVER:
        carry_over_service.ensure_can_carry_over(plan)
    settings = lock_settings_provider.refresh(db)
    revision_days = payload.revision_days or settings.revision_grace_days
    values = _grade_values(plan, payload, revision_days=revision_days, now=now)
    before = audit_service.plan_snapshot(plan, ("status", "submission_status", "quality_score", "admin_feedback"))
    values.update(
        admin_feedback=payload.feedback,
        reviewed_by=actor_id(actor),
        reviewed_at=now,
        updated_at=now,
        version=ActionPlan.version + 1,
    )
    db.flush()

    result = db.execute(
        update(ActionPlan)
        .where(
            ActionPlan.id == plan.id,
            ActionPlan.submission_status == SUBMISSION_SUBMITTED,
            ActionPlan.quality_score.is_(None),
            ActionPlan.deleted_at.is_(None),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.refresh(plan)
    if result.rowcount == 0:
        if is_graded(plan):
            return GradeOutcome(plan=plan, applied=False)
        raise ItemRecalled(plan.id)

    after = audit_service.plan_snapshot(plan, ("status", "submission_status", "quality_score", "admin_feedback"))
    if plan.submission_status == SUBMISSION_DRAFT:
        description = f"Returned to draft for revision ({payload.verdict or 'kickback'})"
    else:
        description = f"Graded {plan.quality_score}/{plan.max_possible_score} ({plan.status})"
    audit_service.record_change(
        db,
        plan_id=plan.id,
        change_type=audit_service.GRADED,
        actor=_actor_label(actor),
        description=description,
        previous=before,
        new=after,
    )

    carry_over = None
    if payload.verdict == VERDICT_CARRY_OVER:
        carry_over = carry_over_service.create_carry_over_child(
            db, plan, settings=settings, actor=actor, now=now
        )
    notification_service.notify(
        notification_service.PLAN_GRADED,
        plan.id,
        {
            "status": plan.status,
            "quality_score": plan.quality_score,
            "verdict": payload.verdict,
            "submission_status": plan.submission_status,
        },
    )
    return GradeOutcome(plan=plan, applied=True, carry_over=carry_over)


def reset_grade(
    db: Session,
    plan_id: str,
    *,
    actor=None,
    now: Optional[datetime] = None,
) -> ActionPlan:
    """
    Full wipe back to Open/draft, including the owner's evidence.

    Stronger than a revision verdict, and logged as GRADE_RESET.
    """
    now = now or utcnow()
    plan = require_plan(db, plan_id)
    tracked = ("status", "submission_status", "quality_score", "admin_feedback", "outcome_link", "remark")
    before = audit_service.plan_snapshot(plan, tracked)

    for key in GAP_FIELDS:
        setattr(plan, key, None)
    for key, value in blocker_reset_fields().items():
        setattr(plan, key, value)
    plan.status = STATUS_OPEN
    plan.submission_status = SUBMISSION_DRAFT
    plan.quality_score = None
    plan.admin_feedback = None
    plan.reviewed_by = None
    plan.reviewed_at = None
    plan.submitted_at = None
    plan.submitted_by = None
    plan.temporary_unlock_expiry = None
    touch_plan(plan, now)
    db.flush()

    audit_service.record_change(
        db,
        plan_id=plan.id,
        change_type=audit_service.GRADE_RESET,
        actor=_actor_label(actor),
        description="Grade reset: score, feedback and evidence cleared",
        previous=before,
        new=audit_service.plan_snapshot(plan, tracked),
    )
    return plan


def reset_all_grades(
    db: Session,
    *,
    department_code: Optional[str] = None,
    month: Optional[str] = None,
    year: Optional[int] = None,
    actor=None,
    now: Optional[datetime] = None,
) -> int:
    now = now or utcnow()
    query = select(ActionPlan).where(
        ActionPlan.deleted_at.is_(None),
        ActionPlan.quality_score.is_not(None),
    )
    if department_code:
        query = query.where(ActionPlan.department_code == department_code.strip().upper())
    if month:
        query = query.where(ActionPlan.month == normalize_month(month))
    if year:
        query = query.where(ActionPlan.year == year)
    plans = db.execute(query).scalars().all()
    for plan in plans:
        reset_grade(db, plan.id, actor=actor, now=now)
    logger.info("Reset %d graded plan(s)", len(plans))
    return len(plans)
