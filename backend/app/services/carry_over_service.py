from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.domain.contracts import (
    ATTENTION_STANDARD,
    CARRY_OVER_LATE_1,
    CARRY_OVER_LATE_2,
    CARRY_OVER_NORMAL,
    RESOLUTION_CARRIED_OVER,
    STATUS_NOT_ACHIEVED,
    STATUS_OPEN,
    SUBMISSION_DRAFT,
    SUBMISSION_SUBMITTED,
    actor_id,
    is_admin,
)
from backend.app.domain.errors import CarryOverCapExceeded, PlanSubmitted, ValidationError
from backend.app.models import ActionPlan, utcnow
from backend.app.services import audit_service
from backend.app.services.action_plan_service import (
    NARRATIVE_FIELDS,
    is_graded,
    require_plan,
    touch_plan,
)
from backend.app.services.deadline_service import next_period
from backend.app.services.lock_service import LockSettings, ensure_plan_writable, lock_settings_provider

logger = logging.getLogger(__name__)

_NEXT_STATUS = {
    CARRY_OVER_NORMAL: CARRY_OVER_LATE_1,
    CARRY_OVER_LATE_1: CARRY_OVER_LATE_2,
}


@dataclass(frozen=True)
class CarryOverResult:
    source_id: str
    child: Optional[ActionPlan]
    created: bool


@dataclass
class CarryOverBatch:
    created: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


def _actor_label(actor) -> Optional[str]:
    if actor is None:
        return None
    return getattr(actor, "email", None) or actor_id(actor)


def can_carry_over(plan: ActionPlan) -> bool:
    return (plan.carry_over_status or CARRY_OVER_NORMAL) in _NEXT_STATUS


def ensure_can_carry_over(plan: ActionPlan) -> None:
    if not can_carry_over(plan):
        raise CarryOverCapExceeded(plan.id)


def next_carry_over_status(current: Optional[str]) -> str:
    status = _NEXT_STATUS.get(current or CARRY_OVER_NORMAL)
    if status is None:
        raise ValueError(f"no carry-over beyond {current}")
    return status


def score_cap(carry_over_status: str, settings: LockSettings) -> int:
    if carry_over_status == CARRY_OVER_LATE_1:
        return settings.carry_over_penalty_1
    if carry_over_status == CARRY_OVER_LATE_2:
        return settings.carry_over_penalty_2
    return 100


def find_child(db: Session, source_id: str) -> Optional[ActionPlan]:
    # Soft-deleted children still count; the link is what makes the scan idempotent.
    return (
        db.execute(select(ActionPlan).where(ActionPlan.origin_plan_id == source_id))
        .scalars()
        .first()
    )


def create_carry_over_child(
    db: Session,
    source: ActionPlan,
    *,
    settings: LockSettings,
    actor=None,
    now: Optional[datetime] = None,
) -> CarryOverResult:
    """
    Successor of a failed plan in the next month, at most one per source.

    The child starts Open/draft with narrative fields copied and its score
    capped by the carry-over penalty for its new lateness tier.
    """
    now = now or utcnow()
    existing = find_child(db, source.id)
    if existing is not None:
        return CarryOverResult(source_id=source.id, child=existing, created=False)
    ensure_can_carry_over(source)

    status = next_carry_over_status(source.carry_over_status)
    month, year = next_period(source.month, source.year)
    child = ActionPlan(
        department_code=source.department_code,
        company_id=source.company_id,
        month=month,
        year=year,
        status=STATUS_OPEN,
        submission_status=SUBMISSION_DRAFT,
        carry_over_status=status,
        max_possible_score=score_cap(status, settings),
        origin_plan_id=source.id,
        attention_level=ATTENTION_STANDARD,
        is_blocked=False,
        version=1,
        created_by=actor_id(actor),
        created_at=now,
        updated_at=now,
    )
    for key in NARRATIVE_FIELDS:
        setattr(child, key, getattr(source, key))
    db.add(child)
    db.flush()

    audit_service.record_change(
        db,
        plan_id=source.id,
        change_type=audit_service.CARRY_OVER,
        actor=_actor_label(actor),
        description=f"Carried over to {month} {year} as {status} (max score {child.max_possible_score})",
        new={"child_id": child.id, "carry_over_status": status, "max_possible_score": child.max_possible_score},
    )
    audit_service.record_change(
        db,
        plan_id=child.id,
        change_type=audit_service.CREATED,
        actor=_actor_label(actor),
        description=f"Created by carry-over from {source.month} {source.year}",
        new={"origin_plan_id": source.id, "carry_over_status": status},
    )
    logger.info("Carried over plan %s to %s %s as %s (%s)", source.id, month, year, status, child.id)
    return CarryOverResult(source_id=source.id, child=child, created=True)


def process_carry_overs(
    db: Session,
    sources: Iterable[ActionPlan],
    *,
    settings: LockSettings,
    actor=None,
    now: Optional[datetime] = None,
) -> CarryOverBatch:
    batch = CarryOverBatch()
    for source in sources:
        if source.status != STATUS_NOT_ACHIEVED or source.resolution_type != RESOLUTION_CARRIED_OVER:
            continue
        if not can_carry_over(source):
            logger.warning("Plan %s is tagged for carry-over past the cap; skipping", source.id)
            batch.skipped.append(source.id)
            continue
        result = create_carry_over_child(db, source, settings=settings, actor=actor, now=now)
        if result.created:
            batch.created.append(source.id)
        else:
            batch.skipped.append(source.id)
    if batch.skipped:
        logger.info("Carry-over skipped %d plan(s) with an existing child", len(batch.skipped))
    return batch


def carry_over_plan(
    db: Session,
    plan_id: str,
    *,
    actor=None,
    now: Optional[datetime] = None,
) -> CarryOverResult:
    """Manual trigger: tag a Not Achieved plan as carried over and create its successor."""
    now = now or utcnow()
    plan = require_plan(db, plan_id)
    if plan.status != STATUS_NOT_ACHIEVED:
        raise ValidationError(
            "Only Not Achieved plans can be carried over.",
            {"plan_id": plan.id, "status": plan.status},
        )
    ensure_can_carry_over(plan)
    if is_graded(plan) and not is_admin(actor):
        raise PlanSubmitted(plan.id, graded=True)
    if plan.submission_status != SUBMISSION_SUBMITTED:
        ensure_plan_writable(db, plan, actor=actor, now=now)

    if plan.resolution_type != RESOLUTION_CARRIED_OVER:
        plan.resolution_type = RESOLUTION_CARRIED_OVER
        touch_plan(plan, now)
        db.flush()
    settings = lock_settings_provider.refresh(db)
    return create_carry_over_child(db, plan, settings=settings, actor=actor, now=now)
