from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from backend.app.domain.contracts import (
    UNLOCK_APPROVED,
    UNLOCK_PENDING,
    UNLOCK_REJECTED,
    UnlockApproval,
    UnlockRejection,
    UnlockRequest,
    actor_id,
)
from backend.app.domain.errors import ValidationError
from backend.app.models import ActionPlan, utcnow
from backend.app.services import audit_service, notification_service
from backend.app.services.action_plan_service import normalize_month, period_plans, require_plan, touch_plan
from backend.app.services.deadline_service import as_utc
from backend.app.services.lock_service import is_plan_locked, lock_settings_provider

logger = logging.getLogger(__name__)

UNLOCK_FIELDS = (
    "unlock_status",
    "unlock_reason",
    "unlock_requested_at",
    "unlock_requested_by",
    "unlock_approved_by",
    "unlock_approved_at",
    "unlock_rejection_reason",
    "approved_until",
)


def _actor_label(actor) -> Optional[str]:
    if actor is None:
        return None
    return getattr(actor, "email", None) or actor_id(actor)


def _unlock_snapshot(plan: ActionPlan):
    return audit_service.plan_snapshot(plan, ("unlock_status", "unlock_reason", "approved_until"))


def request_unlock(
    db: Session,
    plan_id: str,
    *,
    payload: UnlockRequest,
    actor=None,
    now: Optional[datetime] = None,
) -> ActionPlan:
    now = now or utcnow()
    plan = require_plan(db, plan_id)
    reason = (payload.reason or "").strip()
    if not reason:
        raise ValidationError("An unlock request needs a reason.", {"plan_id": plan.id})

    before = _unlock_snapshot(plan)
    plan.unlock_status = UNLOCK_PENDING
    plan.unlock_reason = reason
    plan.unlock_requested_at = now
    plan.unlock_requested_by = actor_id(actor)
    plan.unlock_approved_by = None
    plan.unlock_approved_at = None
    plan.unlock_rejection_reason = None
    plan.approved_until = None
    touch_plan(plan, now)
    db.flush()

    audit_service.record_change(
        db,
        plan_id=plan.id,
        change_type=audit_service.UNLOCK_REQUESTED,
        actor=_actor_label(actor),
        description=f"Requested unlock: {audit_service.truncate_text(reason)}",
        previous=before,
        new=_unlock_snapshot(plan),
    )
    return plan


def _grant(plan: ActionPlan, *, expiry: datetime, actor, now: datetime) -> None:
    plan.unlock_status = UNLOCK_APPROVED
    plan.unlock_approved_by = actor_id(actor)
    plan.unlock_approved_at = now
    plan.unlock_rejection_reason = None
    plan.approved_until = expiry
    touch_plan(plan, now)


def _resolve_expiry(db: Session, expiry: Optional[datetime], now: datetime) -> datetime:
    if expiry is None:
        settings = lock_settings_provider.refresh(db)
        return now + timedelta(days=settings.unlock_default_days)
    expiry = as_utc(expiry)
    if expiry <= now:
        raise ValidationError("Unlock expiry must be in the future.", {"approved_until": expiry.isoformat()})
    return expiry


def approve_unlock(
    db: Session,
    plan_id: str,
    *,
    payload: UnlockApproval,
    actor=None,
    now: Optional[datetime] = None,
) -> ActionPlan:
    now = now or utcnow()
    plan = require_plan(db, plan_id)
    expiry = _resolve_expiry(db, payload.approved_until, now)

    before = _unlock_snapshot(plan)
    _grant(plan, expiry=expiry, actor=actor, now=now)
    db.flush()

    audit_service.record_change(
        db,
        plan_id=plan.id,
        change_type=audit_service.UNLOCK_APPROVED,
        actor=_actor_label(actor),
        description=f"Approved unlock until {expiry.isoformat()}",
        previous=before,
        new=_unlock_snapshot(plan),
    )
    notification_service.notify(
        notification_service.UNLOCK_APPROVED,
        plan.id,
        {"approved_until": expiry.isoformat(), "requested_by": plan.unlock_requested_by},
    )
    return plan


def reject_unlock(
    db: Session,
    plan_id: str,
    *,
    payload: UnlockRejection,
    actor=None,
    now: Optional[datetime] = None,
) -> ActionPlan:
    now = now or utcnow()
    plan = require_plan(db, plan_id)

    before = _unlock_snapshot(plan)
    plan.unlock_status = UNLOCK_REJECTED
    plan.unlock_rejection_reason = payload.reason
    plan.unlock_approved_by = None
    plan.unlock_approved_at = None
    plan.approved_until = None
    touch_plan(plan, now)
    db.flush()

    audit_service.record_change(
        db,
        plan_id=plan.id,
        change_type=audit_service.UNLOCK_REJECTED,
        actor=_actor_label(actor),
        description=f"Rejected unlock request: {audit_service.truncate_text(payload.reason)}",
        previous=before,
        new=_unlock_snapshot(plan),
    )
    notification_service.notify(
        notification_service.UNLOCK_REJECTED,
        plan.id,
        {"reason": payload.reason, "requested_by": plan.unlock_requested_by},
    )
    return plan


def revoke_unlock(
    db: Session,
    plan_id: str,
    *,
    actor=None,
    now: Optional[datetime] = None,
) -> ActionPlan:
    """Clear every unlock field; the plan is immediately subject to its deadline again."""
    now = now or utcnow()
    plan = require_plan(db, plan_id)

    before = _unlock_snapshot(plan)
    for key in UNLOCK_FIELDS:
        setattr(plan, key, None)
    touch_plan(plan, now)
    db.flush()

    audit_service.record_change(
        db,
        plan_id=plan.id,
        change_type=audit_service.UNLOCK_REVOKED,
        actor=_actor_label(actor),
        description="Revoked unlock",
        previous=before,
        new=_unlock_snapshot(plan),
    )
    notification_service.notify(notification_service.UNLOCK_REVOKED, plan.id, {})
    return plan


def approve_month_unlock(
    db: Session,
    *,
    department_code: str,
    month: str,
    year: int,
    approved_until: Optional[datetime] = None,
    actor=None,
    now: Optional[datetime] = None,
) -> List[ActionPlan]:
    """
    Grant an unlock to every plan of the period that is currently locked.

    Plans with a pending request are left for their own decision.
    """
    now = now or utcnow()
    department_code = department_code.strip().upper()
    month = normalize_month(month)
    expiry = _resolve_expiry(db, approved_until, now)
    settings = lock_settings_provider.refresh(db)

    granted: List[ActionPlan] = []
    for plan in period_plans(db, department_code=department_code, month=month, year=year):
        if plan.unlock_status == UNLOCK_PENDING or not is_plan_locked(plan, settings, now):
            continue
        _grant(plan, expiry=expiry, actor=actor, now=now)
        audit_service.record_change(
            db,
            plan_id=plan.id,
            change_type=audit_service.UNLOCK_APPROVED,
            actor=_actor_label(actor),
            description=f"Approved unlock until {expiry.isoformat()} (bulk {month} {year})",
            new=_unlock_snapshot(plan),
        )
        granted.append(plan)
    db.flush()
    for plan in granted:
        notification_service.notify(
            notification_service.UNLOCK_APPROVED,
            plan.id,
            {"approved_until": expiry.isoformat(), "bulk": True},
        )
    logger.info("Bulk unlock %s %s %s: %d plan(s) until %s", department_code, month, year, len(granted), expiry)
    return granted
