from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import (
    commit,
    ensure_department_access,
    get_clock,
    scoped_department,
    get_current_user,
    require_role_dep,
)
from backend.app.db import get_db
from backend.app.domain.contracts import (
    ROLE_ADMIN,
    ROLE_LEADER,
    ROLE_STAFF,
    BlockerReport,
    BlockerResolution,
    GradeUpdate,
    PlanCreate,
    PlanFieldsUpdate,
    Resolution,
    SoftDelete,
    StatusUpdate,
    UnlockApproval,
    UnlockRejection,
    UnlockRequest,
)
from backend.app.models import ActionPlan, User
from backend.app.services import (
    action_plan_service,
    carry_over_service,
    escalation_service,
    lock_service,
    submission_service,
    unlock_service,
)

router = APIRouter(prefix="/api/action-plans", tags=["action-plans"])

EDITORS = (ROLE_ADMIN, ROLE_LEADER, ROLE_STAFF)
MANAGERS = (ROLE_ADMIN, ROLE_LEADER)


class PlanOriginOut(BaseModel):
    id: str
    month: str
    year: int
    status: str
    carry_over_status: str


class BlockerSummaryOut(BaseModel):
    is_escalated: bool
    blocked_days: int
    severity: str
    label: str


class ActionPlanOut(BaseModel):
    id: str
    department_code: str
    company_id: Optional[str]
    month: str
    year: int
    goal_strategy: Optional[str]
    action_plan: Optional[str]
    indicator: Optional[str]
    pic: Optional[str]
    category: Optional[str]
    area_focus: Optional[str]
    report_format: Optional[str]
    evidence: Optional[str]
    outcome_link: Optional[str]
    attachments: Optional[list]
    remark: Optional[str]
    gap_category: Optional[str]
    gap_analysis: Optional[str]
    specify_reason: Optional[str]
    status: str
    submission_status: str
    submitted_at: Optional[datetime]
    submitted_by: Optional[str]
    quality_score: Optional[int]
    max_possible_score: int
    admin_feedback: Optional[str]
    reviewed_by: Optional[str]
    reviewed_at: Optional[datetime]
    unlock_status: Optional[str]
    unlock_reason: Optional[str]
    unlock_requested_at: Optional[datetime]
    unlock_requested_by: Optional[str]
    unlock_approved_by: Optional[str]
    unlock_approved_at: Optional[datetime]
    unlock_rejection_reason: Optional[str]
    approved_until: Optional[datetime]
    temporary_unlock_expiry: Optional[datetime]
    is_blocked: bool
    blocker_reason: Optional[str]
    blocker_category: Optional[str]
    attention_level: str
    origin_plan_id: Optional[str]
    resolution_type: Optional[str]
    carry_over_status: str
    deleted_at: Optional[datetime]
    deleted_by: Optional[str]
    deletion_reason: Optional[str]
    version: int
    created_at: datetime
    updated_at: datetime
    origin: Optional[PlanOriginOut] = None
    blocker: Optional[BlockerSummaryOut] = None

    class Config:
        from_attributes = True


class PeriodIn(BaseModel):
    department_code: str = Field(..., min_length=1, max_length=40)
    month: str
    year: int = Field(..., ge=2000, le=2100)


class ResolveAndSubmitIn(PeriodIn):
    resolutions: List[Resolution] = Field(default_factory=list)


class MonthUnlockIn(PeriodIn):
    approved_until: Optional[datetime] = None


class ResetGradesIn(BaseModel):
    department_code: Optional[str] = None
    month: Optional[str] = None
    year: Optional[int] = None


class FinalizeOut(BaseModel):
    submitted: int
    auto_graded: int
    carried_over: List[str]
    carry_over_skipped: List[str]


class RecallOut(BaseModel):
    recalled: int
    skipped_graded: int
    children_deleted: List[str]
    children_preserved: List[str]


class GradeOut(BaseModel):
    plan: ActionPlanOut
    applied: bool
    carry_over_child: Optional[ActionPlanOut] = None


class CarryOverOut(BaseModel):
    source: ActionPlanOut
    child: Optional[ActionPlanOut] = None
    created: bool


class CountOut(BaseModel):
    count: int


class MonthUnlockOut(BaseModel):
    count: int
    plan_ids: List[str]


class LockStatusOut(BaseModel):
    is_locked: bool
    is_lock_enabled: bool
    deadline: Optional[datetime]
    cutoff_day: int
    has_override: bool
    is_force_open: bool
    days_until_lock: Optional[int]
    unlock_status: Optional[str]
    has_pending_request: bool
    is_approved: bool
    is_rejected: bool
    approved_until: Optional[datetime]
    temporary_unlock_expiry: Optional[datetime]
    in_grace_period: bool
    message: str


def _plan_out(db: Session, plan: ActionPlan, now: datetime) -> ActionPlanOut:
    out = ActionPlanOut.model_validate(plan)
    origin = action_plan_service.get_origin(db, plan)
    if origin is not None:
        out.origin = PlanOriginOut(
            id=origin.id,
            month=origin.month,
            year=origin.year,
            status=origin.status,
            carry_over_status=origin.carry_over_status,
        )
    summary = escalation_service.summarize_blocker(plan, now)
    out.blocker = BlockerSummaryOut(
        is_escalated=summary.is_escalated,
        blocked_days=summary.blocked_days,
        severity=summary.severity,
        label=summary.label,
    )
    return out


def _load_for(db: Session, plan_id: str, user: User, *, include_deleted: bool = False) -> ActionPlan:
    plan = action_plan_service.require_plan(db, plan_id, include_deleted=include_deleted)
    ensure_department_access(user, plan.department_code)
    return plan


def _finalize_out(result: submission_service.FinalizeResult) -> FinalizeOut:
    return FinalizeOut(
        submitted=result.submitted,
        auto_graded=result.auto_graded,
        carried_over=result.carry_over.created,
        carry_over_skipped=result.carry_over.skipped,
    )


def _recall_out(result: submission_service.RecallResult) -> RecallOut:
    return RecallOut(
        recalled=result.recalled,
        skipped_graded=result.skipped_graded,
        children_deleted=result.children_deleted,
        children_preserved=result.children_preserved,
    )


# -------------------------
# Collection
# -------------------------

@router.post("", response_model=ActionPlanOut)
def post_action_plan(
    req: PlanCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_role_dep(*EDITORS)),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    ensure_department_access(user, req.department_code)
    now = clock()
    plan = action_plan_service.create_plan(db, payload=req, actor=user, now=now)
    commit(db)
    db.refresh(plan)
    return _plan_out(db, plan, now)


@router.get("", response_model=List[ActionPlanOut])
def get_action_plans(
    department_code: Optional[str] = Query(default=None),
    month: Optional[str] = Query(default=None),
    year: Optional[int] = Query(default=None),
    company_id: Optional[str] = Query(default=None),
    include_deleted: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    plans = action_plan_service.list_plans(
        db,
        department_code=scoped_department(user, department_code),
        month=month,
        year=year,
        company_id=company_id,
        include_deleted=include_deleted,
    )
    now = clock()
    return [_plan_out(db, plan, now) for plan in plans]


@router.get("/deleted", response_model=List[ActionPlanOut])
def get_deleted_action_plans(
    department_code: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    plans = action_plan_service.list_deleted_plans(db, department_code=scoped_department(user, department_code))
    now = clock()
    return [_plan_out(db, plan, now) for plan in plans]


@router.post("/finalize", response_model=FinalizeOut)
def post_finalize_month(
    req: PeriodIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_role_dep(*MANAGERS)),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    ensure_department_access(user, req.department_code)
    result = submission_service.finalize_month(
        db,
        department_code=req.department_code,
        month=req.month,
        year=req.year,
        actor=user,
        now=clock(),
    )
    commit(db)
    return _finalize_out(result)


@router.post("/recall", response_model=RecallOut)
def post_recall_month(
    req: PeriodIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_role_dep(*MANAGERS)),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    ensure_department_access(user, req.department_code)
    result = submission_service.recall_month(
        db,
        department_code=req.department_code,
        month=req.month,
        year=req.year,
        actor=user,
        now=clock(),
    )
    commit(db)
    return _recall_out(result)


@router.post("/resolve-and-submit", response_model=FinalizeOut)
def post_resolve_and_submit(
    req: ResolveAndSubmitIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_role_dep(*MANAGERS)),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    ensure_department_access(user, req.department_code)
    result = submission_service.resolve_and_submit(
        db,
        department_code=req.department_code,
        month=req.month,
        year=req.year,
        resolutions=req.resolutions,
        actor=user,
        now=clock(),
    )
    commit(db)
    return _finalize_out(result)


@router.post("/reset-grades", response_model=CountOut)
def post_reset_all_grades(
    req: ResetGradesIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_role_dep(ROLE_ADMIN)),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    count = submission_service.reset_all_grades(
        db,
        department_code=req.department_code,
        month=req.month,
        year=req.year,
        actor=user,
        now=clock(),
    )
    commit(db)
    return CountOut(count=count)


@router.post("/unlock/approve-month", response_model=MonthUnlockOut)
def post_approve_month_unlock(
    req: MonthUnlockIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_role_dep(ROLE_ADMIN)),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    granted = unlock_service.approve_month_unlock(
        db,
        department_code=req.department_code,
        month=req.month,
        year=req.year,
        approved_until=req.approved_until,
        actor=user,
        now=clock(),
    )
    commit(db)
    return MonthUnlockOut(count=len(granted), plan_ids=[plan.id for plan in granted])


# -------------------------
# Single plan
# -------------------------

@router.get("/{plan_id}", response_model=ActionPlanOut)
def get_action_plan(
    plan_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    plan = _load_for(db, plan_id, user)
    return _plan_out(db, plan, clock())


@router.patch("/{plan_id}", response_model=ActionPlanOut)
def patch_action_plan(
    plan_id: str,
    req: PlanFieldsUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_role_dep(*EDITORS)),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    _load_for(db, plan_id, user)
    now = clock()
    plan = action_plan_service.update_plan_fields(db, plan_id, payload=req, actor=user, now=now)
    commit(db)
    db.refresh(plan)
    return _plan_out(db, plan, now)


@router.post("/{plan_id}/status", response_model=ActionPlanOut)
def post_status(
    plan_id: str,
    req: StatusUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_role_dep(*EDITORS)),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    _load_for(db, plan_id, user)
    now = clock()
    plan = action_plan_service.update_status(db, plan_id, payload=req, actor=user, now=now)
    commit(db)
    db.refresh(plan)
    return _plan_out(db, plan, now)


@router.post("/{plan_id}/blocker", response_model=ActionPlanOut)
def post_report_blocker(
    plan_id: str,
    req: BlockerReport,
    db: Session = Depends(get_db),
    user: User = Depends(require_role_dep(*EDITORS)),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    _load_for(db, plan_id, user)
    now = clock()
    plan = action_plan_service.report_blocker(db, plan_id, payload=req, actor=user, now=now)
    commit(db)
    db.refresh(plan)
    return _plan_out(db, plan, now)


@router.post("/{plan_id}/blocker/resolve", response_model=ActionPlanOut)
def post_resolve_blocker(
    plan_id: str,
    req: BlockerResolution,
    db: Session = Depends(get_db),
    user: User = Depends(require_role_dep(*EDITORS)),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    _load_for(db, plan_id, user)
    now = clock()
    plan = action_plan_service.resolve_blocker(db, plan_id, payload=req, actor=user, now=now)
    commit(db)
    db.refresh(plan)
    return _plan_out(db, plan, now)


@router.post("/{plan_id}/recall", response_model=RecallOut)
def post_recall_plan(
    plan_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(require_role_dep(*MANAGERS)),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    _load_for(db, plan_id, user)
    result = submission_service.recall_plan(db, plan_id, actor=user, now=clock())
    commit(db)
    return _recall_out(result)


@router.post("/{plan_id}/grade", response_model=GradeOut)
def post_grade(
    plan_id: str,
    req: GradeUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_role_dep(ROLE_ADMIN)),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    now = clock()
    outcome = submission_service.grade_plan(db, plan_id, payload=req, actor=user, now=now)
    commit(db)
    db.refresh(outcome.plan)
    child = outcome.carry_over.child if outcome.carry_over else None
    return GradeOut(
        plan=_plan_out(db, outcome.plan, now),
        applied=outcome.applied,
        carry_over_child=_plan_out(db, child, now) if child is not None else None,
    )


@router.post("/{plan_id}/reset-grade", response_model=ActionPlanOut)
def post_reset_grade(
    plan_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(require_role_dep(ROLE_ADMIN)),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    now = clock()
    plan = submission_service.reset_grade(db, plan_id, actor=user, now=now)
    commit(db)
    db.refresh(plan)
    return _plan_out(db, plan, now)


@router.post("/{plan_id}/unlock-request", response_model=ActionPlanOut)
def post_unlock_request(
    plan_id: str,
    req: UnlockRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_role_dep(*EDITORS)),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    _load_for(db, plan_id, user)
    now = clock()
    plan = unlock_service.request_unlock(db, plan_id, payload=req, actor=user, now=now)
    commit(db)
    db.refresh(plan)
    return _plan_out(db, plan, now)


@router.post("/{plan_id}/unlock/approve", response_model=ActionPlanOut)
def post_unlock_approve(
    plan_id: str,
    req: UnlockApproval,
    db: Session = Depends(get_db),
    user: User = Depends(require_role_dep(ROLE_ADMIN)),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    now = clock()
    plan = unlock_service.approve_unlock(db, plan_id, payload=req, actor=user, now=now)
    commit(db)
    db.refresh(plan)
    return _plan_out(db, plan, now)


@router.post("/{plan_id}/unlock/reject", response_model=ActionPlanOut)
def post_unlock_reject(
    plan_id: str,
    req: UnlockRejection,
    db: Session = Depends(get_db),
    user: User = Depends(require_role_dep(ROLE_ADMIN)),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    now = clock()
    plan = unlock_service.reject_unlock(db, plan_id, payload=req, actor=user, now=now)
    commit(db)
    db.refresh(plan)
    return _plan_out(db, plan, now)


@router.post("/{plan_id}/unlock/revoke", response_model=ActionPlanOut)
def post_unlock_revoke(
    plan_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(require_role_dep(ROLE_ADMIN)),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    now = clock()
    plan = unlock_service.revoke_unlock(db, plan_id, actor=user, now=now)
    commit(db)
    db.refresh(plan)
    return _plan_out(db, plan, now)


@router.post("/{plan_id}/carry-over", response_model=CarryOverOut)
def post_carry_over(
    plan_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(require_role_dep(*MANAGERS)),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    _load_for(db, plan_id, user)
    now = clock()
    result = carry_over_service.carry_over_plan(db, plan_id, actor=user, now=now)
    commit(db)
    source = action_plan_service.require_plan(db, plan_id)
    return CarryOverOut(
        source=_plan_out(db, source, now),
        child=_plan_out(db, result.child, now) if result.child is not None else None,
        created=result.created,
    )


@router.post("/{plan_id}/delete", response_model=ActionPlanOut)
def post_soft_delete(
    plan_id: str,
    req: SoftDelete,
    db: Session = Depends(get_db),
    user: User = Depends(require_role_dep(*EDITORS)),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    _load_for(db, plan_id, user)
    now = clock()
    plan = action_plan_service.soft_delete_plan(db, plan_id, payload=req, actor=user, now=now)
    commit(db)
    db.refresh(plan)
    return _plan_out(db, plan, now)


@router.post("/{plan_id}/restore", response_model=ActionPlanOut)
def post_restore(
    plan_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(require_role_dep(*EDITORS)),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    _load_for(db, plan_id, user, include_deleted=True)
    now = clock()
    plan = action_plan_service.restore_plan(db, plan_id, actor=user, now=now)
    commit(db)
    db.refresh(plan)
    return _plan_out(db, plan, now)


@router.delete("/{plan_id}", response_model=CountOut)
def delete_action_plan(
    plan_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(require_role_dep(ROLE_ADMIN)),
):
    action_plan_service.permanent_delete_plan(db, plan_id)
    commit(db)
    return CountOut(count=1)


@router.get("/{plan_id}/lock-status", response_model=LockStatusOut)
def get_plan_lock_status(
    plan_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    plan = _load_for(db, plan_id, user)
    settings = lock_service.lock_settings_provider.current(db)
    status = lock_service.get_lock_status(plan, settings, clock())
    return LockStatusOut(**status.to_dict())
