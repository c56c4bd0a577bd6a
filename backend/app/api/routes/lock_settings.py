from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import commit, get_clock, get_current_user, require_role_dep
from backend.app.db import get_db
from backend.app.domain.contracts import ROLE_ADMIN
from backend.app.domain.errors import ValidationError
from backend.app.models import User
from backend.app.services import lock_service
from backend.app.services.deadline_service import MAX_CUTOFF_DAY, MIN_CUTOFF_DAY, find_monthly_override, parse_month_name, resolve_deadline

router = APIRouter(prefix="/api/lock-settings", tags=["lock-settings"])


class MonthlyOverrideOut(BaseModel):
    month_index: int
    year: int
    lock_date: Optional[datetime] = None
    is_force_open: bool = False


class LockSettingsOut(BaseModel):
    is_lock_enabled: bool
    lock_cutoff_day: int
    carry_over_penalty_1: int
    carry_over_penalty_2: int
    revision_grace_days: int
    unlock_default_days: int
    monthly_overrides: List[MonthlyOverrideOut]


class LockSettingsIn(BaseModel):
    is_lock_enabled: Optional[bool] = None
    lock_cutoff_day: Optional[int] = Field(default=None, ge=MIN_CUTOFF_DAY, le=MAX_CUTOFF_DAY)
    carry_over_penalty_1: Optional[int] = Field(default=None, ge=0, le=100)
    carry_over_penalty_2: Optional[int] = Field(default=None, ge=0, le=100)
    revision_grace_days: Optional[int] = Field(default=None, ge=1, le=90)
    unlock_default_days: Optional[int] = Field(default=None, ge=1, le=365)


class MonthlyOverrideIn(BaseModel):
    month_index: int = Field(..., ge=0, le=11)
    year: int = Field(..., ge=2000, le=2100)
    lock_date: Optional[datetime] = None
    is_force_open: bool = False


class DeadlineOut(BaseModel):
    month: str
    year: int
    deadline: Optional[datetime]
    has_override: bool
    is_force_open: bool


def _settings_out(settings: lock_service.LockSettings) -> LockSettingsOut:
    return LockSettingsOut(
        is_lock_enabled=settings.is_lock_enabled,
        lock_cutoff_day=settings.lock_cutoff_day,
        carry_over_penalty_1=settings.carry_over_penalty_1,
        carry_over_penalty_2=settings.carry_over_penalty_2,
        revision_grace_days=settings.revision_grace_days,
        unlock_default_days=settings.unlock_default_days,
        monthly_overrides=[
            MonthlyOverrideOut(
                month_index=o.month_index,
                year=o.year,
                lock_date=o.lock_date,
                is_force_open=o.is_force_open,
            )
            for o in settings.monthly_overrides
        ],
    )


@router.get("", response_model=LockSettingsOut)
def get_lock_settings(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _settings_out(lock_service.lock_settings_provider.current(db))


@router.put("", response_model=LockSettingsOut)
def put_lock_settings(
    req: LockSettingsIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_role_dep(ROLE_ADMIN)),
    clock=Depends(get_clock),
):
    lock_service.update_lock_settings(db, changes=req.model_dump(exclude_unset=True), actor=user, now=clock())
    commit(db)
    return _settings_out(lock_service.lock_settings_provider.refresh(db))


@router.put("/overrides", response_model=LockSettingsOut)
def put_monthly_override(
    req: MonthlyOverrideIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_role_dep(ROLE_ADMIN)),
    clock=Depends(get_clock),
):
    lock_service.upsert_monthly_override(
        db,
        month_index=req.month_index,
        year=req.year,
        lock_date=req.lock_date,
        is_force_open=req.is_force_open,
        actor=user,
        now=clock(),
    )
    commit(db)
    return _settings_out(lock_service.lock_settings_provider.refresh(db))


@router.delete("/overrides/{year}/{month_index}", response_model=LockSettingsOut)
def delete_monthly_override(
    year: int,
    month_index: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_role_dep(ROLE_ADMIN)),
):
    lock_service.delete_monthly_override(db, month_index=month_index, year=year)
    commit(db)
    return _settings_out(lock_service.lock_settings_provider.refresh(db))


@router.get("/deadline", response_model=DeadlineOut)
def get_deadline(
    month: str = Query(...),
    year: int = Query(..., ge=2000, le=2100),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    month_index = parse_month_name(month)
    if month_index < 0:
        raise ValidationError(f"Unknown month: {month!r}", {"month": month})
    settings = lock_service.lock_settings_provider.current(db)
    override = find_monthly_override(month_index, year, settings.monthly_overrides)
    return DeadlineOut(
        month=month,
        year=year,
        deadline=resolve_deadline(month, year, settings.lock_cutoff_day, settings.monthly_overrides),
        has_override=override is not None,
        is_force_open=bool(override and override.is_force_open),
    )
