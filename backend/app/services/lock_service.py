from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.api.config import lock_settings_max_age_seconds
from backend.app.domain.contracts import UNLOCK_APPROVED, UNLOCK_PENDING, UNLOCK_REJECTED, is_admin
from backend.app.domain.errors import PeriodLocked, ValidationError
from backend.app.models import MonthlyLockSchedule, SystemSettings, utcnow
from backend.app.services.deadline_service import (
    DEFAULT_CUTOFF_DAY,
    MAX_CUTOFF_DAY,
    MIN_CUTOFF_DAY,
    MonthlyOverride,
    as_utc,
    deadline_zone,
    find_monthly_override,
    parse_month_name,
    resolve_deadline,
)

logger = logging.getLogger(__name__)

SETTINGS_ROW_ID = 1


@dataclass(frozen=True)
class LockSettings:
    is_lock_enabled: bool = True
    lock_cutoff_day: int = DEFAULT_CUTOFF_DAY
    monthly_overrides: Tuple[MonthlyOverride, ...] = field(default_factory=tuple)
    carry_over_penalty_1: int = 80
    carry_over_penalty_2: int = 50
    revision_grace_days: int = 3
    unlock_default_days: int = 7


@dataclass(frozen=True)
class LockStatus:
    is_locked: bool
    is_lock_enabled: bool
    deadline: Optional[datetime]
    cutoff_day: int
    has_override: bool
    is_force_open: bool
    days_until_lock: Optional[int]
    unlock_status: Optional[str]
    approved_until: Optional[datetime]
    temporary_unlock_expiry: Optional[datetime]
    in_grace_period: bool

    @property
    def has_pending_request(self) -> bool:
        return self.unlock_status == UNLOCK_PENDING

    @property
    def is_approved(self) -> bool:
        return self.unlock_status == UNLOCK_APPROVED

    @property
    def is_rejected(self) -> bool:
        return self.unlock_status == UNLOCK_REJECTED

    @property
    def message(self) -> str:
        return lock_status_message(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_locked": self.is_locked,
            "is_lock_enabled": self.is_lock_enabled,
            "deadline": self.deadline,
            "cutoff_day": self.cutoff_day,
            "has_override": self.has_override,
            "is_force_open": self.is_force_open,
            "days_until_lock": self.days_until_lock,
            "unlock_status": self.unlock_status,
            "has_pending_request": self.has_pending_request,
            "is_approved": self.is_approved,
            "is_rejected": self.is_rejected,
            "approved_until": self.approved_until,
            "temporary_unlock_expiry": self.temporary_unlock_expiry,
            "in_grace_period": self.in_grace_period,
            "message": self.message,
        }


def load_lock_settings(db: Session) -> LockSettings:
    row = db.get(SystemSettings, SETTINGS_ROW_ID)
    schedules = (
        db.execute(
            select(MonthlyLockSchedule).order_by(
                MonthlyLockSchedule.year.asc(), MonthlyLockSchedule.month_index.asc()
            )
        )
        .scalars()
        .all()
    )
    overrides = tuple(
        MonthlyOverride(
            month_index=s.month_index,
            year=s.year,
            lock_date=as_utc(s.lock_date),
            is_force_open=bool(s.is_force_open),
        )
        for s in schedules
    )
    if row is None:
        return LockSettings(monthly_overrides=overrides)
    return LockSettings(
        is_lock_enabled=bool(row.is_lock_enabled),
        lock_cutoff_day=row.lock_cutoff_day or DEFAULT_CUTOFF_DAY,
        monthly_overrides=overrides,
        carry_over_penalty_1=row.carry_over_penalty_1,
        carry_over_penalty_2=row.carry_over_penalty_2,
        revision_grace_days=row.revision_grace_days,
        unlock_default_days=row.unlock_default_days,
    )


class LockSettingsProvider:
    """
    Read-mostly cache of LockSettings.

    Write paths call refresh() so a lock decision never rests on a stale read.
    Read paths call current(), which reloads once the snapshot is older than
    max_age_seconds. Subscribers are told whenever a reload changes the values.
    """

    def __init__(self, max_age_seconds: Optional[float] = None) -> None:
        self._max_age_seconds = max_age_seconds
        self._settings: Optional[LockSettings] = None
        self._loaded_at: Optional[float] = None
        self._subscribers: List[Callable[[LockSettings], None]] = []
        self._lock = threading.Lock()

    @property
    def max_age_seconds(self) -> float:
        if self._max_age_seconds is not None:
            return self._max_age_seconds
        return lock_settings_max_age_seconds()

    def refresh(self, db: Session) -> LockSettings:
        settings = load_lock_settings(db)
        with self._lock:
            changed = self._settings is not None and settings != self._settings
            self._settings = settings
            self._loaded_at = time.monotonic()
            subscribers = list(self._subscribers)
        if changed:
            self._notify(subscribers, settings)
        return settings

    def current(self, db: Session) -> LockSettings:
        with self._lock:
            settings = self._settings
            loaded_at = self._loaded_at
        if settings is None or loaded_at is None:
            return self.refresh(db)
        if time.monotonic() - loaded_at >= self.max_age_seconds:
            return self.refresh(db)
        return settings

    def invalidate(self) -> None:
        with self._lock:
            self._loaded_at = None

    def subscribe(self, callback: Callable[[LockSettings], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    @staticmethod
    def _notify(subscribers: List[Callable[[LockSettings], None]], settings: LockSettings) -> None:
        for callback in subscribers:
            try:
                callback(settings)
            except Exception:
                logger.warning("Lock settings subscriber %r failed", callback, exc_info=True)


lock_settings_provider = LockSettingsProvider()


# -------------------------
# Evaluation
# -------------------------

def _grant_active(plan: Any, now: datetime) -> bool:
    if plan.unlock_status != UNLOCK_APPROVED:
        return False
    approved_until = as_utc(plan.approved_until)
    # No expiry on an approved grant means it never lapses.
    if approved_until is None:
        return True
    return now < approved_until


def _in_grace_period(plan: Any, now: datetime) -> bool:
    expiry = as_utc(getattr(plan, "temporary_unlock_expiry", None))
    return expiry is not None and now < expiry


def _period_override(plan: Any, settings: LockSettings) -> Optional[MonthlyOverride]:
    return find_monthly_override(parse_month_name(plan.month), plan.year, settings.monthly_overrides)


def plan_deadline(plan: Any, settings: LockSettings) -> Optional[datetime]:
    return resolve_deadline(
        plan.month,
        plan.year,
        settings.lock_cutoff_day,
        settings.monthly_overrides,
    )


def is_plan_locked(plan: Any, settings: LockSettings, now: Optional[datetime] = None) -> bool:
    """
    Whether the plan's period is closed to edits right now.

    Order: lock disabled, approved unlock grant, revision grace window,
    force-open override, then the deadline itself. An expired grant falls
    through to the deadline check. Bad month/year input fails open.
    """
    now = as_utc(now) or utcnow()
    if not settings.is_lock_enabled:
        return False
    if _grant_active(plan, now):
        return False
    if _in_grace_period(plan, now):
        return False
    override = _period_override(plan, settings)
    if override is not None and override.is_force_open:
        return False
    deadline = plan_deadline(plan, settings)
    if deadline is None:
        return False
    return now > deadline


def get_lock_status(plan: Any, settings: LockSettings, now: Optional[datetime] = None) -> LockStatus:
    now = as_utc(now) or utcnow()
    deadline = plan_deadline(plan, settings)
    override = _period_override(plan, settings)
    days_until_lock = None
    if deadline is not None:
        days_until_lock = math.ceil((deadline - now) / timedelta(days=1))
    return LockStatus(
        is_locked=is_plan_locked(plan, settings, now),
        is_lock_enabled=settings.is_lock_enabled,
        deadline=deadline,
        cutoff_day=settings.lock_cutoff_day,
        has_override=override is not None,
        is_force_open=bool(override and override.is_force_open),
        days_until_lock=days_until_lock,
        unlock_status=plan.unlock_status,
        approved_until=as_utc(plan.approved_until),
        temporary_unlock_expiry=as_utc(getattr(plan, "temporary_unlock_expiry", None)),
        in_grace_period=_in_grace_period(plan, now),
    )


def format_deadline(deadline: Optional[datetime]) -> str:
    if deadline is None:
        return ""
    local = deadline.astimezone(deadline_zone())
    return f"{local:%b} {local.day}, {local.year}"


def lock_status_message(status: LockStatus) -> str:
    if not status.is_lock_enabled:
        return "Lock feature disabled"

    if not status.is_locked:
        if status.days_until_lock is not None and status.days_until_lock > 0:
            suffix = " (custom deadline)" if status.has_override else ""
            plural = "" if status.days_until_lock == 1 else "s"
            return f"Editable for {status.days_until_lock} more day{plural}{suffix}"
        if status.is_approved:
            return "Unlocked by admin"
        if status.in_grace_period:
            return "Editable (revision grace period)"
        if status.is_force_open:
            return "Editable (period held open)"
        return "Editable"

    if status.has_pending_request:
        return "Locked - Unlock request pending"
    if status.is_rejected:
        return "Locked - Unlock request rejected"
    suffix = " (custom deadline)" if status.has_override else ""
    return f"Locked since {format_deadline(status.deadline)}{suffix}"


def ensure_plan_writable(db: Session, plan: Any, *, actor=None, now: Optional[datetime] = None) -> None:
    """
    Pre-flight lock check for a write. Settings are re-read from the store,
    never taken from the cache. Administrators bypass the lock.
    """
    if is_admin(actor):
        return
    settings = lock_settings_provider.refresh(db)
    now = as_utc(now) or utcnow()
    if is_plan_locked(plan, settings, now):
        raise PeriodLocked(plan.id, plan.month, plan.year, plan_deadline(plan, settings))


# -------------------------
# Settings administration
# -------------------------

SETTINGS_FIELDS = (
    "is_lock_enabled",
    "lock_cutoff_day",
    "carry_over_penalty_1",
    "carry_over_penalty_2",
    "revision_grace_days",
    "unlock_default_days",
)


def _get_or_create_settings_row(db: Session) -> SystemSettings:
    row = db.get(SystemSettings, SETTINGS_ROW_ID)
    if row is None:
        row = SystemSettings(id=SETTINGS_ROW_ID)
        db.add(row)
        db.flush()
    return row


def update_lock_settings(
    db: Session,
    *,
    changes: Dict[str, Any],
    actor=None,
    now: Optional[datetime] = None,
) -> SystemSettings:
    cutoff = changes.get("lock_cutoff_day")
    if cutoff is not None and not (MIN_CUTOFF_DAY <= cutoff <= MAX_CUTOFF_DAY):
        raise ValidationError(
            f"lock_cutoff_day must be between {MIN_CUTOFF_DAY} and {MAX_CUTOFF_DAY}",
            {"lock_cutoff_day": cutoff},
        )
    for key in ("carry_over_penalty_1", "carry_over_penalty_2"):
        value = changes.get(key)
        if value is not None and not (0 <= value <= 100):
            raise ValidationError(f"{key} must be between 0 and 100", {key: value})
    for key in ("revision_grace_days", "unlock_default_days"):
        value = changes.get(key)
        if value is not None and value < 1:
            raise ValidationError(f"{key} must be at least 1", {key: value})

    row = _get_or_create_settings_row(db)
    for key in SETTINGS_FIELDS:
        if key in changes and changes[key] is not None:
            setattr(row, key, changes[key])
    row.updated_by = getattr(actor, "id", None)
    row.updated_at = now or utcnow()
    db.flush()
    return row


def upsert_monthly_override(
    db: Session,
    *,
    month_index: int,
    year: int,
    lock_date: Optional[datetime],
    is_force_open: bool = False,
    actor=None,
    now: Optional[datetime] = None,
) -> MonthlyLockSchedule:
    if not (0 <= month_index <= 11):
        raise ValidationError("month_index must be between 0 and 11", {"month_index": month_index})
    if lock_date is None and not is_force_open:
        raise ValidationError("An override needs a lock_date or is_force_open")
    now = now or utcnow()
    row = (
        db.execute(
            select(MonthlyLockSchedule).where(
                MonthlyLockSchedule.month_index == month_index,
                MonthlyLockSchedule.year == year,
            )
        )
        .scalars()
        .first()
    )
    if row is None:
        row = MonthlyLockSchedule(
            month_index=month_index,
            year=year,
            created_by=getattr(actor, "id", None),
            created_at=now,
        )
        db.add(row)
    row.lock_date = as_utc(lock_date)
    row.is_force_open = is_force_open
    row.updated_at = now
    db.flush()
    return row


def delete_monthly_override(db: Session, *, month_index: int, year: int) -> None:
    row = (
        db.execute(
            select(MonthlyLockSchedule).where(
                MonthlyLockSchedule.month_index == month_index,
                MonthlyLockSchedule.year == year,
            )
        )
        .scalars()
        .first()
    )
    if not row:
        raise HTTPException(status_code=404, detail="override not found")
    db.delete(row)
    db.flush()
