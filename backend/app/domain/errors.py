"""
Action plan lifecycle error taxonomy.

Every error carries a stable ``code`` the UI keys its messaging on
(``PERIOD_LOCKED``, ``ITEM_RECALLED``, ...), the HTTP status the API renders,
and whether the caller may retry without re-fetching state first.

Validation and lock errors are raised before any write. ``ItemRecalled`` and
``StoreError`` are only known after a round-trip to the store; callers must
re-fetch the plan before doing anything else with it.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class LifecycleError(Exception):
    code = "LIFECYCLE_ERROR"
    status_code = 400
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class PeriodLocked(LifecycleError):
    """The plan's reporting period is past its deadline and no unlock grant is active."""

    code = "PERIOD_LOCKED"
    status_code = 423

    def __init__(self, plan_id: Optional[str], month: str, year: int, deadline: Any = None) -> None:
        details: Dict[str, Any] = {"plan_id": plan_id, "month": month, "year": year}
        if deadline is not None:
            details["deadline"] = deadline.isoformat()
        super().__init__(
            f"The {month} {year} reporting period is locked. Request an unlock to make changes.",
            details,
        )


class ItemRecalled(LifecycleError):
    """A conditional write lost the race: the plan is no longer submitted."""

    code = "ITEM_RECALLED"
    status_code = 409

    def __init__(self, plan_id: str) -> None:
        super().__init__(
            "This item has been recalled by the department. Please refresh and try again.",
            {"plan_id": plan_id},
        )


class ValidationError(LifecycleError):
    code = "VALIDATION_ERROR"
    status_code = 422


class CarryOverCapExceeded(LifecycleError):
    code = "CARRY_OVER_CAP_EXCEEDED"
    status_code = 422

    def __init__(self, plan_id: str) -> None:
        super().__init__(
            "This plan has already been carried over twice and must be resolved this period.",
            {"plan_id": plan_id},
        )


class PlanSubmitted(LifecycleError):
    """Edits against a submitted (or graded) plan; it must be recalled or reset first."""

    code = "PLAN_SUBMITTED"
    status_code = 409

    def __init__(self, plan_id: str, graded: bool = False) -> None:
        if graded:
            message = "This plan has been graded by management and cannot be changed."
        else:
            message = "This plan has been submitted. Recall the report to make changes."
        super().__init__(message, {"plan_id": plan_id, "graded": graded})


class StoreError(LifecycleError):
    code = "STORE_ERROR"
    status_code = 503
    retryable = True

    def __init__(self, message: str = "The plan store is unavailable. Please retry.") -> None:
        super().__init__(message)
