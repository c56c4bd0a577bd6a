"""Domain contracts, lifecycle constants and error taxonomy."""

from backend.app.domain.errors import (  # noqa: F401
    CarryOverCapExceeded,
    ItemRecalled,
    LifecycleError,
    PeriodLocked,
    PlanSubmitted,
    StoreError,
    ValidationError,
)
