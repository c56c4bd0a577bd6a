from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from backend.app.api.config import lock_settings_max_age_seconds, lock_timezone, store_timeout_seconds

router = APIRouter(prefix="/api", tags=["config"])


class ConfigOut(BaseModel):
    lock_timezone: str
    store_timeout_seconds: float
    lock_settings_max_age_seconds: float


@router.get("/config", response_model=ConfigOut)
def get_config() -> ConfigOut:
    return ConfigOut(
        lock_timezone=lock_timezone(),
        store_timeout_seconds=store_timeout_seconds(),
        lock_settings_max_age_seconds=lock_settings_max_age_seconds(),
    )
