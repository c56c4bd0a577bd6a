import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DBAPIError

from backend.app.api.routes.action_plans import router as action_plans_router
from backend.app.api.routes.audit import router as audit_router
from backend.app.api.routes.config import router as config_router
from backend.app.api.routes.lock_settings import router as lock_settings_router
from backend.app.domain.errors import LifecycleError, StoreError


logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS")
    if raw is None:
        origins = ["http://localhost:5173", "http://127.0.0.1:5173"]
    else:
        origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    if not origins:
        raise RuntimeError("CORS_ALLOW_ORIGINS must not be empty.")
    if not any(origin in origins for origin in ("http://localhost:5173", "http://127.0.0.1:5173")):
        logger.warning("CORS allowlist does not include local dev origins: %s", origins)
    return origins


app = FastAPI(title="Action Plan Lifecycle API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LifecycleError)
def _lifecycle_error(request: Request, exc: LifecycleError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(DBAPIError)
def _store_error(request: Request, exc: DBAPIError):
    logger.warning("%s %s hit a store error", request.method, request.url.path, exc_info=exc)
    err = StoreError()
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


app.include_router(config_router)
app.include_router(lock_settings_router)
app.include_router(audit_router)
app.include_router(action_plans_router)
