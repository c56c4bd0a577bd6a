import os
import pathlib
import sys
import tempfile
from datetime import datetime, timezone

import pytest


REPO_ROOT = pathlib.Path(__file__).resolve().parents[2]
sys.path.append(str(REPO_ROOT))


def pytest_configure():
    # Deadlines in tests are written in UTC.
    os.environ["LOCK_TIMEZONE"] = "UTC"
    if os.getenv("DATABASE_URL") or os.getenv("SQLALCHEMY_DATABASE_URL"):
        return
    temp_dir = tempfile.mkdtemp(prefix="action-plans-tests-")
    db_path = pathlib.Path(temp_dir) / "pytest.db"
    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture(scope="session")
def sqlite_engine():
    from backend.app.db import Base, engine

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def sqlite_session(sqlite_engine):
    from backend.app.db import SessionLocal

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def default_lock_settings(sqlite_engine):
    """Every test starts from default lock settings and no monthly overrides."""
    from backend.app.db import SessionLocal
    from backend.app.models import MonthlyLockSchedule, SystemSettings
    from backend.app.services.lock_service import lock_settings_provider

    session = SessionLocal()
    try:
        session.query(MonthlyLockSchedule).delete()
        session.query(SystemSettings).delete()
        session.commit()
    finally:
        session.close()
    lock_settings_provider.invalidate()
    yield


@pytest.fixture()
def recorded_notifications():
    from backend.app.services import notification_service

    events = []

    class _Recorder:
        def dispatch(self, event_type, plan_id, payload):
            events.append((event_type, plan_id, payload))

    previous = notification_service.set_dispatcher(_Recorder())
    try:
        yield events
    finally:
        notification_service.set_dispatcher(previous)


@pytest.fixture()
def frozen_clock():
    return FrozenClock(datetime(2026, 1, 20, 9, 0, tzinfo=timezone.utc))


@pytest.fixture()
def api_client(sqlite_engine, sqlite_session, frozen_clock):
    from backend.app.api.deps import get_clock
    from backend.app.db import get_db
    from backend.app.main import app
    from fastapi.testclient import TestClient

    def _get_test_db():
        yield sqlite_session

    app.dependency_overrides[get_db] = _get_test_db
    app.dependency_overrides[get_clock] = lambda: frozen_clock
    client = TestClient(app)
    try:
        yield client
    finally:
        app.dependency_overrides.pop(get_db, None)
        app.dependency_overrides.pop(get_clock, None)
