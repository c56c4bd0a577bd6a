from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, select
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker

ALEMBIC_INI = Path(__file__).resolve().parents[2] / "alembic.ini"


def _database_url(cli_url: str | None) -> str:
    url = cli_url or os.getenv("DATABASE_URL") or os.getenv("SQLALCHEMY_DATABASE_URL")
    if not url:
        raise RuntimeError("Pass --url or set DATABASE_URL.")
    return url


def _seed(database_url: str, admin_email: str) -> None:
    """Settings row with defaults plus one admin, so the API is usable right away."""
    os.environ.setdefault("DATABASE_URL", database_url)
    from backend.app.models import SystemSettings, User
    from backend.app.services.lock_service import SETTINGS_ROW_ID

    engine = create_engine(database_url, future=True)
    session = sessionmaker(bind=engine, autoflush=False, future=True)()
    try:
        if session.get(SystemSettings, SETTINGS_ROW_ID) is None:
            session.add(SystemSettings(id=SETTINGS_ROW_ID))
        email = admin_email.strip().lower()
        if session.execute(select(User).where(User.email == email)).scalars().first() is None:
            session.add(User(email=email, name=email.split("@")[0], role="admin"))
        session.commit()
    finally:
        session.close()
        engine.dispose()


def main() -> int:
    parser = argparse.ArgumentParser(description="Rebuild the action plan schema from scratch.")
    parser.add_argument("--url", help="Override the database URL.")
    parser.add_argument("--yes", action="store_true", help="Confirm dropping every lifecycle table.")
    parser.add_argument("--seed", action="store_true", help="Seed the settings row and an admin user.")
    parser.add_argument("--admin-email", default="admin@example.com", help="Email of the seeded admin.")
    args = parser.parse_args()

    if not args.yes:
        print("Refusing to reset database without --yes.")
        return 1

    database_url = _database_url(args.url)
    config = Config(str(ALEMBIC_INI))
    config.set_main_option("sqlalchemy.url", database_url)
    command.downgrade(config, "base")
    command.upgrade(config, "head")

    if args.seed:
        _seed(database_url, args.admin_email)

    print(f"Reset {make_url(database_url).render_as_string(hide_password=True)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
