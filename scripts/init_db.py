#!/usr/bin/env python3
from __future__ import annotations

import os
import sys
import time
from pathlib import Path

from sqlalchemy import create_engine, text

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from config import APP_ENV, DATABASE_URL
from payledger.db import run_alembic_upgrade
from payledger.models import Base


def _env_int(name: str, default: int) -> int:
    raw = str(os.getenv(name, str(default))).strip()
    try:
        return int(raw)
    except ValueError:
        return default


def _wait_for_database(database_url: str) -> None:
    max_attempts = _env_int("INIT_DB_MAX_ATTEMPTS", 30)
    sleep_seconds = _env_int("INIT_DB_SLEEP_SECONDS", 2)
    engine = create_engine(database_url, future=True, pool_pre_ping=True)
    try:
        for attempt in range(1, max_attempts + 1):
            try:
                with engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
                print(f"[init-db] database reachable (attempt={attempt})")
                return
            except Exception as exc:  # noqa: BLE001
                print(f"[init-db] waiting for database (attempt={attempt}/{max_attempts}): {exc}")
                time.sleep(max(1, sleep_seconds))
        raise RuntimeError("database is not reachable after retries")
    finally:
        engine.dispose()


def _fallback_create_all(database_url: str) -> None:
    engine = create_engine(database_url, future=True, pool_pre_ping=True)
    try:
        Base.metadata.create_all(bind=engine)
        print("[init-db] fallback create_all completed")
    finally:
        engine.dispose()


def main() -> int:
    database_url = str(DATABASE_URL or os.getenv("DATABASE_URL", "")).strip()
    if not database_url:
        raise RuntimeError("DATABASE_URL is missing")
    production = str(APP_ENV or "").strip().lower() in {"prod", "production"}
    if production and not database_url.lower().startswith("postgresql"):
        raise RuntimeError("DATABASE_URL must be PostgreSQL in production")

    if database_url.lower().startswith("postgresql"):
        _wait_for_database(database_url)

    try:
        run_alembic_upgrade(database_url, "head")
        print("[init-db] alembic upgrade head completed")
    except Exception as exc:  # noqa: BLE001
        if production:
            raise
        print(f"[init-db] alembic failed, fallback to create_all: {exc}")
        _fallback_create_all(database_url)

    print("[init-db] initialization completed")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
