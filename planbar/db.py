from __future__ import annotations

import logging
import os

from sqlmodel import SQLModel, create_engine, Session
from sqlalchemy import text

logger = logging.getLogger(__name__)


def _make_engine():
    """Create a database engine.

    - In production, use DATABASE_URL (Postgres).
    - Locally, fall back to SQLite file (PLANBAR_DB or planbar.db).
    """
    db_url = os.environ.get("DATABASE_URL", "").strip()
    if db_url:
        # Hosting providers often hand out postgres://, SQLAlchemy wants postgresql://
        if db_url.startswith("postgres://"):
            db_url = "postgresql://" + db_url[len("postgres://"):]
        return create_engine(db_url, echo=False, pool_pre_ping=True)

    db_path = os.environ.get("PLANBAR_DB", "planbar.db")
    return create_engine(
        f"sqlite:///{db_path}",
        echo=False,
        connect_args={"check_same_thread": False},
    )


engine = _make_engine()


def use_engine(new_engine) -> None:
    """Swap the module engine (tests run against an in-memory SQLite)."""
    global engine
    engine = new_engine


def init_db() -> None:
    # Create missing tables
    SQLModel.metadata.create_all(engine)

    # SQLModel doesn't auto-migrate existing tables. Older Postgres deployments
    # may miss the capacity columns, so add them if needed.
    try:
        if engine.url.get_backend_name().startswith("postgres"):
            with engine.begin() as conn:
                conn.execute(text("ALTER TABLE IF EXISTS \"user\" ADD COLUMN IF NOT EXISTS weekly_hours DOUBLE PRECISION DEFAULT 42"))
                conn.execute(text("ALTER TABLE IF EXISTS \"user\" ADD COLUMN IF NOT EXISTS workload_percent INTEGER DEFAULT 100"))
                conn.execute(text("ALTER TABLE IF EXISTS teammember ADD COLUMN IF NOT EXISTS weekly_hours DOUBLE PRECISION DEFAULT 42"))
                conn.execute(text("ALTER TABLE IF EXISTS teammember ADD COLUMN IF NOT EXISTS workload_percent INTEGER DEFAULT 100"))
                conn.execute(text("ALTER TABLE IF EXISTS subtask ADD COLUMN IF NOT EXISTS estimated_hours DOUBLE PRECISION"))
                conn.execute(text("ALTER TABLE IF EXISTS subtask ADD COLUMN IF NOT EXISTS due_date DATE"))
                conn.execute(text("CREATE UNIQUE INDEX IF NOT EXISTS ux_user_email_lower ON \"user\" (lower(email))"))
    except Exception:
        # Never block startup due to a migration step.
        logger.exception("Schema migration step failed")
        return
    logger.info("Database ready (%s)", engine.url.get_backend_name())


def get_session() -> Session:
    return Session(engine)
