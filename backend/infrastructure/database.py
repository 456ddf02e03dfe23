"""SQLModel database configuration."""
from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, SQLModel, create_engine

logger = logging.getLogger(__name__)

LEDGER_DATE_INDEX = "ux_daily_ledger_date"


def build_engine(db_path: Path) -> Engine:
    return create_engine(
        f"sqlite:///{db_path}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 30},
    )


def _ensure_rental_audit_columns(db_path: Path) -> None:
    """Add repriced_at/notes columns if the database pre-dates the fields."""
    if not db_path.exists():
        return

    with sqlite3.connect(db_path) as conn:
        table = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='rentalmodel'"
        ).fetchone()
        if not table:
            return
        columns = {row[1] for row in conn.execute("PRAGMA table_info(rentalmodel)").fetchall()}
        changed = False
        if "repriced_at" not in columns:
            conn.execute("ALTER TABLE rentalmodel ADD COLUMN repriced_at DATETIME")
            changed = True
        if "notes" not in columns:
            conn.execute("ALTER TABLE rentalmodel ADD COLUMN notes VARCHAR")
            changed = True
        if changed:
            conn.commit()


def ledger_date_index_exists(engine: Engine) -> bool:
    with engine.connect() as conn:
        row = conn.exec_driver_sql(
            "SELECT name FROM sqlite_master WHERE type='index' AND name=?",
            (LEDGER_DATE_INDEX,),
        ).fetchone()
    return row is not None


def ensure_unique_ledger_date(engine: Engine) -> bool:
    """Create the unique ledger-date index; False when duplicate rows block it."""
    try:
        with engine.begin() as conn:
            conn.exec_driver_sql(
                f"CREATE UNIQUE INDEX IF NOT EXISTS {LEDGER_DATE_INDEX} "
                "ON dailyledgermodel (business_date)"
            )
    except (IntegrityError, OperationalError) as exc:
        logger.warning("Cannot enforce one ledger per date (%s); run ledger deduplication", exc)
        return False
    return True


def init_db(engine: Engine, db_path: Path) -> bool:
    """Create tables, patch legacy schemas, and enforce ledger-date uniqueness."""
    from . import models  # noqa: F401  # ensure SQLModel metadata is loaded

    _ensure_rental_audit_columns(db_path)
    SQLModel.metadata.create_all(engine)
    return ensure_unique_ledger_date(engine)


def session_for(engine: Engine) -> Session:
    return Session(engine)
