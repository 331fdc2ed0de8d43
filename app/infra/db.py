from __future__ import annotations

import os
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError
from sqlmodel import create_engine

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "postgresql+psycopg://fieldlab:fieldlab@db:5432/fieldlab",
)
DB_STATEMENT_TIMEOUT_MS = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "5000"))


def build_connect_args(database_url: str, statement_timeout_ms: int = DB_STATEMENT_TIMEOUT_MS) -> dict[str, Any]:
    backend = make_url(database_url).get_backend_name()
    if backend == "postgresql":
        return {"options": f"-c statement_timeout={statement_timeout_ms}"}
    if backend == "sqlite":
        return {"check_same_thread": False, "timeout": statement_timeout_ms / 1000}
    return {}


engine = create_engine(
    DATABASE_URL,
    pool_pre_ping=True,
    connect_args=build_connect_args(DATABASE_URL),
)


def get_engine() -> Engine:
    return engine


def check_db_ready() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


def is_unique_violation(exc: IntegrityError, *fragments: str) -> bool:
    """True when the integrity error is a uniqueness failure mentioning every fragment.

    Postgres reports the constraint name, SQLite the column list, so callers
    pass fragments that appear in either form.
    """
    message = str(exc.orig).lower() if exc.orig is not None else str(exc).lower()
    if "unique" not in message and "duplicate" not in message:
        return False
    return all(fragment.lower() in message for fragment in fragments)
