"""SQLite engine and session helpers for botcloud.

The orchestrator API, the mTLS config server thread and the operator scripts
all open the same file, so every connection runs in WAL mode with a busy
timeout instead of failing fast on a held write lock.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager

from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("BOTCLOUD_DB_PATH", "botcloud.db")
DATABASE_URL = f"sqlite:///{DB_PATH}"
BUSY_TIMEOUT_MS = 5000

engine = create_engine(
    DATABASE_URL,
    echo=False,
    connect_args={"check_same_thread": False},
)


@event.listens_for(engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    cursor.close()


def get_session() -> Session:
    return Session(engine, expire_on_commit=False)


@contextmanager
def get_db():
    """Session that commits on success and rolls back on any exception."""
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db():
    """Create any missing tables. Existing tables are left as they are."""
    from . import db_models  # noqa: F401

    SQLModel.metadata.create_all(engine)
    logger.debug(f"Database ready at {DB_PATH}")
