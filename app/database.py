"""Database connection, session factory and transaction helper.

All naive datetimes loaded from the database are tagged as UTC so that
naive-vs-aware comparisons never happen in service code.
"""

import json
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import DateTime, TypeDecorator, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from .config import settings


class UTCDateTime(TypeDecorator):
    """DateTime type that ensures UTC timezone on load."""

    impl = DateTime
    cache_ok = True

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def json_serializer(obj) -> str:
    # Keep Cyrillic readable so text search over JSON columns matches
    return json.dumps(obj, ensure_ascii=False)


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
        "connect_args": {"connect_timeout": 10},
    }


engine = create_engine(
    settings.database_url, json_serializer=json_serializer, **_engine_kwargs(settings.database_url)
)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


@event.listens_for(engine, "connect")
def _on_connect(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    if engine.dialect.name == "postgresql":
        cursor.execute("SET timezone = 'UTC'")
    elif engine.dialect.name == "sqlite":
        cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session):
    """Commit everything done inside the block, or roll all of it back.

    Multi-entity workflows (finalize, select-offer, unlink, delete) run
    inside one of these so a failure never leaves partial state.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
