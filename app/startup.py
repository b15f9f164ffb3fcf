"""
startup.py — Database Startup Tasks (Idempotent)

Tables and indexes are defined in the ORM models and created via
Base.metadata.create_all(checkfirst=True); Alembic owns schema changes in
production. This file seeds runtime settings and reads the gateway and
LLM credentials an admin may have stored in system_settings.

Called by: main.py lifespan
Depends on: database.py (engine, SessionLocal), models, settings_service
"""

import logging
import os

from sqlalchemy.exc import SQLAlchemyError

from .config import settings
from .database import SessionLocal, engine
from .services import settings_service

log = logging.getLogger(__name__)


def run_startup_migrations() -> None:
    """Execute all idempotent startup operations. Safe to call on every app boot."""
    if os.environ.get("TESTING"):
        log.info("TESTING mode, skipping startup migrations")
        return

    from .models import Base

    Base.metadata.create_all(bind=engine, checkfirst=True)
    log.info("ORM schema sync complete (create_all checkfirst=True)")

    db = SessionLocal()
    try:
        created = settings_service.seed_defaults(db)
        if created:
            log.info("Seeded %d default settings", created)
    finally:
        db.close()
    log.info("Startup tasks complete")


def load_credentials() -> dict[str, str]:
    """Gateway token and LLM key: stored setting first, environment second."""
    creds = {"whapi_token": settings.whapi_token, "openai_api_key": settings.openai_api_key}
    if os.environ.get("TESTING"):
        return creds

    db = SessionLocal()
    try:
        for key in creds:
            stored = settings_service.get_raw(db, key)
            if stored:
                creds[key] = stored
    except SQLAlchemyError as e:
        log.warning("Could not read stored credentials: %s", e)
    finally:
        db.close()
    return creds
