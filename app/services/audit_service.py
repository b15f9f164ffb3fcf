"""Audit service — best-effort append-only action log.

Business Rules:
- record() only stages the row on the caller's session; it is committed (or
  rolled back) together with the operation it describes
- log_action() writes in its own commit and never raises: a failed audit
  write is logged and dropped, the user's operation is not affected
- Rows are never updated or deleted by the application

Called by: services/*, routers/*
Depends on: models.AuditLog
"""

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import AuditLog


def record(
    db: Session,
    action: str,
    entity: str,
    entity_id=None,
    *,
    user_id: int | None = None,
    details: dict | None = None,
    ip_address: str | None = None,
) -> AuditLog:
    """Stage an audit row inside the caller's transaction."""
    entry = AuditLog(
        user_id=user_id,
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        details=details or {},
        ip_address=ip_address,
    )
    db.add(entry)
    return entry


def log_action(
    db: Session,
    action: str,
    entity: str,
    entity_id=None,
    *,
    user_id: int | None = None,
    details: dict | None = None,
    ip_address: str | None = None,
) -> None:
    """Write an audit row in its own commit. Failures are logged, never raised."""
    try:
        record(db, action, entity, entity_id, user_id=user_id, details=details, ip_address=ip_address)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("Audit write failed for {} {}#{}: {}", action, entity, entity_id, e)
