"""Append-only audit trail."""

from sqlalchemy import JSON, Column, Index, Integer, String

from ..database import UTCDateTime, utcnow
from .base import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer)  # no FK: entries outlive deleted users
    action = Column(String(50), nullable=False)
    entity = Column(String(50), nullable=False)
    entity_id = Column(String(50))
    details = Column(JSON, default=dict)
    ip_address = Column(String(64))
    created_at = Column(UTCDateTime, default=utcnow)

    __table_args__ = (
        Index("ix_audit_logs_action", "action"),
        Index("ix_audit_logs_entity", "entity", "entity_id"),
        Index("ix_audit_logs_created_at", "created_at"),
    )
