"""Supplier directory."""

from sqlalchemy import JSON, Boolean, Column, Float, Index, Integer, String, Text

from ..database import UTCDateTime, utcnow
from .base import Base


class Supplier(Base):
    """A company that can quote — discovered by web search or entered by hand."""

    __tablename__ = "suppliers"
    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    tax_id = Column(String(50), unique=True)  # БИН / ИНН
    email = Column(String(255))
    phone = Column(String(50))
    whatsapp = Column(String(50))
    website = Column(String(500))
    address = Column(Text)
    contact_person = Column(String(255))
    tags = Column(JSON, default=list)
    rating = Column(Float, default=0)
    contract_start = Column(UTCDateTime)
    contract_end = Column(UTCDateTime)
    is_active = Column(Boolean, default=True)
    notes = Column(Text)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_suppliers_website", "website"),
        Index("ix_suppliers_name", "name"),
    )
