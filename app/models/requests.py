"""Procurement request models — requests, positions and request-scoped records."""

from sqlalchemy import (
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from ..database import UTCDateTime, utcnow
from ..workflow import RequestStatus, RequestSupplierStatus, SearchStatus
from .base import Base


class Request(Base):
    """A procurement ask, usually imported from an Excel file."""

    __tablename__ = "requests"
    id = Column(Integer, primary_key=True)
    request_number = Column(String(100), unique=True, nullable=False)
    description = Column(Text)
    deadline = Column(UTCDateTime)
    budget = Column(Float)
    currency = Column(String(10), default="KZT")
    priority = Column(Integer, default=0)  # 0 low | 1 medium | 2 high
    status = Column(String(20), nullable=False, default=RequestStatus.UPLOADED.value)
    executor = Column(String(255))
    source_file = Column(String(500))
    created_by = Column(Integer, ForeignKey("users.id"))
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    creator = relationship("User")
    positions = relationship(
        "Position", back_populates="request", order_by="Position.id"
    )
    suppliers = relationship("RequestSupplier", back_populates="request")
    offers = relationship("CommercialOffer", back_populates="request")
    decision = relationship("RequestDecision", back_populates="request", uselist=False)
    chats = relationship("Chat", back_populates="request")

    __table_args__ = (
        Index("ix_requests_status", "status"),
        Index("ix_requests_created_at", "created_at"),
    )


class Position(Base):
    """One line item of a request."""

    __tablename__ = "positions"
    id = Column(Integer, primary_key=True)
    request_id = Column(
        Integer, ForeignKey("requests.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(String(500), nullable=False)
    description = Column(Text)
    sku = Column(String(100))
    quantity = Column(Float, nullable=False, default=1)
    unit = Column(String(50), default="шт")
    quotes_requested = Column(Integer, nullable=False, default=0)
    quotes_received = Column(Integer, nullable=False, default=0)
    search_status = Column(String(30), nullable=False, default=SearchStatus.PENDING.value)
    final_choice = Column(Text)
    ai_recommendation = Column(Text)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    request = relationship("Request", back_populates="positions")
    position_chats = relationship("PositionChat", back_populates="position")
    offers = relationship("CommercialOffer", back_populates="position")

    __table_args__ = (Index("ix_positions_request", "request_id"),)


class RequestSupplier(Base):
    """A supplier found (or added) for a request."""

    __tablename__ = "request_suppliers"
    id = Column(Integer, primary_key=True)
    request_id = Column(
        Integer, ForeignKey("requests.id", ondelete="CASCADE"), nullable=False
    )
    supplier_id = Column(
        Integer, ForeignKey("suppliers.id", ondelete="CASCADE"), nullable=False
    )
    status = Column(String(20), default=RequestSupplierStatus.PENDING.value)
    found_via = Column(String(500))
    search_relevance = Column(Float, default=0.5)
    created_at = Column(UTCDateTime, default=utcnow)

    request = relationship("Request", back_populates="suppliers")
    supplier = relationship("Supplier")

    __table_args__ = (
        UniqueConstraint("request_id", "supplier_id", name="uq_request_supplier"),
    )


class Task(Base):
    __tablename__ = "tasks"
    id = Column(Integer, primary_key=True)
    request_id = Column(Integer, ForeignKey("requests.id", ondelete="CASCADE"))
    title = Column(String(255), nullable=False)
    description = Column(Text)
    assigned_to = Column(Integer, ForeignKey("users.id"))
    status = Column(String(20), default="TODO")
    due_date = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=utcnow)


class Approval(Base):
    __tablename__ = "approvals"
    id = Column(Integer, primary_key=True)
    request_id = Column(
        Integer, ForeignKey("requests.id", ondelete="CASCADE"), nullable=False
    )
    approver_id = Column(Integer, ForeignKey("users.id"))
    status = Column(String(20), default="PENDING")
    comment = Column(Text)
    created_at = Column(UTCDateTime, default=utcnow)


class Quote(Base):
    """Supplier quote entered by hand, before offers were parsed from chats."""

    __tablename__ = "quotes"
    id = Column(Integer, primary_key=True)
    request_id = Column(
        Integer, ForeignKey("requests.id", ondelete="CASCADE"), nullable=False
    )
    supplier_id = Column(Integer, ForeignKey("suppliers.id"))
    total_price = Column(Float)
    currency = Column(String(10), default="KZT")
    notes = Column(Text)
    created_at = Column(UTCDateTime, default=utcnow)
