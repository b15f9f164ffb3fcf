"""Commercial offer and final decision models."""

from sqlalchemy import (
    Boolean,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from ..database import UTCDateTime, utcnow
from ..workflow import OfferStatus
from .base import Base


class CommercialOffer(Base):
    """A supplier quote (КП) parsed from a chat or entered by a buyer."""

    __tablename__ = "commercial_offers"
    id = Column(Integer, primary_key=True)
    request_id = Column(
        Integer, ForeignKey("requests.id", ondelete="CASCADE"), nullable=False
    )
    position_id = Column(Integer, ForeignKey("positions.id", ondelete="SET NULL"))
    chat_id = Column(Integer, ForeignKey("chats.id", ondelete="SET NULL"))
    supplier_id = Column(Integer, ForeignKey("suppliers.id", ondelete="SET NULL"))

    company = Column(String(255), nullable=False)
    total_price = Column(Float, nullable=False)
    currency = Column(String(10), default="KZT")
    delivery_terms = Column(Text)
    delivery_days = Column(Integer)
    payment_terms = Column(Text)
    validity_date = Column(UTCDateTime)
    confidence = Column(Float, default=0)
    needs_manual_review = Column(Boolean, default=False)
    status = Column(String(20), nullable=False, default=OfferStatus.PENDING.value)
    file_url = Column(String(1000))
    file_name = Column(String(500))
    notes = Column(Text)
    reviewed_by = Column(Integer, ForeignKey("users.id"))
    reviewed_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=utcnow)

    request = relationship("Request", back_populates="offers")
    position = relationship("Position", back_populates="offers")

    __table_args__ = (
        Index("ix_offers_request", "request_id"),
        Index("ix_offers_position", "position_id"),
    )


class RequestDecision(Base):
    """The single recorded outcome of a request."""

    __tablename__ = "request_decisions"
    id = Column(Integer, primary_key=True)
    request_id = Column(
        Integer,
        ForeignKey("requests.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    selected_offer_id = Column(
        Integer, ForeignKey("commercial_offers.id", ondelete="SET NULL")
    )
    decided_by = Column(Integer, ForeignKey("users.id"))
    reason = Column(Text)
    final_price = Column(Float)
    final_currency = Column(String(10))
    selected_supplier = Column(String(255))
    decided_at = Column(UTCDateTime, default=utcnow)

    request = relationship("Request", back_populates="decision")
    selected_offer = relationship("CommercialOffer")
