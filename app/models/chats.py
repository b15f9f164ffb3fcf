"""WhatsApp conversation models — chats, messages and position links."""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from ..database import UTCDateTime, utcnow
from ..workflow import MessageStatus, PositionChatStatus
from .base import Base


class Chat(Base):
    """One WhatsApp conversation, keyed by the normalized phone number."""

    __tablename__ = "chats"
    id = Column(Integer, primary_key=True)
    phone_number = Column(String(50), unique=True, nullable=False)
    contact_name = Column(String(255))
    request_id = Column(Integer, ForeignKey("requests.id", ondelete="SET NULL"))
    supplier_id = Column(Integer, ForeignKey("suppliers.id", ondelete="SET NULL"))
    last_message = Column(Text)
    last_message_at = Column(UTCDateTime)
    unread_count = Column(Integer, nullable=False, default=0)
    is_archived = Column(Boolean, default=False)
    created_at = Column(UTCDateTime, default=utcnow)

    request = relationship("Request", back_populates="chats")
    supplier = relationship("Supplier")
    messages = relationship(
        "ChatMessage", back_populates="chat", order_by="ChatMessage.timestamp"
    )
    position_chats = relationship("PositionChat", back_populates="chat")

    __table_args__ = (Index("ix_chats_request", "request_id"),)


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    id = Column(Integer, primary_key=True)
    chat_id = Column(Integer, ForeignKey("chats.id", ondelete="CASCADE"), nullable=False)
    external_id = Column(String(255))
    direction = Column(String(10), nullable=False)  # INCOMING | OUTGOING
    content = Column(Text, default="")
    message_type = Column(String(20), default="text")
    status = Column(String(20), default=MessageStatus.SENT.value)
    timestamp = Column(UTCDateTime, default=utcnow)
    file_url = Column(String(1000))
    file_name = Column(String(500))
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, default=dict)

    chat = relationship("Chat", back_populates="messages")

    __table_args__ = (
        Index("ix_chat_messages_chat_ts", "chat_id", "timestamp"),
        Index("ix_chat_messages_external", "external_id"),
    )


class PositionChat(Base):
    """Outreach state between one position and one chat."""

    __tablename__ = "position_chats"
    id = Column(Integer, primary_key=True)
    position_id = Column(
        Integer, ForeignKey("positions.id", ondelete="CASCADE"), nullable=False
    )
    chat_id = Column(Integer, ForeignKey("chats.id", ondelete="CASCADE"), nullable=False)
    status = Column(String(20), nullable=False, default=PositionChatStatus.REQUESTED.value)
    request_sent_at = Column(UTCDateTime)
    quote_received_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=utcnow)

    position = relationship("Position", back_populates="position_chats")
    chat = relationship("Chat", back_populates="position_chats")

    __table_args__ = (
        UniqueConstraint("position_id", "chat_id", name="uq_position_chat"),
    )


class AssistantThread(Base):
    """LLM assistant conversation attached to a chat."""

    __tablename__ = "assistant_threads"
    id = Column(Integer, primary_key=True)
    chat_id = Column(Integer, ForeignKey("chats.id", ondelete="CASCADE"), nullable=False)
    thread_id = Column(String(255), nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)
