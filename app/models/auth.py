"""Auth & user models."""

from sqlalchemy import Boolean, Column, Integer, String

from ..database import UTCDateTime, utcnow
from .base import Base


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    email = Column(String(255), unique=True, nullable=False)
    name = Column(String(255))
    password_hash = Column(String(255))
    role = Column(String(20), default="purchaser")  # admin | purchaser | manager | viewer
    is_active = Column(Boolean, default=True)
    last_login_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=utcnow)
