"""Runtime configuration stored in the database."""

from sqlalchemy import Boolean, Column, Integer, String

from ..database import UTCDateTime, utcnow
from ..utils.encrypted_type import EncryptedText
from .base import Base


class SystemSetting(Base):
    """Key-value runtime setting. Secret values are encrypted at rest."""

    __tablename__ = "system_settings"
    id = Column(Integer, primary_key=True)
    key = Column(String(100), unique=True, nullable=False, index=True)
    value = Column(EncryptedText, nullable=False)
    value_type = Column(String(10), nullable=False, default="string")  # string | int | float | bool | json
    is_secret = Column(Boolean, default=False)
    description = Column(String(500))
    updated_by = Column(String(255))
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
