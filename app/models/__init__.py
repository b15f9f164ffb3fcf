"""Database models — re-exports every model.

Import from here:  from app.models import Request, Position, ...
Or from submodules: from app.models.chats import Chat
"""

from .base import Base  # noqa: F401

# Auth & Users
from .auth import User  # noqa: F401

# Suppliers
from .suppliers import Supplier  # noqa: F401

# Core: Requests & Positions
from .requests import (  # noqa: F401
    Approval,
    Position,
    Quote,
    Request,
    RequestSupplier,
    Task,
)

# WhatsApp chats
from .chats import AssistantThread, Chat, ChatMessage, PositionChat  # noqa: F401

# Offers & Decisions
from .offers import CommercialOffer, RequestDecision  # noqa: F401

# Audit & Config
from .audit import AuditLog  # noqa: F401
from .config import SystemSetting  # noqa: F401
