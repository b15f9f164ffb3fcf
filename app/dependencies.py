"""
dependencies.py — Shared FastAPI Dependencies

Authentication, role checks and access to the clients the lifespan builds.
All routers import from here instead of defining their own auth logic.

Business Rules:
- get_user returns None if not logged in (non-throwing)
- require_user raises 401 if not logged in, 403 if deactivated
- require_purchaser raises 403 unless the role is purchaser/manager/admin
- require_admin raises 403 if user.role != "admin"
- Outbound clients (WhatsApp gateway, LLM, search providers, scraper HTTP)
  live on app.state and are overridden in tests via dependency_overrides

Called by: all routers
Depends on: models, database
"""

import logging

from fastapi import Depends, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .database import get_db
from .exceptions import AuthenticationError, AuthorizationError
from .models import User
from .utils.llm_client import LLMClient
from .utils.whapi_client import WhapiClient

log = logging.getLogger(__name__)

PURCHASE_ROLES = ("purchaser", "manager", "admin")


# ── Authentication ────────────────────────────────────────────────────


def get_user(request: Request, db: Session) -> User | None:
    """Return current user from session, or None if not logged in."""
    uid = request.session.get("user_id")
    if not uid:
        return None
    try:
        return db.get(User, uid)
    except SQLAlchemyError:
        request.session.clear()
        return None


def require_user(request: Request, db: Session = Depends(get_db)) -> User:
    """Dependency: raises 401 if no authenticated user, 403 if deactivated."""
    user = get_user(request, db)
    if not user:
        raise AuthenticationError("Требуется авторизация")
    if not user.is_active:
        request.session.clear()
        raise AuthorizationError("Учетная запись отключена")
    return user


def require_admin(user: User = Depends(require_user)) -> User:
    """Dependency: raises 403 if user is not an admin."""
    if user.role != "admin":
        raise AuthorizationError("Требуются права администратора")
    return user


def require_purchaser(user: User = Depends(require_user)) -> User:
    """Dependency: procurement actions (search, outreach, decisions)."""
    if user.role not in PURCHASE_ROLES:
        raise AuthorizationError("Недостаточно прав для этого действия")
    return user


# ── Clients ───────────────────────────────────────────────────────────


def get_whatsapp(request: Request) -> WhapiClient:
    return request.app.state.whatsapp


def get_llm(request: Request) -> LLMClient:
    return request.app.state.llm


def get_search_providers(request: Request) -> list:
    return request.app.state.search_providers


def get_scraper_http(request: Request):
    return request.app.state.scraper_http
