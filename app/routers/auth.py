"""
routers/auth.py — Password login, logout, session status, user creation

Business Rules:
- Login compares the werkzeug password hash; the session cookie carries
  only user_id
- Deactivated users cannot log in
- Email normalized to lowercase on login
- Only admins create users

Called by: main.py (router mount)
Depends on: dependencies, models, rate_limit
"""

from fastapi import APIRouter, Depends, Request
from loguru import logger
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from ..config import settings
from ..database import get_db, utcnow
from ..dependencies import require_admin, require_user
from ..exceptions import AuthenticationError, AuthorizationError, ConflictError
from ..models import User
from ..rate_limit import limiter
from ..schemas.auth import LoginIn, UserCreate
from ..schemas.responses import ok
from ..services import audit_service

router = APIRouter(prefix="/auth", tags=["auth"])


def user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "is_active": user.is_active,
        "last_login_at": user.last_login_at.isoformat() if user.last_login_at else None,
    }


@router.post("/login")
@limiter.limit(settings.rate_limit_login)
async def login(request: Request, body: LoginIn, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == body.email).first()
    if not user or not user.password_hash or not check_password_hash(user.password_hash, body.password):
        logger.info("Failed login for {}", body.email)
        raise AuthenticationError("Неверный email или пароль")
    if not user.is_active:
        raise AuthorizationError("Учетная запись отключена")

    user.last_login_at = utcnow()
    db.commit()
    request.session.clear()
    request.session["user_id"] = user.id
    audit_service.log_action(
        db, "LOGIN", "User", user.id,
        user_id=user.id, ip_address=request.client.host if request.client else None,
    )
    return ok(user_to_dict(user))


@router.post("/logout")
async def logout(request: Request):
    request.session.clear()
    return ok(message="Вы вышли из системы")


@router.get("/me")
async def me(user: User = Depends(require_user)):
    return ok(user_to_dict(user))


@router.post("/users", status_code=201)
async def create_user(
    body: UserCreate,
    request: Request,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    if db.query(User.id).filter(User.email == body.email).first():
        raise ConflictError("Пользователь с таким email уже существует")
    user = User(
        email=body.email,
        name=body.name,
        role=body.role,
        password_hash=generate_password_hash(body.password),
        is_active=True,
    )
    db.add(user)
    db.commit()
    audit_service.log_action(
        db, "CREATE_USER", "User", user.id,
        user_id=admin.id, details={"email": user.email, "role": user.role},
        ip_address=request.client.host if request.client else None,
    )
    return ok(user_to_dict(user))
