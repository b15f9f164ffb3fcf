"""
routers/settings.py — Runtime settings (admin)

Business Rules:
- Anyone logged in can read settings; secrets come back masked
- Only admins change them; unknown keys are a 404, bad values a 400
- A new whapi_token is applied to the live gateway client immediately

Called by: main.py (router mount)
Depends on: dependencies, settings_service
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import require_admin, require_user
from ..exceptions import ResourceNotFoundError, ValidationError
from ..models import User
from ..schemas.responses import ok
from ..schemas.settings import SettingUpdate
from ..services import audit_service, settings_service

router = APIRouter(prefix="/api/settings", tags=["settings"])


@router.get("")
async def list_settings(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return ok(settings_service.list_settings(db))


@router.put("/{key}")
async def update_setting(
    key: str,
    body: SettingUpdate,
    request: Request,
    user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        result = settings_service.set_value(db, key, body.value, user.email)
    except KeyError:
        raise ResourceNotFoundError(f"Неизвестная настройка: {key}")
    except ValueError as e:
        raise ValidationError(f"Некорректное значение для {key}: {e}")

    if key == "whapi_token":
        request.app.state.whatsapp.set_token(body.value)
    elif key == "openai_api_key":
        request.app.state.llm.api_key = body.value

    audit_service.log_action(
        db, "UPDATE_SETTING", "SystemSetting", key,
        user_id=user.id, ip_address=request.client.host if request.client else None,
    )
    return ok(result)
