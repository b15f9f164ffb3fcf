"""Settings service — runtime configuration stored in system_settings.

Business Rules:
- Values are cached in-process for 5 minutes (cache disabled under TESTING)
- Writes invalidate the cache immediately
- Secret settings (tokens, API keys) are never returned in clear text
- Unknown keys are rejected; the allowed set is DEFAULT_SETTINGS
- suppliers_to_contact is clamped to 1..10

Called by: routers/settings.py, services/outreach_service.py, main.py (seed)
Depends on: models.SystemSetting, config
"""

import json
import os
import time

from loguru import logger
from sqlalchemy.orm import Session

from ..config import settings
from ..database import utcnow
from ..models import SystemSetting

# key -> (default value, value_type, is_secret, description)
DEFAULT_SETTINGS: dict[str, tuple[str, str, bool, str]] = {
    "whapi_token": ("", "string", True, "Whapi.Cloud API token"),
    "openai_api_key": ("", "string", True, "OpenAI API key"),
    "suppliers_to_contact": (str(settings.suppliers_to_contact), "int", False, "Suppliers contacted per position"),
    "quotes_needed_for_analysis": (str(settings.quotes_needed_for_analysis), "int", False, "Quotes per position before comparison"),
    "auto_reply_enabled": ("false", "bool", False, "Reply to suppliers automatically"),
}

_cache: dict[str, str] = {}
_cache_ts: float = 0
_CACHE_TTL = 0 if os.environ.get("TESTING") else 300


def _load_cache(db: Session) -> dict[str, str]:
    global _cache, _cache_ts
    _cache = {row.key: row.value for row in db.query(SystemSetting).all()}
    _cache_ts = time.time()
    return _cache


def invalidate_cache() -> None:
    global _cache_ts
    _cache_ts = 0


def get_raw(db: Session, key: str) -> str | None:
    """Stored string value, or None when the row does not exist."""
    if time.time() - _cache_ts > _CACHE_TTL:
        _load_cache(db)
    return _cache.get(key)


def _coerce(value: str, value_type: str):
    if value_type == "int":
        return int(value)
    if value_type == "float":
        return float(value)
    if value_type == "bool":
        return value.strip().lower() in ("1", "true", "yes", "on")
    if value_type == "json":
        return json.loads(value)
    return value


def get_value(db: Session, key: str):
    """Typed value for a known key, falling back to its default."""
    default, value_type, _, _ = DEFAULT_SETTINGS[key]
    raw = get_raw(db, key)
    try:
        return _coerce(raw if raw not in (None, "") else default, value_type)
    except (ValueError, json.JSONDecodeError):
        logger.warning("Setting {} has invalid {} value, using default", key, value_type)
        return _coerce(default, value_type) if default != "" else None


def suppliers_to_contact(db: Session) -> int:
    value = get_value(db, "suppliers_to_contact") or settings.suppliers_to_contact
    return max(1, min(10, int(value)))


def quotes_needed(db: Session) -> int:
    return max(1, int(get_value(db, "quotes_needed_for_analysis") or settings.quotes_needed_for_analysis))


def _mask(value: str) -> str:
    if not value:
        return ""
    return "•" * 8 + value[-4:] if len(value) > 4 else "•" * 8


def list_settings(db: Session) -> list[dict]:
    """All known settings; secrets are masked."""
    rows = {row.key: row for row in db.query(SystemSetting).all()}
    out = []
    for key, (default, value_type, is_secret, description) in DEFAULT_SETTINGS.items():
        row = rows.get(key)
        value = row.value if row else default
        out.append({
            "key": key,
            "value": _mask(value) if is_secret else value,
            "value_type": value_type,
            "is_secret": is_secret,
            "is_set": bool(value),
            "description": description,
            "updated_by": row.updated_by if row else None,
            "updated_at": row.updated_at.isoformat() if row and row.updated_at else None,
        })
    return out


def set_value(db: Session, key: str, value: str, updated_by: str) -> dict:
    """Create or update a setting. Raises KeyError for unknown keys, ValueError for bad values."""
    if key not in DEFAULT_SETTINGS:
        raise KeyError(key)
    default, value_type, is_secret, description = DEFAULT_SETTINGS[key]
    _coerce(value, value_type)  # validates

    row = db.query(SystemSetting).filter(SystemSetting.key == key).first()
    if not row:
        row = SystemSetting(key=key, value_type=value_type, is_secret=is_secret, description=description)
        db.add(row)
    row.value = value
    row.updated_by = updated_by
    row.updated_at = utcnow()
    db.commit()
    invalidate_cache()
    logger.info("Setting {} changed by {}", key, updated_by)
    return {"key": key, "value": _mask(value) if is_secret else value, "updated_by": updated_by}


def seed_defaults(db: Session) -> int:
    """Insert missing settings rows with defaults. Returns the number created."""
    existing = {k for (k,) in db.query(SystemSetting.key).all()}
    created = 0
    for key, (default, value_type, is_secret, description) in DEFAULT_SETTINGS.items():
        if key in existing:
            continue
        db.add(SystemSetting(
            key=key, value=default, value_type=value_type,
            is_secret=is_secret, description=description, updated_by="system",
        ))
        created += 1
    if created:
        db.commit()
        invalidate_cache()
    return created
