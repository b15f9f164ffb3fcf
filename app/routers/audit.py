"""
routers/audit.py — Audit log browsing and CSV export

Business Rules:
- Managers and admins read the log; it is never modified through the API
- The export honours the same filters as the list, capped at EXPORT_LIMIT rows

Called by: main.py (router mount)
Depends on: dependencies, models.AuditLog
"""

import csv
import io
import json

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import require_user
from ..exceptions import AuthorizationError
from ..models import AuditLog, User
from ..schemas.filters import AuditFilters
from ..schemas.responses import PaginatedEnvelope, page

router = APIRouter(prefix="/api/audit", tags=["audit"])

EXPORT_LIMIT = 10_000
AUDIT_ROLES = ("admin", "manager")


def require_auditor(user: User = Depends(require_user)) -> User:
    if user.role not in AUDIT_ROLES:
        raise AuthorizationError("Недостаточно прав для просмотра журнала")
    return user


def entry_to_dict(e: AuditLog) -> dict:
    return {
        "id": e.id,
        "user_id": e.user_id,
        "action": e.action,
        "entity": e.entity,
        "entity_id": e.entity_id,
        "details": e.details or {},
        "ip_address": e.ip_address,
        "created_at": e.created_at.isoformat() if e.created_at else None,
    }


@router.get("", response_model=PaginatedEnvelope)
async def list_audit(
    filters: AuditFilters = Depends(),
    user: User = Depends(require_auditor),
    db: Session = Depends(get_db),
):
    q = filters.apply(db.query(AuditLog))
    total = q.with_entities(func.count(AuditLog.id)).scalar() or 0
    rows = q.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(filters.offset).limit(filters.limit).all()
    return page([entry_to_dict(e) for e in rows], total, filters.limit, filters.offset)


@router.get("/export")
async def export_audit(
    filters: AuditFilters = Depends(),
    user: User = Depends(require_auditor),
    db: Session = Depends(get_db),
):
    rows = filters.apply(db.query(AuditLog)).order_by(AuditLog.created_at.desc()).limit(EXPORT_LIMIT).all()
    users = {u.id: u.email for u in db.query(User).all()}

    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(["Дата", "Пользователь", "Действие", "Объект", "ID объекта", "IP", "Детали"])
    for e in rows:
        writer.writerow([
            e.created_at.isoformat() if e.created_at else "",
            users.get(e.user_id, e.user_id or ""),
            e.action,
            e.entity,
            e.entity_id or "",
            e.ip_address or "",
            json.dumps(e.details or {}, ensure_ascii=False),
        ])
    # BOM so Excel opens Cyrillic correctly
    payload = "\ufeff" + buf.getvalue()
    return StreamingResponse(
        iter([payload.encode("utf-8")]),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": 'attachment; filename="audit-log.csv"'},
    )
