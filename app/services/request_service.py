"""
request_service.py — Procurement request lifecycle

CRUD for requests and positions, Excel import, user-driven status changes
and the password-confirmed cascading delete.

Business Rules:
- Request numbers are unique; a duplicate import or create is a conflict
- Imported requests start UPLOADED with every position PENDING
- Status changes go through workflow.transition(); ARCHIVED is terminal
- Deleting a request requires the caller's password and removes every row
  reachable from it in one transaction, children first

Called by: routers/requests.py
Depends on: models, workflow, excel_import, audit_service
"""

from loguru import logger
from sqlalchemy import func
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash

from ..database import atomic
from ..exceptions import AuthenticationError, ConflictError, ResourceNotFoundError, ValidationError
from ..models import (
    Approval,
    AssistantThread,
    Chat,
    ChatMessage,
    CommercialOffer,
    Position,
    PositionChat,
    Quote,
    Request,
    RequestDecision,
    RequestSupplier,
    Task,
    User,
)
from ..schemas.filters import RequestFilters
from ..workflow import RequestStatus, SearchStatus, transition
from . import audit_service
from .excel_import import ExcelParseError, parse_request_workbook, validate_parsed_request


# ── Serialization ────────────────────────────────────────────────────


def _iso(dt):
    return dt.isoformat() if dt else None


def position_to_dict(p: Position) -> dict:
    return {
        "id": p.id,
        "request_id": p.request_id,
        "name": p.name,
        "description": p.description,
        "sku": p.sku,
        "quantity": p.quantity,
        "unit": p.unit,
        "quotes_requested": p.quotes_requested,
        "quotes_received": p.quotes_received,
        "search_status": p.search_status,
        "final_choice": p.final_choice,
        "ai_recommendation": p.ai_recommendation,
    }


def offer_to_dict(o: CommercialOffer) -> dict:
    return {
        "id": o.id,
        "request_id": o.request_id,
        "position_id": o.position_id,
        "chat_id": o.chat_id,
        "supplier_id": o.supplier_id,
        "company": o.company,
        "total_price": o.total_price,
        "currency": o.currency,
        "delivery_terms": o.delivery_terms,
        "delivery_days": o.delivery_days,
        "payment_terms": o.payment_terms,
        "validity_date": _iso(o.validity_date),
        "confidence": o.confidence,
        "needs_manual_review": o.needs_manual_review,
        "status": o.status,
        "file_name": o.file_name,
        "file_url": o.file_url,
        "notes": o.notes,
        "reviewed_by": o.reviewed_by,
        "reviewed_at": _iso(o.reviewed_at),
        "created_at": _iso(o.created_at),
    }


def decision_to_dict(d: RequestDecision | None) -> dict | None:
    if d is None:
        return None
    return {
        "id": d.id,
        "request_id": d.request_id,
        "selected_offer_id": d.selected_offer_id,
        "decided_by": d.decided_by,
        "reason": d.reason,
        "final_price": d.final_price,
        "final_currency": d.final_currency,
        "selected_supplier": d.selected_supplier,
        "decided_at": _iso(d.decided_at),
    }


def request_to_dict(r: Request, *, detail: bool = False) -> dict:
    data = {
        "id": r.id,
        "request_number": r.request_number,
        "description": r.description,
        "deadline": _iso(r.deadline),
        "budget": r.budget,
        "currency": r.currency,
        "priority": r.priority,
        "status": r.status,
        "executor": r.executor,
        "source_file": r.source_file,
        "created_by": r.created_by,
        "created_at": _iso(r.created_at),
        "updated_at": _iso(r.updated_at),
        "position_count": len(r.positions),
    }
    if detail:
        data["positions"] = [position_to_dict(p) for p in r.positions]
        data["offers"] = [offer_to_dict(o) for o in r.offers]
        data["decision"] = decision_to_dict(r.decision)
        data["suppliers"] = [
            {
                "id": rs.id,
                "supplier_id": rs.supplier_id,
                "name": rs.supplier.name if rs.supplier else None,
                "status": rs.status,
                "found_via": rs.found_via,
                "search_relevance": rs.search_relevance,
            }
            for rs in r.suppliers
        ]
    return data


# ── Queries ──────────────────────────────────────────────────────────


def get_request(db: Session, request_id: int) -> Request:
    request = db.get(Request, request_id)
    if not request:
        raise ResourceNotFoundError("Заявка не найдена")
    return request


def list_requests(db: Session, filters: RequestFilters) -> tuple[list[Request], int]:
    q = filters.apply(db.query(Request))
    total = q.with_entities(func.count(Request.id)).scalar() or 0
    rows = q.order_by(Request.created_at.desc()).offset(filters.offset).limit(filters.limit).all()
    return rows, total


def _ensure_unique_number(db: Session, request_number: str) -> None:
    if db.query(Request.id).filter(Request.request_number == request_number).first():
        raise ConflictError(f"Заявка с номером {request_number} уже существует")


# ── Create / update ──────────────────────────────────────────────────


def create_request(db: Session, data: dict, user: User) -> Request:
    """Create a request with its positions from a JSON body."""
    number = (data.get("request_number") or "").strip()
    if not number:
        raise ValidationError("Не указан номер заявки")
    positions = data.get("positions") or []
    if not positions:
        raise ValidationError("Заявка должна содержать хотя бы одну позицию")
    _ensure_unique_number(db, number)

    with atomic(db):
        request = Request(
            request_number=number,
            description=data.get("description"),
            deadline=data.get("deadline"),
            budget=data.get("budget"),
            currency=data.get("currency") or "KZT",
            priority=data.get("priority") or 0,
            status=RequestStatus.UPLOADED.value,
            executor=data.get("executor"),
            created_by=user.id,
        )
        db.add(request)
        db.flush()
        for item in positions:
            db.add(Position(
                request_id=request.id,
                name=item["name"],
                description=item.get("description"),
                sku=item.get("sku"),
                quantity=item["quantity"],
                unit=item.get("unit") or "шт",
                search_status=SearchStatus.PENDING.value,
            ))
        audit_service.record(
            db, "CREATE_REQUEST", "Request", request.id,
            user_id=user.id, details={"requestNumber": number, "positions": len(positions)},
        )
    return request


def update_request(db: Session, request_id: int, data: dict, user: User) -> Request:
    request = get_request(db, request_id)
    if request.status == RequestStatus.ARCHIVED.value:
        raise ConflictError("Архивная заявка не может быть изменена")
    number = data.get("request_number")
    if number and number != request.request_number:
        _ensure_unique_number(db, number)
    with atomic(db):
        for field in ("request_number", "description", "deadline", "budget", "currency", "priority", "executor"):
            if data.get(field) is not None:
                setattr(request, field, data[field])
        audit_service.record(
            db, "UPDATE_REQUEST", "Request", request.id,
            user_id=user.id, details={k: str(v) for k, v in data.items() if v is not None},
        )
    return request


def import_request(db: Session, file_bytes: bytes, filename: str, user: User) -> Request:
    """Create a request from an uploaded Excel export."""
    if not filename.lower().endswith((".xlsx", ".xlsm")):
        raise ValidationError("Поддерживаются только файлы Excel (.xlsx)")
    try:
        parsed = parse_request_workbook(file_bytes)
    except ExcelParseError as e:
        raise ValidationError(str(e)) from e

    valid, errors = validate_parsed_request(parsed)
    if not valid:
        raise ValidationError("Ошибки в файле заявки", detail={"errors": errors})
    _ensure_unique_number(db, parsed.request_number)

    with atomic(db):
        request = Request(
            request_number=parsed.request_number,
            description=parsed.description,
            deadline=parsed.deadline,
            currency=parsed.currency,
            priority=parsed.priority,
            executor=parsed.initiator or None,
            status=RequestStatus.UPLOADED.value,
            source_file=filename,
            created_by=user.id,
        )
        db.add(request)
        db.flush()
        for item in parsed.positions:
            db.add(Position(
                request_id=request.id,
                name=item.name,
                description=item.description,
                sku=item.sku,
                quantity=item.quantity,
                unit=item.unit,
                search_status=SearchStatus.PENDING.value,
            ))
        audit_service.record(
            db, "IMPORT_REQUEST", "Request", request.id,
            user_id=user.id,
            details={
                "requestNumber": parsed.request_number,
                "fileName": filename,
                "positions": len(parsed.positions),
                "importance": parsed.importance,
            },
        )

    logger.info("Imported {} from {} ({} positions)", request.request_number, filename, len(parsed.positions))
    return request


# ── Status ───────────────────────────────────────────────────────────


def change_status(db: Session, request_id: int, target: RequestStatus, user: User) -> Request:
    request = get_request(db, request_id)
    old = request.status
    with atomic(db):
        changed = transition(request, "status", target)
        if changed:
            audit_service.record(
                db, "CHANGE_STATUS", "Request", request.id,
                user_id=user.id, details={"from": old, "to": target.value},
            )
    return request


def archive_request(db: Session, request_id: int, user: User) -> Request:
    return change_status(db, request_id, RequestStatus.ARCHIVED, user)


# ── Delete ───────────────────────────────────────────────────────────


def delete_request(db: Session, request_id: int, password: str | None, user: User, ip_address: str | None = None) -> dict:
    """Delete a request and everything reachable from it, after a password check."""
    if not password:
        raise ValidationError("Необходимо ввести пароль")
    if not user.password_hash:
        raise ValidationError("Для пользователя не задан пароль")
    if not check_password_hash(user.password_hash, password):
        raise AuthenticationError("Неверный пароль")
    request = get_request(db, request_id)
    number = request.request_number
    user_id, user_email = user.id, user.email

    chat_ids = [c for (c,) in db.query(Chat.id).filter(Chat.request_id == request.id).all()]
    position_ids = [p for (p,) in db.query(Position.id).filter(Position.request_id == request.id).all()]
    counts: dict[str, int] = {}

    def purge(name: str, query) -> None:
        counts[name] = query.delete(synchronize_session=False)

    with atomic(db):
        purge("decisions", db.query(RequestDecision).filter(RequestDecision.request_id == request.id))
        purge("offers", db.query(CommercialOffer).filter(CommercialOffer.request_id == request.id))
        if chat_ids:
            purge("messages", db.query(ChatMessage).filter(ChatMessage.chat_id.in_(chat_ids)))
            purge("assistant_threads", db.query(AssistantThread).filter(AssistantThread.chat_id.in_(chat_ids)))
        if position_ids:
            purge("position_chats", db.query(PositionChat).filter(PositionChat.position_id.in_(position_ids)))
        if chat_ids:
            purge("chat_links", db.query(PositionChat).filter(PositionChat.chat_id.in_(chat_ids)))
            purge("chats", db.query(Chat).filter(Chat.id.in_(chat_ids)))
        purge("request_suppliers", db.query(RequestSupplier).filter(RequestSupplier.request_id == request.id))
        purge("positions", db.query(Position).filter(Position.request_id == request.id))
        purge("tasks", db.query(Task).filter(Task.request_id == request.id))
        purge("approvals", db.query(Approval).filter(Approval.request_id == request.id))
        purge("quotes", db.query(Quote).filter(Quote.request_id == request.id))
        purge("requests", db.query(Request).filter(Request.id == request.id))

    audit_service.log_action(
        db, "DELETE_REQUEST", "Request", request_id,
        user_id=user_id,
        details={"requestNumber": number, "deleted": counts},
        ip_address=ip_address,
    )
    logger.info("Request {} deleted by {}: {}", number, user_email, counts)
    return {"request_number": number, "deleted": counts}
