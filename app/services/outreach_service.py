"""
outreach_service.py — Chat ⇄ Position ⇄ Request linking and quote requests

Owns PositionChat rows and the Position quote counters.

Business Rules:
- Linking a chat to a position is idempotent: a second link only refreshes
  request_sent_at, it never adds a second row
- Counters are never incremented or decremented in place. They are derived
  from rows by recompute_position_counters(), the single writer:
    quotes_requested = PositionChat rows of the position
    quotes_received  = distinct quote sources (chats that delivered a quote,
                       plus qualifying offers not tied to such a chat)
  so they can never drift or go negative
- Linking a chat to a request only sets chat.request_id
- Unlinking a chat from a request removes all of its PositionChats and
  recomputes every affected position, in one transaction
- Sending quote requests stores every attempt; failed sends become FAILED
  messages instead of being dropped

Called by: routers/chats.py, routers/requests.py, services/webhook_service.py
Depends on: models, workflow, settings_service, supplier_selector,
            message_generator, utils/whapi_client
"""

import asyncio

from loguru import logger
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..database import atomic, utcnow
from ..exceptions import ExternalServiceError, ResourceNotFoundError, ValidationError
from ..models import (
    Chat,
    ChatMessage,
    CommercialOffer,
    Position,
    PositionChat,
    Request,
    RequestSupplier,
    Supplier,
    User,
)
from ..utils.llm_client import LLMClient
from ..utils.normalization import normalize_phone, phone_variants
from ..utils.whapi_client import WhapiClient, WhapiError
from ..workflow import (
    InvalidTransition,
    MessageDirection,
    MessageStatus,
    PositionChatStatus,
    RequestStatus,
    RequestSupplierStatus,
    SearchStatus,
    can_transition,
    soft_transition,
    transition,
)
from . import audit_service, settings_service
from .message_generator import generate_quote_request
from .supplier_selector import SupplierCandidate, select_best_suppliers

QUOTE_RECEIVED_STATUSES = (PositionChatStatus.RECEIVED.value, PositionChatStatus.SELECTED.value)
SEND_DELAY_SECONDS = 0 if settings.testing else 1.0
LAST_MESSAGE_PREVIEW = 100


def preview(text: str) -> str:
    return text if len(text) <= LAST_MESSAGE_PREVIEW else text[:LAST_MESSAGE_PREVIEW] + "..."


# ── Lookups ──────────────────────────────────────────────────────────


def get_chat(db: Session, chat_id: int) -> Chat:
    chat = db.get(Chat, chat_id)
    if not chat:
        raise ResourceNotFoundError("Чат не найден")
    return chat


def find_chat_by_phone(db: Session, phone: str) -> Chat | None:
    variants = phone_variants(phone)
    if not variants:
        return None
    return db.query(Chat).filter(Chat.phone_number.in_(variants)).order_by(Chat.id).first()


def find_or_create_chat(
    db: Session,
    phone: str,
    *,
    contact_name: str | None = None,
    request_id: int | None = None,
    supplier_id: int | None = None,
) -> tuple[Chat, bool]:
    """Chat for a phone number (any stored spelling). Flushes a new row if needed."""
    chat = find_chat_by_phone(db, phone)
    if chat:
        if contact_name and not chat.contact_name:
            chat.contact_name = contact_name
        if request_id and not chat.request_id:
            chat.request_id = request_id
        if supplier_id and not chat.supplier_id:
            chat.supplier_id = supplier_id
        return chat, False

    normalized = normalize_phone(phone)
    if not normalized:
        raise ValidationError(f"Некорректный номер телефона: {phone}")
    chat = Chat(
        phone_number=normalized,
        contact_name=contact_name,
        request_id=request_id,
        supplier_id=supplier_id,
        unread_count=0,
    )
    db.add(chat)
    db.flush()
    return chat, True


# ── Counters ─────────────────────────────────────────────────────────


def recompute_position_counters(db: Session, position: Position) -> Position:
    """Derive quotes_requested / quotes_received from rows. The only counter writer."""
    db.flush()
    db.query(Position).filter(Position.id == position.id).with_for_update().first()

    links = db.query(PositionChat).filter(PositionChat.position_id == position.id).all()
    sources: set[tuple[str, int]] = {
        ("chat", pc.chat_id)
        for pc in links
        if pc.status in QUOTE_RECEIVED_STATUSES or pc.quote_received_at is not None
    }
    offers = (
        db.query(CommercialOffer.id, CommercialOffer.chat_id)
        .filter(
            CommercialOffer.position_id == position.id,
            CommercialOffer.confidence >= settings.offer_confidence_threshold,
            CommercialOffer.needs_manual_review.is_(False),
        )
        .all()
    )
    for offer_id, chat_id in offers:
        sources.add(("chat", chat_id) if chat_id else ("offer", offer_id))

    position.quotes_requested = len(links)
    position.quotes_received = len(sources)
    return position


def recompute_request_counters(db: Session, request_id: int) -> list[Position]:
    positions = db.query(Position).filter(Position.request_id == request_id).all()
    for position in positions:
        recompute_position_counters(db, position)
    return positions


def reset_counters(db: Session, request_id: int, user: User) -> list[dict]:
    """Recount every position of a request from rows and report the changes."""
    if not db.get(Request, request_id):
        raise ResourceNotFoundError("Заявка не найдена")
    with atomic(db):
        before = {
            p.id: (p.quotes_requested, p.quotes_received)
            for p in db.query(Position).filter(Position.request_id == request_id)
        }
        positions = recompute_request_counters(db, request_id)
        changes = [
            {
                "position_id": p.id,
                "name": p.name,
                "quotes_requested": {"old": before[p.id][0], "new": p.quotes_requested},
                "quotes_received": {"old": before[p.id][1], "new": p.quotes_received},
            }
            for p in positions
        ]
        audit_service.record(
            db, "RESET_QUOTES_COUNTERS", "Request", request_id,
            user_id=user.id, details={"positions": changes},
        )
    logger.info("Counters recomputed for request {} ({} positions)", request_id, len(positions))
    return changes


# ── Linking ──────────────────────────────────────────────────────────


def _upsert_position_chat(db: Session, position: Position, chat: Chat) -> tuple[PositionChat, bool]:
    link = (
        db.query(PositionChat)
        .filter(PositionChat.position_id == position.id, PositionChat.chat_id == chat.id)
        .first()
    )
    if link:
        link.request_sent_at = utcnow()
        return link, False
    link = PositionChat(
        position_id=position.id,
        chat_id=chat.id,
        status=PositionChatStatus.REQUESTED.value,
        request_sent_at=utcnow(),
    )
    db.add(link)
    db.flush()
    soft_transition(position, "search_status", SearchStatus.QUOTES_REQUESTED)
    return link, True


def link_position(db: Session, chat_id: int, position_id: int | None) -> dict:
    if not position_id:
        raise ValidationError("Не указан ID позиции")
    chat = get_chat(db, chat_id)
    position = db.get(Position, position_id)
    if not position:
        raise ResourceNotFoundError("Позиция не найдена")

    try:
        with atomic(db):
            if not chat.request_id:
                chat.request_id = position.request_id
            link, created = _upsert_position_chat(db, position, chat)
            recompute_position_counters(db, position)
    except IntegrityError:
        # A concurrent link for the same pair won the insert
        with atomic(db):
            link, created = _upsert_position_chat(db, position, chat)
            recompute_position_counters(db, position)

    logger.info("Chat {} linked to position {} (new={})", chat.id, position.id, created)
    return {"position_chat": link, "position": position, "chat": chat, "created": created}


def unlink_position(db: Session, chat_id: int, position_id: int | None) -> Position:
    if not position_id:
        raise ValidationError("Не указан ID позиции")
    link = (
        db.query(PositionChat)
        .filter(PositionChat.position_id == position_id, PositionChat.chat_id == chat_id)
        .first()
    )
    if not link:
        raise ResourceNotFoundError("Связь чата с позицией не найдена")
    position = db.get(Position, position_id)
    with atomic(db):
        db.delete(link)
        recompute_position_counters(db, position)
    logger.info("Chat {} unlinked from position {}", chat_id, position_id)
    return position


def link_request(db: Session, chat_id: int, request_id: int | None) -> Chat:
    """Attach a chat to a request. Does not create PositionChat rows."""
    if not request_id:
        raise ValidationError("Не указан ID заявки")
    chat = get_chat(db, chat_id)
    if not db.get(Request, request_id):
        raise ResourceNotFoundError("Заявка не найдена")
    with atomic(db):
        chat.request_id = request_id
    return chat


def unlink_request(db: Session, chat_id: int) -> dict:
    chat = get_chat(db, chat_id)
    if not chat.request_id:
        raise ValidationError("Чат не привязан к заявке")
    old_request_id = chat.request_id
    with atomic(db):
        links = db.query(PositionChat).filter(PositionChat.chat_id == chat.id).all()
        position_ids = {pc.position_id for pc in links}
        for link in links:
            db.delete(link)
        db.flush()
        for position in db.query(Position).filter(Position.id.in_(position_ids)).all():
            recompute_position_counters(db, position)
        chat.request_id = None
    logger.info("Chat {} unlinked from request {} ({} links removed)", chat.id, old_request_id, len(links))
    return {"chat": chat, "removed_links": len(links), "positions": sorted(position_ids)}


# ── Outbound messages ────────────────────────────────────────────────


def store_outgoing(
    db: Session, chat: Chat, text: str, *, status: MessageStatus, meta: dict | None = None,
    external_id: str | None = None,
) -> ChatMessage:
    message = ChatMessage(
        chat_id=chat.id,
        external_id=external_id,
        direction=MessageDirection.OUTGOING.value,
        content=text,
        message_type="text",
        status=status.value,
        timestamp=utcnow(),
        meta=meta or {},
    )
    db.add(message)
    if status != MessageStatus.FAILED:
        chat.last_message = preview(text)
        chat.last_message_at = message.timestamp
    return message


async def send_chat_message(
    db: Session, chat_id: int, text: str, user: User, whatsapp: WhapiClient,
) -> ChatMessage:
    """Send a manual message from the chat screen."""
    if not text or not text.strip():
        raise ValidationError("Пустое сообщение")
    chat = get_chat(db, chat_id)
    meta = {"sent_by": user.id, "sent_by_name": user.name}
    try:
        response = await whatsapp.send_message(chat.phone_number, text)
    except WhapiError as e:
        message = store_outgoing(db, chat, text, status=MessageStatus.FAILED, meta={**meta, "error": str(e)})
        db.commit()
        raise ExternalServiceError("WhatsApp", str(e)) from e
    external_id = (response.get("message") or {}).get("id") if isinstance(response, dict) else None
    message = store_outgoing(db, chat, text, status=MessageStatus.SENT, meta=meta, external_id=external_id)
    db.commit()
    return message


def _candidates_for(position: Position, request_suppliers: list[RequestSupplier]) -> list[SupplierCandidate]:
    def to_candidate(rs: RequestSupplier, relevance: float) -> SupplierCandidate:
        s = rs.supplier
        return SupplierCandidate(
            id=s.id,
            name=s.name,
            rating=s.rating or 0,
            found_via=rs.found_via or "search",
            search_relevance=relevance,
            description=s.notes,
            website=s.website,
            address=s.address,
            tags=list(s.tags or []),
            email=s.email,
            phone=s.phone,
            whatsapp=s.whatsapp,
        )

    with_whatsapp = [rs for rs in request_suppliers if rs.supplier and rs.supplier.whatsapp]
    marker = f"auto-search-{position.name}"
    specific = [rs for rs in with_whatsapp if rs.found_via and marker in rs.found_via]
    if specific:
        return [to_candidate(rs, 0.8) for rs in specific]
    return [to_candidate(rs, 0.5) for rs in with_whatsapp]


async def send_quote_requests(
    db: Session,
    request_id: int,
    user: User,
    *,
    whatsapp: WhapiClient,
    llm: LLMClient | None,
) -> dict:
    """Contact the best suppliers for every position of a request over WhatsApp."""
    request = db.get(Request, request_id)
    if not request:
        raise ResourceNotFoundError("Заявка не найдена")
    if not can_transition(request.status, RequestStatus.PENDING_QUOTES):
        raise InvalidTransition("Request", request.status, RequestStatus.PENDING_QUOTES.value)

    limit = settings_service.suppliers_to_contact(db)
    request_suppliers = db.query(RequestSupplier).filter(RequestSupplier.request_id == request.id).all()
    by_supplier = {rs.supplier_id: rs for rs in request_suppliers}
    results = []
    total_sent = 0

    for position in list(request.positions):
        candidates = _candidates_for(position, request_suppliers)
        if not candidates:
            logger.info("No WhatsApp suppliers for position {} ({})", position.id, position.name)
            continue

        selected = await select_best_suppliers(
            {
                "name": position.name,
                "description": position.description,
                "quantity": position.quantity,
                "unit": position.unit,
            },
            candidates,
            limit,
            llm,
        )

        for analysis in selected:
            rs = by_supplier.get(analysis.supplier_id)
            supplier: Supplier | None = rs.supplier if rs else None
            if not supplier or not supplier.whatsapp:
                continue

            entry = {
                "position_id": position.id,
                "position_name": position.name,
                "supplier_id": supplier.id,
                "supplier_name": supplier.name,
                "phone": supplier.whatsapp,
            }
            with atomic(db):
                chat, _ = find_or_create_chat(
                    db, supplier.whatsapp,
                    contact_name=supplier.name, request_id=request.id, supplier_id=supplier.id,
                )
                link, _ = _upsert_position_chat(db, position, chat)

            text = await generate_quote_request(
                llm,
                supplier.name,
                {"name": position.name, "description": position.description,
                 "quantity": position.quantity, "unit": position.unit},
                request.request_number,
            )
            meta = {
                "sent_by": user.id,
                "sent_by_name": user.name,
                "position_id": position.id,
                "request_type": "quote_request",
            }
            try:
                response = await whatsapp.send_message(supplier.whatsapp, text)
            except WhapiError as e:
                with atomic(db):
                    store_outgoing(db, chat, text, status=MessageStatus.FAILED, meta={**meta, "error": str(e)})
                results.append({**entry, "status": "failed", "error": str(e), "chat_id": chat.id})
                continue

            external_id = (response.get("message") or {}).get("id") if isinstance(response, dict) else None
            with atomic(db):
                store_outgoing(db, chat, text, status=MessageStatus.SENT, meta=meta, external_id=external_id)
                soft_transition(link, "status", PositionChatStatus.SENT)
                rs.status = RequestSupplierStatus.CONTACTED.value
            total_sent += 1
            results.append({**entry, "status": "sent", "chat_id": chat.id})

            if SEND_DELAY_SECONDS:
                await asyncio.sleep(SEND_DELAY_SECONDS)

        with atomic(db):
            recompute_position_counters(db, position)

    with atomic(db):
        transition(request, "status", RequestStatus.PENDING_QUOTES)
        audit_service.record(
            db, "SEND_QUOTE_REQUESTS", "Request", request.id,
            user_id=user.id,
            details={"total_sent": total_sent, "positions": len(request.positions)},
        )

    logger.info("Quote requests for {}: {} sent", request.request_number, total_sent)
    return {"total_sent": total_sent, "total_positions": len(request.positions), "results": results}


def chats_for_request(db: Session, request_id: int) -> list[Chat]:
    """Chats attached to a request directly or through one of its positions."""
    position_ids = db.query(Position.id).filter(Position.request_id == request_id)
    linked_chat_ids = db.query(PositionChat.chat_id).filter(PositionChat.position_id.in_(position_ids))
    return (
        db.query(Chat)
        .filter(or_(Chat.request_id == request_id, Chat.id.in_(linked_chat_ids)))
        .order_by(Chat.last_message_at.desc())
        .all()
    )
