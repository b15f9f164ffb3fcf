"""WhatsApp webhook service — store inbound messages, detect quotes.

The gateway posts every inbound message here. We persist it on the
sender's chat, decide whether it looks like a commercial offer and, if so,
move the chat's open quote requests to RECEIVED.

Usage:
    # From the FastAPI endpoint
    stats = await handle_payload(payload, db, whatsapp=whatsapp, llm=llm)

Business Rules:
- Messages we sent ourselves (from_me) are skipped
- A message whose external id is already stored is ignored, so a replayed
  delivery never double-counts
- Offer classification is keyword based; an attachment plus a number also
  counts. File name and MIME type never make a message an offer by themselves
- A PDF/DOCX/text document that looks like a КП, from a chat linked to a
  request, is downloaded and parsed into a CommercialOffer; a parsed offer
  that qualifies (confidence >= 70, no manual review) also counts as a quote
- Messages are handled one at a time; a replay is caught by the external id
  and counters are always recomputed from rows
- Once every position of a request has enough quotes the request moves to
  COMPARING and its positions to AI_ANALYZED
- Errors are logged and rolled back per message; the gateway always gets 200

Called by: routers/whatsapp.py
Depends on: outreach_service, offer_parser, settings_service, audit_service, workflow
"""

import re
from datetime import datetime, timezone

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..database import atomic, utcnow
from ..models import Chat, ChatMessage, CommercialOffer, Position, PositionChat, Request
from ..utils.llm_client import LLMClient
from ..utils.normalization import normalize_phone
from ..utils.whapi_client import WhapiClient
from ..workflow import (
    MessageDirection,
    MessageStatus,
    OfferStatus,
    PositionChatStatus,
    RequestStatus,
    SearchStatus,
    soft_transition,
)
from . import audit_service, offer_parser, settings_service
from .offer_parser import OfferParseError
from .outreach_service import find_chat_by_phone, find_or_create_chat, preview, recompute_position_counters

OFFER_KEYWORDS = (
    "цена", "стоимость", "предложение", "коммерческое",
    "кп", "прайс", "расценки", "тариф", "смета",
    "quote", "price", "cost", "offer", "proposal",
)

OFFER_FILE_KEYWORDS = (
    "кп", "коммерческое", "предложение", "прайс", "цена", "стоимость",
    "quote", "proposal", "price", "offer", "commercial",
    "смета", "расчет", "калькуляция", "тариф",
)

OFFER_MIME_TYPES = {
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "text/plain",
    "image/jpeg",
    "image/png",
}

ATTACHMENT_KEYS = ("document", "image", "media")
OPEN_STATUSES = (PositionChatStatus.REQUESTED.value, PositionChatStatus.SENT.value)


def is_offer_message(text: str, raw: dict | None = None) -> bool:
    """True when a message looks like a commercial offer."""
    lowered = (text or "").lower().strip()
    if any(keyword in lowered for keyword in OFFER_KEYWORDS):
        return True
    has_attachment = bool(raw) and any(raw.get(k) for k in ATTACHMENT_KEYS)
    return has_attachment and bool(re.search(r"\d", lowered))


def is_likely_commercial_offer_document(file_name: str, mime_type: str) -> bool:
    lowered = (file_name or "").lower()
    if any(keyword in lowered for keyword in OFFER_FILE_KEYWORDS):
        return True
    return mime_type in OFFER_MIME_TYPES or lowered.endswith((".pdf", ".doc", ".docx", ".txt"))


def extract_messages(payload: dict) -> list[dict]:
    """Normalize both supported payload shapes into flat message dicts."""
    if not isinstance(payload, dict):
        return []

    event = payload.get("event") or {}
    if isinstance(event, dict) and event.get("type") == "messages":
        out = []
        for m in payload.get("messages") or []:
            if not isinstance(m, dict):
                continue
            attachment = m.get("document") or m.get("image") or {}
            text = (m.get("text") or {}).get("body") or attachment.get("caption") or attachment.get("filename") or ""
            out.append({
                "id": m.get("id"),
                "from": m.get("from"),
                "from_me": bool(m.get("from_me")),
                "from_name": m.get("from_name"),
                "type": m.get("type") or "text",
                "timestamp": m.get("timestamp"),
                "text": text,
                "file_name": attachment.get("filename"),
                "file_url": attachment.get("link"),
                "mime_type": attachment.get("mime_type") or "",
                "raw": m,
            })
        return out

    if payload.get("type") == "message" and isinstance(payload.get("data"), dict):
        d = payload["data"]
        return [{
            "id": d.get("id"),
            "from": d.get("from"),
            "from_me": bool(d.get("from_me") or d.get("fromMe")),
            "from_name": d.get("from_name") or d.get("notifyName"),
            "type": d.get("type") or "text",
            "timestamp": d.get("timestamp"),
            "text": d.get("body") or "",
            "file_name": None,
            "file_url": None,
            "mime_type": "",
            "raw": d,
        }]

    return []


def _message_time(ts) -> datetime:
    try:
        return datetime.fromtimestamp(int(ts), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return utcnow()


def mark_quote_received(db: Session, chat: Chat) -> list[Position]:
    """Open PositionChats of the chat → RECEIVED; recompute their positions."""
    links = (
        db.query(PositionChat)
        .filter(PositionChat.chat_id == chat.id, PositionChat.status.in_(OPEN_STATUSES))
        .all()
    )
    positions = []
    for link in links:
        soft_transition(link, "status", PositionChatStatus.RECEIVED)
        link.quote_received_at = utcnow()
        position = link.position
        soft_transition(position, "search_status", SearchStatus.QUOTES_RECEIVED)
        positions.append(position)
    for position in positions:
        recompute_position_counters(db, position)
    return positions


def check_request_ready(db: Session, request: Request) -> bool:
    """Move a request to COMPARING once every position has enough quotes."""
    needed = settings_service.quotes_needed(db)
    positions = list(request.positions)
    if not positions or any((p.quotes_received or 0) < needed for p in positions):
        return False
    if not soft_transition(request, "status", RequestStatus.COMPARING):
        return request.status == RequestStatus.COMPARING.value
    for position in positions:
        soft_transition(position, "search_status", SearchStatus.AI_ANALYZED)
    logger.info("Request {} ready for comparison", request.request_number)
    return True


def process_message(db: Session, msg: dict) -> str:
    """Persist one inbound message. Returns what happened to it."""
    if msg["from_me"]:
        return "skipped"
    phone = normalize_phone(msg.get("from") or "")
    if not phone:
        return "skipped"

    external_id = msg.get("id")
    if external_id and db.query(ChatMessage.id).filter(ChatMessage.external_id == external_id).first():
        logger.debug("Webhook: duplicate message {} ignored", external_id)
        return "duplicate"

    text = msg["text"] or f"[{msg['type'].upper()}]"
    with atomic(db):
        chat, created = find_or_create_chat(db, phone, contact_name=msg.get("from_name") or phone)
        if msg.get("from_name"):
            chat.contact_name = msg["from_name"]
        timestamp = _message_time(msg.get("timestamp"))
        db.add(ChatMessage(
            chat_id=chat.id,
            external_id=external_id,
            direction=MessageDirection.INCOMING.value,
            content=text,
            message_type=msg["type"],
            status=MessageStatus.DELIVERED.value,
            timestamp=timestamp,
            file_url=msg.get("file_url"),
            file_name=msg.get("file_name"),
            meta={"whapi_data": msg["raw"]},
        ))
        chat.last_message = preview(text)
        chat.last_message_at = timestamp
        chat.unread_count = (chat.unread_count or 0) + 1
        chat.is_archived = False

        if not is_offer_message(text, msg["raw"]):
            return "stored"

        positions = mark_quote_received(db, chat)
        requests = {p.request for p in positions}
        if chat.request and chat.request not in requests:
            requests.add(chat.request)
        for request in requests:
            check_request_ready(db, request)

    logger.info("Webhook: offer from {} ({} positions updated)", phone, len(positions))
    return "offer"


def is_parseable_offer_document(msg: dict) -> bool:
    file_name = msg.get("file_name")
    if msg.get("type") != "document" or not file_name:
        return False
    mime_type = msg.get("mime_type") or ""
    return is_likely_commercial_offer_document(file_name, mime_type) and offer_parser.is_supported_document(
        mime_type, file_name
    )


async def ingest_document_offer(
    db: Session, msg: dict, *, whatsapp: WhapiClient, llm: LLMClient | None
) -> CommercialOffer | None:
    """Download and parse a КП document into a CommercialOffer.

    Only chats linked to a request are parsed. The offer is attached to the
    position when the chat is linked to exactly one position of that request.
    A qualifying offer moves the chat's open quote requests to RECEIVED.
    """
    chat = find_chat_by_phone(db, normalize_phone(msg.get("from") or ""))
    if not chat or not chat.request_id:
        logger.info("Webhook: document {} is not from a request chat, not parsed", msg.get("file_name"))
        return None

    document = (msg.get("raw") or {}).get("document") or {}
    try:
        text = await offer_parser.fetch_document_text(whatsapp, document)
    except OfferParseError as e:
        logger.warning("Webhook: document {} not parsed: {}", msg.get("file_name"), e)
        return None
    parsed = await offer_parser.parse_offer_text(llm, text, msg.get("file_name"))

    links = [
        link for link in db.query(PositionChat).filter(PositionChat.chat_id == chat.id)
        if link.position.request_id == chat.request_id
    ]
    position = links[0].position if len(links) == 1 else None

    with atomic(db):
        offer = CommercialOffer(
            request_id=chat.request_id,
            position_id=position.id if position else None,
            chat_id=chat.id,
            supplier_id=chat.supplier_id,
            company=(parsed.company or chat.contact_name or chat.phone_number)[:255],
            total_price=parsed.total_price or 0,
            currency=parsed.currency,
            delivery_terms=parsed.delivery_terms,
            payment_terms=parsed.payment_terms,
            confidence=parsed.confidence,
            needs_manual_review=parsed.needs_manual_review,
            status=OfferStatus.PENDING.value,
            file_name=msg.get("file_name"),
            file_url=msg.get("file_url"),
            notes=parsed.extracted_text or None,
        )
        db.add(offer)
        db.flush()
        if parsed.qualifies:
            mark_quote_received(db, chat)
            check_request_ready(db, chat.request)
        elif position is not None:
            recompute_position_counters(db, position)
        audit_service.record(
            db, "PARSE_OFFER_DOCUMENT", "CommercialOffer", offer.id,
            details={
                "chatId": chat.id,
                "fileName": msg.get("file_name"),
                "confidence": parsed.confidence,
                "needsManualReview": parsed.needs_manual_review,
            },
        )

    logger.info("Webhook: offer parsed from {} (confidence {})", msg.get("file_name"), parsed.confidence)
    return offer


async def handle_payload(
    payload: dict,
    db: Session,
    *,
    whatsapp: WhapiClient | None = None,
    llm: LLMClient | None = None,
) -> dict:
    """Process a webhook delivery. Never raises."""
    stats = {
        "received": 0, "stored": 0, "offers": 0, "parsed_offers": 0,
        "skipped": 0, "duplicates": 0, "errors": 0,
    }
    messages = extract_messages(payload)
    if not messages:
        kind = (payload.get("event") or payload.get("type")) if isinstance(payload, dict) else type(payload).__name__
        logger.info("Webhook: unsupported event {}", kind)
        return stats

    can_parse = whatsapp is not None and whatsapp.configured
    for msg in messages:
        stats["received"] += 1
        try:
            outcome = process_message(db, msg)
            if outcome in ("offer", "stored") and can_parse and is_parseable_offer_document(msg):
                if await ingest_document_offer(db, msg, whatsapp=whatsapp, llm=llm):
                    stats["parsed_offers"] += 1
        except SQLAlchemyError as e:
            db.rollback()
            stats["errors"] += 1
            logger.error("Webhook: failed to store message {} from {}: {}", msg.get("id"), msg.get("from"), e)
            continue
        except Exception as e:
            db.rollback()
            stats["errors"] += 1
            logger.exception("Webhook: unexpected error for message {}: {}", msg.get("id"), e)
            continue
        if outcome == "offer":
            stats["stored"] += 1
            stats["offers"] += 1
        elif outcome == "stored":
            stats["stored"] += 1
        elif outcome == "duplicate":
            stats["duplicates"] += 1
        else:
            stats["skipped"] += 1
    return stats
