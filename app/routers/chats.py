"""
routers/chats.py — WhatsApp chats, messages and outreach links

Business Rules:
- Link/unlink endpoints delegate to outreach_service, which owns the
  PositionChat rows and the derived quote counters
- Opening a chat does not reset unread_count; POST /read does
- Manual messages are stored even when the gateway rejects them (FAILED)

Called by: main.py (router mount)
Depends on: dependencies, services/outreach_service
"""

from fastapi import APIRouter, Depends
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import get_whatsapp, require_purchaser, require_user
from ..models import Chat, ChatMessage, User
from ..schemas.chats import LinkPositionIn, LinkRequestIn, SendMessageIn
from ..schemas.filters import ChatFilters
from ..schemas.responses import PaginatedEnvelope, ok, page
from ..services import outreach_service
from ..services.request_service import position_to_dict

router = APIRouter(prefix="/api/chats", tags=["chats"])


def chat_to_dict(chat: Chat) -> dict:
    return {
        "id": chat.id,
        "phone_number": chat.phone_number,
        "contact_name": chat.contact_name,
        "request_id": chat.request_id,
        "supplier_id": chat.supplier_id,
        "last_message": chat.last_message,
        "last_message_at": chat.last_message_at.isoformat() if chat.last_message_at else None,
        "unread_count": chat.unread_count,
        "is_archived": chat.is_archived,
    }


def message_to_dict(m: ChatMessage) -> dict:
    return {
        "id": m.id,
        "chat_id": m.chat_id,
        "external_id": m.external_id,
        "direction": m.direction,
        "content": m.content,
        "message_type": m.message_type,
        "status": m.status,
        "timestamp": m.timestamp.isoformat() if m.timestamp else None,
        "file_url": m.file_url,
        "file_name": m.file_name,
    }


@router.get("", response_model=PaginatedEnvelope)
async def list_chats(
    filters: ChatFilters = Depends(),
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    q = filters.apply(db.query(Chat))
    total = q.with_entities(func.count(Chat.id)).scalar() or 0
    rows = (
        q.order_by(Chat.last_message_at.desc().nullslast(), Chat.id.desc())
        .offset(filters.offset)
        .limit(filters.limit)
        .all()
    )
    return page([chat_to_dict(c) for c in rows], total, filters.limit, filters.offset)


@router.get("/{chat_id}")
async def get_chat(chat_id: int, user: User = Depends(require_user), db: Session = Depends(get_db)):
    chat = outreach_service.get_chat(db, chat_id)
    data = chat_to_dict(chat)
    data["messages"] = [message_to_dict(m) for m in chat.messages]
    data["positions"] = [
        {**position_to_dict(pc.position), "link_status": pc.status,
         "request_sent_at": pc.request_sent_at.isoformat() if pc.request_sent_at else None,
         "quote_received_at": pc.quote_received_at.isoformat() if pc.quote_received_at else None}
        for pc in chat.position_chats
    ]
    return ok(data)


@router.post("/{chat_id}/messages", status_code=201)
async def send_message(
    chat_id: int,
    body: SendMessageIn,
    user: User = Depends(require_purchaser),
    db: Session = Depends(get_db),
    whatsapp=Depends(get_whatsapp),
):
    message = await outreach_service.send_chat_message(db, chat_id, body.text, user, whatsapp)
    return ok(message_to_dict(message))


@router.post("/{chat_id}/read")
async def mark_read(chat_id: int, user: User = Depends(require_user), db: Session = Depends(get_db)):
    chat = outreach_service.get_chat(db, chat_id)
    chat.unread_count = 0
    db.commit()
    return ok(chat_to_dict(chat))


@router.post("/{chat_id}/link-position")
async def link_position(
    chat_id: int,
    body: LinkPositionIn,
    user: User = Depends(require_purchaser),
    db: Session = Depends(get_db),
):
    result = outreach_service.link_position(db, chat_id, body.position_id)
    return ok({
        "chat": chat_to_dict(result["chat"]),
        "position": position_to_dict(result["position"]),
        "created": result["created"],
    })


@router.post("/{chat_id}/unlink-position")
async def unlink_position(
    chat_id: int,
    body: LinkPositionIn,
    user: User = Depends(require_purchaser),
    db: Session = Depends(get_db),
):
    position = outreach_service.unlink_position(db, chat_id, body.position_id)
    return ok(position_to_dict(position))


@router.post("/{chat_id}/link-request")
async def link_request(
    chat_id: int,
    body: LinkRequestIn,
    user: User = Depends(require_purchaser),
    db: Session = Depends(get_db),
):
    return ok(chat_to_dict(outreach_service.link_request(db, chat_id, body.request_id)))


@router.post("/{chat_id}/unlink-request")
async def unlink_request(chat_id: int, user: User = Depends(require_purchaser), db: Session = Depends(get_db)):
    result = outreach_service.unlink_request(db, chat_id)
    return ok({
        "chat": chat_to_dict(result["chat"]),
        "removed_links": result["removed_links"],
        "positions": result["positions"],
    })
