"""
test_services_webhook.py — Tests for app/services/webhook_service.py and /api/whatsapp/webhook

Covers:
- is_offer_message() keyword / attachment classification
- extract_messages() for the Whapi and the simple payload shapes
- process_message(): chat find-or-create, message storage, from_me skip,
  duplicate ids, open links → RECEIVED, counters
- Documents: file names alone never count; КП documents from request chats
  are downloaded and parsed, and only a qualifying parse counts as a quote
- check_request_ready(): COMPARING exactly when every position has 3 quotes
- handle_payload() swallows database errors; the endpoint always answers 200

Called by: pytest
Depends on: app/services/webhook_service.py, tests/conftest.py
"""

from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from app.models import Chat, ChatMessage, CommercialOffer, PositionChat
from app.services import webhook_service
from app.services.webhook_service import (
    check_request_ready,
    extract_messages,
    handle_payload,
    is_likely_commercial_offer_document,
    is_offer_message,
    process_message,
)
from app.utils.whapi_client import WhapiError
from app.workflow import MessageDirection, MessageStatus, PositionChatStatus, RequestStatus, SearchStatus


def simple_payload(body: str, sender: str = "77011234567@c.us", msg_id: str = "wamid-1", **extra) -> dict:
    return {
        "type": "message",
        "data": {"id": msg_id, "from": sender, "body": body, "timestamp": 1710000000, "type": "text", **extra},
    }


def whapi_payload(*messages: dict) -> dict:
    return {"event": {"type": "messages", "event": "post"}, "messages": list(messages)}


def _link(db, position, chat, status=PositionChatStatus.SENT):
    link = PositionChat(position_id=position.id, chat_id=chat.id, status=status.value)
    db.add(link)
    position.search_status = SearchStatus.QUOTES_REQUESTED.value
    db.commit()
    return link


# ── Classification ───────────────────────────────────────────────────


class TestIsOfferMessage:
    def test_price_keyword(self):
        assert is_offer_message("Цена 15000 тенге, поставка 3 дня") is True

    def test_greeting_is_not_an_offer(self):
        assert is_offer_message("привет, как дела?") is False

    @pytest.mark.parametrize("text", ["Высылаю КП", "Наша смета во вложении", "Please find our quote", "PRICE LIST"])
    def test_other_keywords(self, text):
        assert is_offer_message(text) is True

    def test_attachment_with_digits(self):
        assert is_offer_message("Счет №45", {"document": {"filename": "scan.pdf"}}) is True

    def test_attachment_without_digits(self):
        assert is_offer_message("Смотрите файл", {"image": {"link": "https://x"}}) is False

    def test_digits_without_attachment(self):
        assert is_offer_message("Будем завтра в 10") is False

    def test_empty(self):
        assert is_offer_message("") is False
        assert is_offer_message(None) is False


def test_offer_document_detection():
    assert is_likely_commercial_offer_document("КП_Цемент.xlsx", "application/vnd.ms-excel") is True
    assert is_likely_commercial_offer_document("scan.pdf", "") is True
    assert is_likely_commercial_offer_document("photo.heic", "image/heic") is False


# ── Payload shapes ───────────────────────────────────────────────────


def test_extract_whapi_messages():
    payload = whapi_payload(
        {"id": "a1", "from": "77011234567", "from_name": "Айгуль", "type": "text", "text": {"body": "Цена 500"}},
        {"id": "a2", "from": "77011234567", "type": "document",
         "document": {"filename": "kp.pdf", "mime_type": "application/pdf", "link": "https://files/kp.pdf"}},
        {"id": "a3", "from": "77000000000", "from_me": True, "type": "text", "text": {"body": "Мы"}},
    )
    messages = extract_messages(payload)
    assert [m["id"] for m in messages] == ["a1", "a2", "a3"]
    assert messages[0]["text"] == "Цена 500"
    assert messages[0]["from_name"] == "Айгуль"
    assert messages[1]["text"] == "kp.pdf"
    assert messages[1]["file_url"] == "https://files/kp.pdf"
    assert messages[1]["mime_type"] == "application/pdf"
    assert messages[2]["from_me"] is True


def test_extract_simple_message():
    [msg] = extract_messages(simple_payload("Добрый день", chat_id="77011234567@c.us"))
    assert msg["id"] == "wamid-1"
    assert msg["from"] == "77011234567@c.us"
    assert msg["text"] == "Добрый день"
    assert msg["type"] == "text"


@pytest.mark.parametrize("payload", [{}, {"type": "ack"}, {"event": {"type": "statuses"}}, [], "oops"])
def test_extract_ignores_other_events(payload):
    assert extract_messages(payload) == []


# ── Processing ───────────────────────────────────────────────────────


def test_inbound_message_creates_chat(db_session):
    [msg] = extract_messages(simple_payload("привет, как дела?", sender="87019998877@c.us", notifyName="Ержан"))
    assert process_message(db_session, msg) == "stored"

    chat = db_session.query(Chat).one()
    assert chat.phone_number == "77019998877"
    assert chat.contact_name == "Ержан"
    assert chat.unread_count == 1
    assert chat.last_message == "привет, как дела?"
    stored = db_session.query(ChatMessage).one()
    assert stored.direction == MessageDirection.INCOMING.value
    assert stored.status == MessageStatus.DELIVERED.value
    assert stored.meta["whapi_data"]["id"] == "wamid-1"


def test_inbound_message_reuses_existing_chat(db_session, make_chat):
    chat = make_chat(phone="77011234567")
    for i in range(2):
        [msg] = extract_messages(simple_payload(f"сообщение {i}", msg_id=f"m{i}"))
        process_message(db_session, msg)
    db_session.refresh(chat)
    assert db_session.query(Chat).count() == 1
    assert chat.unread_count == 2


def test_from_me_is_skipped(db_session):
    [msg] = extract_messages(simple_payload("Наше КП", fromMe=True))
    assert process_message(db_session, msg) == "skipped"
    assert db_session.query(ChatMessage).count() == 0


def test_duplicate_delivery_is_ignored(db_session, procurement_request, make_chat):
    chat = make_chat(phone="77011234567")
    position = procurement_request.positions[0]
    _link(db_session, position, chat)

    [msg] = extract_messages(simple_payload("Цена 1000"))
    assert process_message(db_session, msg) == "offer"
    assert process_message(db_session, msg) == "duplicate"

    db_session.refresh(position)
    assert position.quotes_received == 1
    assert db_session.query(ChatMessage).count() == 1


def test_offer_marks_open_links_received(db_session, procurement_request, make_chat):
    p1, p2 = procurement_request.positions
    chat = make_chat(phone="77011234567", request_id=procurement_request.id)
    _link(db_session, p1, chat, PositionChatStatus.SENT)
    _link(db_session, p2, chat, PositionChatStatus.REQUESTED)

    [msg] = extract_messages(simple_payload("Цена 15000 тенге, поставка 3 дня"))
    assert process_message(db_session, msg) == "offer"

    for link in db_session.query(PositionChat).all():
        assert link.status == PositionChatStatus.RECEIVED.value
        assert link.quote_received_at is not None
    for position in (p1, p2):
        db_session.refresh(position)
        assert position.quotes_received == 1
        assert position.search_status == SearchStatus.QUOTES_RECEIVED.value
    db_session.refresh(procurement_request)
    assert procurement_request.status == RequestStatus.UPLOADED.value


def test_chatter_changes_no_state(db_session, procurement_request, make_chat):
    chat = make_chat(phone="77011234567")
    position = procurement_request.positions[0]
    _link(db_session, position, chat)

    [msg] = extract_messages(simple_payload("привет, как дела?"))
    assert process_message(db_session, msg) == "stored"

    link = db_session.query(PositionChat).one()
    assert link.status == PositionChatStatus.SENT.value
    db_session.refresh(position)
    assert position.quotes_received == 0


def test_document_named_as_offer_counts(db_session, procurement_request, make_chat):
    chat = make_chat(phone="77011234567")
    _link(db_session, procurement_request.positions[0], chat)
    payload = whapi_payload({
        "id": "doc-1", "from": "77011234567", "type": "document",
        "document": {"filename": "Коммерческое_предложение.pdf", "mime_type": "application/pdf"},
    })
    [msg] = extract_messages(payload)
    assert process_message(db_session, msg) == "offer"
    stored = db_session.query(ChatMessage).one()
    assert stored.file_name == "Коммерческое_предложение.pdf"
    assert stored.message_type == "document"


def test_plain_pdf_is_not_a_quote(db_session, procurement_request, make_chat):
    chat = make_chat(phone="77011234567")
    position = procurement_request.positions[0]
    _link(db_session, position, chat)
    payload = whapi_payload({
        "id": "doc-2", "from": "77011234567", "type": "document",
        "document": {"filename": "scan.pdf", "mime_type": "application/pdf"},
    })
    [msg] = extract_messages(payload)
    assert process_message(db_session, msg) == "stored"

    assert db_session.query(PositionChat).one().status == PositionChatStatus.SENT.value
    db_session.refresh(position)
    assert position.quotes_received == 0


# ── Document parsing ─────────────────────────────────────────────────


def _document_payload(file_name="scan.txt", msg_id="doc-9", media_id="media-9"):
    document = {"filename": file_name, "mime_type": "text/plain"}
    if media_id:
        document["id"] = media_id
    return whapi_payload({"id": msg_id, "from": "77011234567", "type": "document", "document": document})


@pytest.mark.asyncio
async def test_parsed_document_offer_counts_as_quote(db_session, procurement_request, make_chat, whatsapp, llm):
    position = procurement_request.positions[0]
    chat = make_chat(phone="77011234567", request_id=procurement_request.id)
    _link(db_session, position, chat)
    whatsapp.download_media.return_value = "ТОО Бета\nИтого: 150 000 тенге".encode()
    llm.enabled = True
    llm.json.return_value = {
        "totalPrice": 150000, "currency": "KZT", "company": "ТОО Бета",
        "positions": [{"name": "Цемент", "quantity": 10, "unit": "шт", "totalPrice": 150000}],
    }

    stats = await handle_payload(_document_payload(), db_session, whatsapp=whatsapp, llm=llm)

    assert stats["stored"] == 1
    assert stats["offers"] == 0
    assert stats["parsed_offers"] == 1
    whatsapp.download_media.assert_awaited_once_with("media-9")
    offer = db_session.query(CommercialOffer).one()
    assert offer.position_id == position.id
    assert offer.chat_id == chat.id
    assert offer.company == "ТОО Бета"
    assert offer.total_price == 150000
    assert offer.needs_manual_review is False
    assert offer.file_name == "scan.txt"
    assert db_session.query(PositionChat).one().status == PositionChatStatus.RECEIVED.value
    db_session.refresh(position)
    assert position.quotes_received == 1


@pytest.mark.asyncio
async def test_unsure_document_offer_waits_for_review(db_session, procurement_request, make_chat, whatsapp, llm):
    position = procurement_request.positions[0]
    chat = make_chat(phone="77011234567", request_id=procurement_request.id)
    _link(db_session, position, chat)
    whatsapp.download_media.return_value = "ТОО Бета\nИтого: 150 000 тенге".encode()

    stats = await handle_payload(_document_payload(), db_session, whatsapp=whatsapp, llm=llm)

    assert stats["parsed_offers"] == 1
    offer = db_session.query(CommercialOffer).one()
    assert offer.total_price == 150000
    assert offer.needs_manual_review is True
    assert db_session.query(PositionChat).one().status == PositionChatStatus.SENT.value
    db_session.refresh(position)
    assert position.quotes_received == 0


@pytest.mark.asyncio
async def test_document_from_unlinked_chat_is_not_parsed(db_session, make_chat, whatsapp, llm):
    make_chat(phone="77011234567")

    stats = await handle_payload(_document_payload(), db_session, whatsapp=whatsapp, llm=llm)

    assert stats["stored"] == 1
    assert stats["parsed_offers"] == 0
    whatsapp.download_media.assert_not_awaited()
    assert db_session.query(CommercialOffer).count() == 0


@pytest.mark.asyncio
async def test_document_download_failure_keeps_message(db_session, procurement_request, make_chat, whatsapp, llm):
    make_chat(phone="77011234567", request_id=procurement_request.id)
    whatsapp.download_media.side_effect = WhapiError("Not found", 404)

    stats = await handle_payload(_document_payload(), db_session, whatsapp=whatsapp, llm=llm)

    assert stats["stored"] == 1
    assert stats["errors"] == 0
    assert stats["parsed_offers"] == 0
    assert db_session.query(ChatMessage).count() == 1
    assert db_session.query(CommercialOffer).count() == 0


@pytest.mark.asyncio
async def test_documents_are_not_parsed_without_gateway(db_session, procurement_request, make_chat, whatsapp, llm):
    make_chat(phone="77011234567", request_id=procurement_request.id)
    whatsapp.configured = False

    stats = await handle_payload(_document_payload(), db_session, whatsapp=whatsapp, llm=llm)

    assert stats["parsed_offers"] == 0
    whatsapp.download_media.assert_not_awaited()


# ── Readiness ────────────────────────────────────────────────────────


def _deliver_quotes(db, request, count: int, positions=None):
    """`count` suppliers each quote on the given positions (default: all)."""
    positions = positions if positions is not None else list(request.positions)
    for i in range(count):
        phone = f"7702000000{i}"
        chat = Chat(phone_number=phone, request_id=request.id, unread_count=0)
        db.add(chat)
        db.commit()
        for position in positions:
            db.add(PositionChat(position_id=position.id, chat_id=chat.id, status=PositionChatStatus.SENT.value))
        db.commit()
        [msg] = extract_messages(simple_payload("Наша цена 1000", sender=phone, msg_id=f"{phone}-{i}"))
        process_message(db, msg)


def test_request_moves_to_comparing_when_all_positions_have_three_quotes(db_session, make_request):
    request = make_request(status=RequestStatus.PENDING_QUOTES.value)
    _deliver_quotes(db_session, request, 3)

    db_session.refresh(request)
    assert request.status == RequestStatus.COMPARING.value
    for position in request.positions:
        assert position.quotes_received == 3
        assert position.search_status == SearchStatus.AI_ANALYZED.value


def test_request_waits_while_any_position_is_short(db_session, make_request):
    request = make_request(status=RequestStatus.PENDING_QUOTES.value)
    p1, p2 = request.positions
    _deliver_quotes(db_session, request, 3, positions=[p1])

    db_session.refresh(request)
    assert request.status == RequestStatus.PENDING_QUOTES.value
    db_session.refresh(p1)
    db_session.refresh(p2)
    assert p1.quotes_received == 3
    assert p2.quotes_received == 0
    assert check_request_ready(db_session, request) is False


def test_ready_check_ignores_requests_without_positions(db_session, make_request):
    request = make_request(positions=0)
    assert check_request_ready(db_session, request) is False


def test_threshold_comes_from_settings(db_session, make_request):
    request = make_request(status=RequestStatus.PENDING_QUOTES.value)
    with patch.object(webhook_service.settings_service, "quotes_needed", return_value=1):
        _deliver_quotes(db_session, request, 1)
    db_session.refresh(request)
    assert request.status == RequestStatus.COMPARING.value


# ── Delivery / endpoint ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_handle_payload_counts_outcomes(db_session):
    payload = whapi_payload(
        {"id": "x1", "from": "77011234567", "type": "text", "text": {"body": "Цена 100"}},
        {"id": "x2", "from": "77011234567", "type": "text", "text": {"body": "спасибо"}},
        {"id": "x3", "from": "77011234567", "from_me": True, "type": "text", "text": {"body": "ок"}},
    )
    stats = await handle_payload(payload, db_session)
    assert stats["received"] == 3
    assert stats["stored"] == 2
    assert stats["offers"] == 1
    assert stats["skipped"] == 1
    assert stats["errors"] == 0


@pytest.mark.asyncio
async def test_handle_payload_swallows_database_errors(db_session):
    boom = OperationalError("INSERT", {}, Exception("database is locked"))
    with patch.object(webhook_service, "process_message", side_effect=boom):
        stats = await handle_payload(simple_payload("Цена 100"), db_session)
    assert stats["errors"] == 1
    assert stats["stored"] == 0


@pytest.mark.asyncio
async def test_handle_payload_swallows_unexpected_errors(db_session):
    with patch.object(webhook_service, "process_message", side_effect=RuntimeError("bug")):
        stats = await handle_payload(simple_payload("Цена 100"), db_session)
    assert stats["errors"] == 1


def test_webhook_endpoint_needs_no_auth(anon_client, db_session):
    resp = anon_client.post("/api/whatsapp/webhook", json=simple_payload("Цена 15000 тенге, поставка 3 дня"))
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["offers"] == 1
    assert db_session.query(ChatMessage).count() == 1


def test_webhook_endpoint_answers_200_on_failure(anon_client):
    with patch.object(webhook_service, "process_message", side_effect=RuntimeError("bug")):
        resp = anon_client.post("/api/whatsapp/webhook", json=simple_payload("Цена 100"))
    assert resp.status_code == 200
    assert resp.json()["success"] is True


def test_webhook_endpoint_tolerates_garbage_body(anon_client):
    resp = anon_client.post("/api/whatsapp/webhook", content=b"not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "processed": 0}


def test_webhook_verification_get(anon_client):
    resp = anon_client.get("/api/whatsapp/webhook")
    assert resp.status_code == 200
    assert resp.json()["status"] == "active"


# ── Gateway management ───────────────────────────────────────────────


def test_gateway_status(client, whatsapp):
    resp = client.get("/api/whatsapp/status")
    assert resp.json()["data"]["status"] == "ready"


def test_gateway_status_not_configured(client, whatsapp):
    whatsapp.configured = False
    assert client.get("/api/whatsapp/status").json()["data"] == {"status": "not_configured"}
    whatsapp.get_status.assert_not_awaited()


def test_gateway_status_error_is_external_failure(client, whatsapp):
    whatsapp.get_status.side_effect = WhapiError("gateway down", 502)
    resp = client.get("/api/whatsapp/status")
    assert resp.status_code == 500
    assert resp.json()["success"] is False


def test_webhook_setup_requires_admin(client, whatsapp):
    assert client.post("/api/whatsapp/webhook/setup").status_code == 403
    whatsapp.setup_webhook.assert_not_awaited()


def test_webhook_setup(admin_client, whatsapp):
    resp = admin_client.post("/api/whatsapp/webhook/setup")

    assert resp.status_code == 200
    url = resp.json()["data"]["url"]
    assert url.endswith("/api/whatsapp/webhook")
    whatsapp.setup_webhook.assert_awaited_once_with(url)
