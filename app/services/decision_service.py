"""
decision_service.py — Offer comparison and final decisions

Business Rules:
- An offer qualifies for comparison only with confidence >= 70 and no
  pending manual review
- Ranking is by total price ascending; savings are relative to the cheapest
- The LLM rationale is advisory; without it a deterministic text is stored
- finalize: one offer wins the whole request; siblings are REJECTED, the
  request is COMPLETED, exactly one RequestDecision exists
- select-offer: one offer wins a position; when every position is decided
  the request is COMPLETED and the decision is recorded with the most
  recently selected offer
- Both flows record the decision through _record_decision() (upsert)
- Every flow runs in a single transaction
- A chat document imported without a price is parsed; with a buyer price
  it waits for manual review

Called by: routers/requests.py
Depends on: models, workflow, outreach_service, offer_parser, audit_service
"""

from loguru import logger
from sqlalchemy.orm import Session

from ..config import settings
from ..database import atomic, utcnow
from ..exceptions import ResourceNotFoundError, ValidationError
from ..models import (
    ChatMessage,
    CommercialOffer,
    Position,
    PositionChat,
    Request,
    RequestDecision,
    User,
)
from ..utils.llm_client import LLMClient
from ..utils.normalization import normalize_currency
from ..utils.whapi_client import WhapiClient
from ..workflow import (
    OfferStatus,
    PositionChatStatus,
    RequestStatus,
    SearchStatus,
    soft_transition,
    transition,
)
from . import audit_service, offer_parser
from .offer_parser import OfferParseError
from .outreach_service import recompute_position_counters

IMPORTED_OFFER_CONFIDENCE = 50

ANALYSIS_SYSTEM_PROMPT = (
    "Ты эксперт по закупкам с 15-летним опытом. Анализируешь коммерческие предложения "
    "объективно, учитывая цену, качество, риски и условия поставки."
)


def _get_request(db: Session, request_id: int) -> Request:
    request = db.get(Request, request_id)
    if not request:
        raise ResourceNotFoundError("Заявка не найдена")
    return request


def _get_position(db: Session, request: Request, position_id: int) -> Position:
    position = db.get(Position, position_id)
    if not position or position.request_id != request.id:
        raise ResourceNotFoundError("Позиция не найдена")
    return position


def _get_offer(db: Session, request: Request, offer_id: int) -> CommercialOffer:
    offer = db.get(CommercialOffer, offer_id)
    if not offer or offer.request_id != request.id:
        raise ResourceNotFoundError("Коммерческое предложение не найдено")
    return offer


def is_qualifying(offer: CommercialOffer) -> bool:
    return (offer.confidence or 0) >= settings.offer_confidence_threshold and not offer.needs_manual_review


def position_completed(position: Position) -> bool:
    if position.search_status == SearchStatus.USER_DECIDED.value:
        return True
    return any(o.status == OfferStatus.APPROVED.value for o in position.offers)


def _approve(offer: CommercialOffer, user: User) -> None:
    transition(offer, "status", OfferStatus.APPROVED)
    offer.reviewed_by = user.id
    offer.reviewed_at = utcnow()


def _reject(offer: CommercialOffer) -> None:
    transition(offer, "status", OfferStatus.REJECTED)


def _record_decision(
    db: Session, request: Request, offer: CommercialOffer, user: User, reason: str
) -> RequestDecision:
    """Upsert the single decision row of a request."""
    decision = db.query(RequestDecision).filter(RequestDecision.request_id == request.id).first()
    if decision is None:
        decision = RequestDecision(request_id=request.id)
        db.add(decision)
    decision.selected_offer_id = offer.id
    decision.decided_by = user.id
    decision.reason = reason
    decision.final_price = offer.total_price
    decision.final_currency = offer.currency
    decision.selected_supplier = offer.company
    decision.decided_at = utcnow()
    return decision


# ── Finalize / select ────────────────────────────────────────────────


def finalize(db: Session, request_id: int, offer_id: int | None, reason: str | None, user: User) -> dict:
    """Pick one offer for the whole request and complete it."""
    if not offer_id or not reason:
        raise ValidationError("Необходимо указать выбранное предложение и причину")
    request = _get_request(db, request_id)
    offer = _get_offer(db, request, offer_id)

    with atomic(db):
        transition(request, "status", RequestStatus.COMPLETED)
        decision = _record_decision(db, request, offer, user, reason)
        _approve(offer, user)
        others = (
            db.query(CommercialOffer)
            .filter(CommercialOffer.request_id == request.id, CommercialOffer.id != offer.id)
            .all()
        )
        for other in others:
            _reject(other)
        audit_service.record(
            db, "REQUEST_FINALIZED", "Request", request.id,
            user_id=user.id,
            details={
                "selectedOfferId": offer.id,
                "selectedSupplier": offer.company,
                "finalPrice": offer.total_price,
                "currency": offer.currency,
                "reason": reason,
                "rejectedOffers": len(others),
            },
        )

    logger.info("Request {} finalized with offer {} ({})", request.request_number, offer.id, offer.company)
    return {"request": request, "decision": decision, "offer": offer}


def select_position_offer(
    db: Session,
    request_id: int,
    position_id: int | None,
    offer_id: int | None,
    reason: str | None,
    user: User,
) -> dict:
    """Pick the winning offer of one position; complete the request when all are decided."""
    if not position_id or not offer_id or not reason:
        raise ValidationError("Необходимо указать позицию, предложение и причину")
    request = _get_request(db, request_id)
    position = _get_position(db, request, position_id)
    offer = _get_offer(db, request, offer_id)

    with atomic(db):
        if offer.position_id != position.id:
            offer.position_id = position.id
            db.flush()
        _approve(offer, user)
        for other in position.offers:
            if other.id != offer.id:
                _reject(other)
        position.final_choice = f"Выбран: {offer.company} ({offer.total_price} {offer.currency}) - {reason}"
        transition(position, "search_status", SearchStatus.USER_DECIDED)
        recompute_position_counters(db, position)

        all_completed = all(position_completed(p) for p in request.positions)
        if all_completed:
            _record_decision(db, request, offer, user, f"Все позиции завершены. {reason}")
            transition(request, "status", RequestStatus.COMPLETED)

        audit_service.record(
            db, "POSITION_OFFER_SELECTED", "Position", position.id,
            user_id=user.id,
            details={
                "requestId": request.id,
                "positionName": position.name,
                "offerId": offer.id,
                "company": offer.company,
                "price": offer.total_price,
                "reason": reason,
                "allPositionsCompleted": all_completed,
            },
        )

    logger.info("Position {} decided: offer {} (request complete={})", position.id, offer.id, all_completed)
    return {"position": position, "offer": offer, "allPositionsCompleted": all_completed}


def decide_position_by_chat(
    db: Session, request_id: int, position_id: int, chat_id: int | None, reason: str | None, user: User,
) -> dict:
    """Pick a supplier conversation for a position when no parsed offer exists."""
    if not chat_id:
        raise ValidationError("Не указан поставщик")
    request = _get_request(db, request_id)
    position = _get_position(db, request, position_id)
    chosen = next((pc for pc in position.position_chats if pc.chat_id == chat_id), None)
    if not chosen:
        raise ResourceNotFoundError("Выбранный поставщик не найден")
    supplier_name = chosen.chat.contact_name or chosen.chat.phone_number

    with atomic(db):
        transition(chosen, "status", PositionChatStatus.SELECTED)
        for pc in position.position_chats:
            if pc.id != chosen.id:
                soft_transition(pc, "status", PositionChatStatus.REJECTED)
        position.final_choice = f"Выбран: {supplier_name}" + (f" ({reason})" if reason else "")
        transition(position, "search_status", SearchStatus.USER_DECIDED)
        recompute_position_counters(db, position)

        all_decided = all(p.search_status == SearchStatus.USER_DECIDED.value for p in request.positions)
        if all_decided:
            transition(request, "status", RequestStatus.COMPLETED)

        audit_service.record(
            db, "USER_DECISION", "Position", position.id,
            user_id=user.id,
            details={
                "positionName": position.name,
                "selectedSupplier": supplier_name,
                "userReason": reason,
                "requestCompleted": all_decided,
            },
        )
    return {"position": position, "selectedSupplier": supplier_name, "requestCompleted": all_decided}


# ── Comparison ───────────────────────────────────────────────────────


def rank_offers(position: Position, offers: list[CommercialOffer]) -> list[dict]:
    """Qualifying offers cheapest first, with per-unit price and savings."""
    ranked = sorted((o for o in offers if is_qualifying(o)), key=lambda o: o.total_price)
    if not ranked:
        return []
    best = ranked[0].total_price
    quantity = position.quantity or 1
    return [
        {
            "offer_id": o.id,
            "company": o.company or "Неизвестная компания",
            "price": o.total_price,
            "price_per_unit": o.total_price / quantity,
            "currency": o.currency,
            "delivery_terms": o.delivery_terms,
            "payment_terms": o.payment_terms,
            "validity_date": o.validity_date.isoformat() if o.validity_date else None,
            "confidence": o.confidence,
            "rank": index + 1,
            "savings": o.total_price - best,
        }
        for index, o in enumerate(ranked)
    ]


def _fmt(amount: float) -> str:
    return f"{amount:,.0f}".replace(",", " ")


def fallback_rationale(position: Position, ranked: list[dict]) -> dict:
    best = ranked[0]
    spread = ranked[-1]["price"] - best["price"]
    if len(ranked) == 1:
        risk = "Получено только одно предложение. Рекомендуется запросить дополнительные КП для сравнения."
    else:
        risk = f"Экономия по сравнению с самым дорогим предложением составляет {_fmt(spread)} {best['currency']}."
    extras = []
    if best["delivery_terms"]:
        extras.append(f"Срок поставки: {best['delivery_terms']}.")
    if best["payment_terms"]:
        extras.append(f"Условия оплаты: {best['payment_terms']}.")
    return {
        "reasoning": (
            f"Анализ {len(ranked)} предложений показал, что {best['company']} предлагает лучшую цену "
            f"{_fmt(best['price'])} {best['currency']} за {position.quantity} {position.unit}."
        ),
        "risk_assessment": risk,
        "recommendation": " ".join([f"Рекомендуется принять предложение от {best['company']}."] + extras),
    }


def _analysis_prompt(position: Position, ranked: list[dict]) -> str:
    lines = [
        f"{o['rank']}. {o['company']}\n"
        f"   - Цена: {_fmt(o['price'])} {o['currency']}\n"
        f"   - За единицу: {_fmt(o['price_per_unit'])} {o['currency']}\n"
        f"   - Срок поставки: {o['delivery_terms'] or 'не указан'}\n"
        f"   - Условия оплаты: {o['payment_terms'] or 'не указаны'}\n"
        f"   - Точность парсинга: {o['confidence']}%"
        for o in ranked
    ]
    best = ranked[0]
    return (
        f'Проанализируй коммерческие предложения для позиции "{position.name}" '
        f"({position.quantity} {position.unit}).\n\n"
        "ПОЛУЧЕННЫЕ ПРЕДЛОЖЕНИЯ:\n" + "\n".join(lines) + "\n\n"
        f"ЛУЧШЕЕ ПРЕДЛОЖЕНИЕ ПО ЦЕНЕ: {best['company']} - {_fmt(best['price'])} {best['currency']}\n\n"
        'Верни JSON: {"reasoning": "...", "risk_assessment": "...", "recommendation": "..."}. '
        "Пиши на русском языке."
    )


async def compare_offers(
    db: Session, request_id: int, position_id: int, user: User, llm: LLMClient | None,
) -> dict:
    """Rank the qualifying offers of a position and store a recommendation."""
    request = _get_request(db, request_id)
    position = _get_position(db, request, position_id)

    offers = list(position.offers)
    if not offers:
        offers = (
            db.query(CommercialOffer)
            .filter(CommercialOffer.request_id == request.id, CommercialOffer.position_id.is_(None))
            .all()
        )
    ranked = rank_offers(position, offers)
    if not ranked:
        raise ValidationError("Недостаточно коммерческих предложений для анализа")

    rationale = fallback_rationale(position, ranked)
    if llm is not None and llm.enabled:
        answer = await llm.json(
            _analysis_prompt(position, ranked),
            system=ANALYSIS_SYSTEM_PROMPT,
            temperature=0.3,
            max_tokens=1000,
        )
        if isinstance(answer, dict):
            for key in rationale:
                if isinstance(answer.get(key), str) and answer[key].strip():
                    rationale[key] = answer[key].strip()
        else:
            logger.info("Offer analysis for position {} used the fallback text", position.id)

    best = ranked[0]
    analysis = {"best_offer": best["offer_id"], "price_comparison": ranked, **rationale}
    with atomic(db):
        position.ai_recommendation = rationale["recommendation"]
        soft_transition(position, "search_status", SearchStatus.AI_ANALYZED)
        audit_service.record(
            db, "AI_OFFERS_ANALYSIS", "Position", position.id,
            user_id=user.id,
            details={
                "positionName": position.name,
                "offersAnalyzed": len(ranked),
                "bestOffer": best["company"],
                "totalSavings": ranked[-1]["price"] - best["price"],
                "avgPrice": round(sum(o["price"] for o in ranked) / len(ranked)),
            },
        )
    return analysis


# ── Offers ───────────────────────────────────────────────────────────


def list_offers(db: Session, request_id: int, position_id: int | None = None) -> list[CommercialOffer]:
    _get_request(db, request_id)
    q = db.query(CommercialOffer).filter(CommercialOffer.request_id == request_id)
    if position_id:
        q = q.filter(CommercialOffer.position_id == position_id)
    return q.order_by(CommercialOffer.total_price).all()


def create_offer(db: Session, request_id: int, data: dict, user: User) -> CommercialOffer:
    """Record an offer entered by a buyer."""
    request = _get_request(db, request_id)
    position = None
    if data.get("position_id"):
        position = _get_position(db, request, data["position_id"])
    if not data.get("company"):
        raise ValidationError("Не указана компания")
    if data.get("total_price") is None or data["total_price"] < 0:
        raise ValidationError("Некорректная сумма предложения")

    with atomic(db):
        offer = CommercialOffer(
            request_id=request.id,
            position_id=position.id if position else None,
            chat_id=data.get("chat_id"),
            supplier_id=data.get("supplier_id"),
            company=data["company"],
            total_price=data["total_price"],
            currency=normalize_currency(data.get("currency"), "KZT"),
            delivery_terms=data.get("delivery_terms"),
            delivery_days=data.get("delivery_days"),
            payment_terms=data.get("payment_terms"),
            validity_date=data.get("validity_date"),
            confidence=data.get("confidence", 100),
            needs_manual_review=data.get("needs_manual_review", False),
            notes=data.get("notes"),
            status=OfferStatus.PENDING.value,
        )
        db.add(offer)
        db.flush()
        if position:
            recompute_position_counters(db, position)
        audit_service.record(
            db, "CREATE_OFFER", "CommercialOffer", offer.id,
            user_id=user.id,
            details={"requestId": request.id, "company": offer.company, "price": offer.total_price},
        )
    return offer


def review_offer(db: Session, offer_id: int, data: dict, user: User) -> CommercialOffer:
    """Update the review fields of an offer (manual review, corrected values, status)."""
    offer = db.get(CommercialOffer, offer_id)
    if not offer:
        raise ResourceNotFoundError("Коммерческое предложение не найдено")

    with atomic(db):
        for field in ("company", "total_price", "delivery_terms", "payment_terms", "notes", "confidence"):
            if data.get(field) is not None:
                setattr(offer, field, data[field])
        if data.get("currency"):
            offer.currency = normalize_currency(data["currency"], offer.currency)
        if data.get("needs_manual_review") is not None:
            offer.needs_manual_review = data["needs_manual_review"]
        if data.get("status"):
            transition(offer, "status", OfferStatus(data["status"]))
        offer.reviewed_by = user.id
        offer.reviewed_at = utcnow()
        if offer.position:
            recompute_position_counters(db, offer.position)
    return offer


async def import_offer_from_chat(
    db: Session,
    request_id: int,
    position_id: int,
    message_id: int | None,
    chat_id: int | None,
    user: User,
    *,
    company: str | None = None,
    total_price: float | None = None,
    currency: str | None = None,
    llm: LLMClient | None = None,
    whatsapp: WhapiClient | None = None,
) -> CommercialOffer:
    """Turn a document received in a chat into an offer.

    With a price from the buyer the offer waits for manual review. Without
    one the document (or the message text) is run through the offer parser,
    whose confidence decides whether the offer qualifies.
    """
    if not message_id or not chat_id:
        raise ValidationError("Необходимо указать messageId и chatId")
    request = _get_request(db, request_id)
    position = _get_position(db, request, position_id)
    message = db.get(ChatMessage, message_id)
    if not message or message.chat_id != chat_id:
        raise ResourceNotFoundError("Сообщение не найдено")

    document = ((message.meta or {}).get("whapi_data") or {}).get("document")
    if not document and not message.file_name:
        raise ValidationError("Сообщение не содержит документа")
    file_name = message.file_name or (document or {}).get("filename") or "document"

    exists = (
        db.query(CommercialOffer.id)
        .filter(
            CommercialOffer.chat_id == chat_id,
            CommercialOffer.file_name == file_name,
            CommercialOffer.position_id == position.id,
        )
        .first()
    )
    if exists:
        raise ValidationError("Этот документ уже был импортирован как КП для данной позиции")

    parsed = None
    if total_price is None:
        text = message.content or ""
        if document and whatsapp is not None and whatsapp.configured:
            try:
                text = await offer_parser.fetch_document_text(whatsapp, document)
            except OfferParseError as e:
                logger.warning("Import from chat: {} not read, parsing message text: {}", file_name, e)
        parsed = await offer_parser.parse_offer_text(llm, text, file_name)

    chat = message.chat
    with atomic(db):
        offer = CommercialOffer(
            request_id=request.id,
            position_id=position.id,
            chat_id=chat.id,
            supplier_id=chat.supplier_id,
            company=company or (parsed and parsed.company) or chat.contact_name or chat.phone_number,
            total_price=total_price if total_price is not None else (parsed.total_price or 0),
            currency=normalize_currency(currency, parsed.currency if parsed else "KZT"),
            delivery_terms=parsed.delivery_terms if parsed else None,
            payment_terms=parsed.payment_terms if parsed else None,
            file_name=file_name,
            file_url=message.file_url or (document or {}).get("link"),
            confidence=parsed.confidence if parsed else IMPORTED_OFFER_CONFIDENCE,
            needs_manual_review=parsed.needs_manual_review if parsed else True,
            notes=(parsed.extracted_text or None) if parsed else None,
            status=OfferStatus.PENDING.value,
        )
        db.add(offer)
        link = (
            db.query(PositionChat)
            .filter(PositionChat.position_id == position.id, PositionChat.chat_id == chat.id)
            .first()
        )
        if link:
            soft_transition(link, "status", PositionChatStatus.RECEIVED)
            link.quote_received_at = link.quote_received_at or utcnow()
        db.flush()
        recompute_position_counters(db, position)
        audit_service.record(
            db, "IMPORT_OFFER_FROM_CHAT", "CommercialOffer", offer.id,
            user_id=user.id,
            details={
                "positionId": position.id,
                "chatId": chat.id,
                "fileName": file_name,
                "parsed": parsed is not None,
                "confidence": offer.confidence,
            },
        )
    return offer
