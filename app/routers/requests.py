"""
routers/requests.py — Requests, positions, supplier search, outreach, decisions

Thin HTTP glue over request_service, supplier_discovery, outreach_service
and decision_service. Every response uses the {"success": true, "data"}
envelope; errors are raised as ProcureDeskError subclasses and rendered by
the handlers in main.py.

Business Rules:
- Read endpoints need any logged-in user; procurement actions need the
  purchaser role (purchaser/manager/admin)
- Excel uploads are limited to max_upload_size_mb
- Deleting a request requires the caller's password in the body

Called by: main.py (router mount)
Depends on: dependencies, services/*
"""

from fastapi import APIRouter, Depends, File, Request, UploadFile
from sqlalchemy.orm import Session

from ..config import settings
from ..database import get_db
from ..dependencies import get_llm, get_scraper_http, get_search_providers, get_whatsapp, require_purchaser, require_user
from ..exceptions import ValidationError
from ..models import User
from ..schemas.filters import RequestFilters
from ..schemas.requests import (
    DeleteConfirm,
    FinalizeIn,
    ImportFromChatIn,
    OfferCreate,
    OfferReview,
    PositionDecisionIn,
    RequestCreate,
    RequestUpdate,
    SelectOfferIn,
    StatusChange,
)
from ..schemas.responses import PaginatedEnvelope, ok, page
from ..services import decision_service, outreach_service, request_service, supplier_discovery
from ..services.request_service import decision_to_dict, offer_to_dict, position_to_dict, request_to_dict
from .chats import chat_to_dict

router = APIRouter(prefix="/api", tags=["requests"])


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


# ── Requests ─────────────────────────────────────────────────────────


@router.get("/requests", response_model=PaginatedEnvelope)
async def list_requests(
    filters: RequestFilters = Depends(),
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    rows, total = request_service.list_requests(db, filters)
    return page([request_to_dict(r) for r in rows], total, filters.limit, filters.offset)


@router.post("/requests", status_code=201)
async def create_request(
    body: RequestCreate,
    user: User = Depends(require_purchaser),
    db: Session = Depends(get_db),
):
    data = body.model_dump()
    request = request_service.create_request(db, data, user)
    return ok(request_to_dict(request, detail=True))


@router.post("/requests/import", status_code=201)
async def import_request(
    file: UploadFile = File(...),
    user: User = Depends(require_purchaser),
    db: Session = Depends(get_db),
):
    content = await file.read()
    if not content:
        raise ValidationError("Файл пуст")
    if len(content) > settings.max_upload_size_mb * 1024 * 1024:
        raise ValidationError(f"Файл больше {settings.max_upload_size_mb} МБ")
    request = request_service.import_request(db, content, file.filename or "upload.xlsx", user)
    return ok(request_to_dict(request, detail=True), message="Заявка импортирована")


@router.get("/requests/{request_id}")
async def get_request(request_id: int, user: User = Depends(require_user), db: Session = Depends(get_db)):
    return ok(request_to_dict(request_service.get_request(db, request_id), detail=True))


@router.put("/requests/{request_id}")
async def update_request(
    request_id: int,
    body: RequestUpdate,
    user: User = Depends(require_purchaser),
    db: Session = Depends(get_db),
):
    request = request_service.update_request(db, request_id, body.model_dump(exclude_none=True), user)
    return ok(request_to_dict(request, detail=True))


@router.patch("/requests/{request_id}/status")
async def change_status(
    request_id: int,
    body: StatusChange,
    user: User = Depends(require_purchaser),
    db: Session = Depends(get_db),
):
    request = request_service.change_status(db, request_id, body.status, user)
    return ok(request_to_dict(request))


@router.post("/requests/{request_id}/archive")
async def archive_request(request_id: int, user: User = Depends(require_purchaser), db: Session = Depends(get_db)):
    return ok(request_to_dict(request_service.archive_request(db, request_id, user)))


@router.delete("/requests/{request_id}")
async def delete_request(
    request_id: int,
    body: DeleteConfirm,
    request: Request,
    user: User = Depends(require_purchaser),
    db: Session = Depends(get_db),
):
    result = request_service.delete_request(db, request_id, body.password, user, ip_address=_client_ip(request))
    return ok(result, message=f"Заявка {result['request_number']} удалена")


# ── Offers & decisions ───────────────────────────────────────────────


@router.get("/requests/{request_id}/offers")
async def list_offers(
    request_id: int,
    position_id: int | None = None,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    return ok([offer_to_dict(o) for o in decision_service.list_offers(db, request_id, position_id)])


@router.post("/requests/{request_id}/offers", status_code=201)
async def create_offer(
    request_id: int,
    body: OfferCreate,
    user: User = Depends(require_purchaser),
    db: Session = Depends(get_db),
):
    return ok(offer_to_dict(decision_service.create_offer(db, request_id, body.model_dump(), user)))


@router.patch("/offers/{offer_id}")
async def review_offer(
    offer_id: int,
    body: OfferReview,
    user: User = Depends(require_purchaser),
    db: Session = Depends(get_db),
):
    return ok(offer_to_dict(decision_service.review_offer(db, offer_id, body.model_dump(exclude_none=True), user)))


@router.post("/requests/{request_id}/finalize")
async def finalize_request(
    request_id: int,
    body: FinalizeIn,
    user: User = Depends(require_purchaser),
    db: Session = Depends(get_db),
):
    result = decision_service.finalize(db, request_id, body.selected_offer_id, body.reason, user)
    return ok(
        {"request": request_to_dict(result["request"]), "decision": decision_to_dict(result["decision"])},
        message=f"Заявка завершена, выбран поставщик {result['offer'].company}",
    )


@router.post("/requests/{request_id}/select-offer")
async def select_offer(
    request_id: int,
    body: SelectOfferIn,
    user: User = Depends(require_purchaser),
    db: Session = Depends(get_db),
):
    result = decision_service.select_position_offer(
        db, request_id, body.position_id, body.offer_id, body.reason, user
    )
    return ok({
        "position": position_to_dict(result["position"]),
        "offer": offer_to_dict(result["offer"]),
        "allPositionsCompleted": result["allPositionsCompleted"],
    })


@router.post("/requests/{request_id}/positions/{position_id}/decision")
async def decide_position(
    request_id: int,
    position_id: int,
    body: PositionDecisionIn,
    user: User = Depends(require_purchaser),
    db: Session = Depends(get_db),
):
    result = decision_service.decide_position_by_chat(db, request_id, position_id, body.chat_id, body.reason, user)
    return ok({
        "position": position_to_dict(result["position"]),
        "selectedSupplier": result["selectedSupplier"],
        "requestCompleted": result["requestCompleted"],
    })


@router.post("/requests/{request_id}/positions/{position_id}/analyze-offers")
async def analyze_offers(
    request_id: int,
    position_id: int,
    user: User = Depends(require_purchaser),
    db: Session = Depends(get_db),
    llm=Depends(get_llm),
):
    return ok(await decision_service.compare_offers(db, request_id, position_id, user, llm))


@router.post("/requests/{request_id}/positions/{position_id}/import-from-chat", status_code=201)
async def import_from_chat(
    request_id: int,
    position_id: int,
    body: ImportFromChatIn,
    user: User = Depends(require_purchaser),
    db: Session = Depends(get_db),
    llm=Depends(get_llm),
    whatsapp=Depends(get_whatsapp),
):
    offer = await decision_service.import_offer_from_chat(
        db, request_id, position_id, body.message_id, body.chat_id, user,
        company=body.company, total_price=body.total_price, currency=body.currency,
        llm=llm, whatsapp=whatsapp,
    )
    message = "Документ импортирован как КП и ожидает проверки" if offer.needs_manual_review else "КП распознано и импортировано"
    return ok(offer_to_dict(offer), message=message)


# ── Discovery & outreach ─────────────────────────────────────────────


@router.post("/requests/{request_id}/positions/{position_id}/search-suppliers")
async def search_suppliers(
    request_id: int,
    position_id: int,
    user: User = Depends(require_purchaser),
    db: Session = Depends(get_db),
    providers: list = Depends(get_search_providers),
    http=Depends(get_scraper_http),
):
    return ok(await supplier_discovery.search_position(
        db, request_id, position_id, user, providers=providers, http=http
    ))


@router.post("/requests/{request_id}/search-all")
async def search_all(
    request_id: int,
    user: User = Depends(require_purchaser),
    db: Session = Depends(get_db),
    providers: list = Depends(get_search_providers),
    http=Depends(get_scraper_http),
):
    return ok(await supplier_discovery.search_all(db, request_id, user, providers=providers, http=http))


@router.post("/requests/{request_id}/send-quote-requests")
async def send_quote_requests(
    request_id: int,
    user: User = Depends(require_purchaser),
    db: Session = Depends(get_db),
    whatsapp=Depends(get_whatsapp),
    llm=Depends(get_llm),
):
    result = await outreach_service.send_quote_requests(db, request_id, user, whatsapp=whatsapp, llm=llm)
    return ok(result, message=f"Отправлено запросов: {result['total_sent']}")


@router.post("/requests/{request_id}/reset-counters")
async def reset_counters(request_id: int, user: User = Depends(require_purchaser), db: Session = Depends(get_db)):
    return ok(outreach_service.reset_counters(db, request_id, user))


@router.get("/requests/{request_id}/chats")
async def request_chats(request_id: int, user: User = Depends(require_user), db: Session = Depends(get_db)):
    request_service.get_request(db, request_id)
    return ok([chat_to_dict(c) for c in outreach_service.chats_for_request(db, request_id)])
