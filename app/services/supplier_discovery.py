"""Supplier discovery — web search → contacts → Supplier rows for a position.

Business Rules:
- All configured providers are queried concurrently; a failing provider is
  logged and skipped, it never fails the whole search
- Results are deduplicated by URL and capped (max_search_results)
- Results without any contact (email, phone, WhatsApp) are dropped
- Suppliers are matched by website; known ones get their contacts refreshed
- A supplier is linked to a request once (found_via = auto-search-<name>)
- search_all processes positions one after another

Called by: routers/requests.py
Depends on: connectors, contact_extractor, audit_service
"""

import asyncio

import httpx
from loguru import logger
from sqlalchemy.orm import Session

from ..config import settings
from ..database import atomic
from ..exceptions import ResourceNotFoundError
from ..models import Position, Request, RequestSupplier, Supplier, User
from ..workflow import RequestStatus, RequestSupplierStatus, SearchStatus, soft_transition
from . import audit_service
from .contact_extractor import ExtractedContacts, fetch_contacts

FETCH_CONCURRENCY = 10
KZ_MOBILE_PREFIXES = ("770", "774", "775", "776", "777")


def found_via_marker(position: Position) -> str:
    return f"auto-search-{position.name}"


async def run_providers(providers: list, query: str) -> list[dict]:
    """Query every provider; merge results by URL, first provider wins."""
    outcomes = await asyncio.gather(*(p.search(query) for p in providers), return_exceptions=True)
    merged: dict[str, dict] = {}
    for provider, outcome in zip(providers, outcomes):
        if isinstance(outcome, BaseException):
            logger.warning("Search provider {} failed: {}", provider.name, outcome)
            continue
        for result in outcome:
            url = result.get("url")
            if url and url not in merged:
                merged[url] = result
            if len(merged) >= settings.max_search_results:
                return list(merged.values())
    return list(merged.values())


def _whatsapp_number(contacts: ExtractedContacts) -> str | None:
    if contacts.whatsapp:
        return contacts.whatsapp[0]
    # Only mobile numbers are reachable on WhatsApp; 7 71x/72x are landlines
    return next((p for p in contacts.phones if p.startswith(KZ_MOBILE_PREFIXES)), None)


def upsert_supplier(db: Session, result: dict, contacts: ExtractedContacts) -> Supplier:
    supplier = db.query(Supplier).filter(Supplier.website == result["url"]).first()
    name = contacts.company_name or result.get("company_name") or result.get("title") or result["url"]
    fields = {
        "email": contacts.emails[0] if contacts.emails else None,
        "phone": contacts.phones[0] if contacts.phones else None,
        "whatsapp": _whatsapp_number(contacts),
        "address": contacts.address,
    }
    if supplier is None:
        supplier = Supplier(
            name=name[:255],
            website=result["url"],
            notes=result.get("snippet") or None,
            rating=0,
            tags=[],
            is_active=True,
            **fields,
        )
        db.add(supplier)
        db.flush()
        return supplier

    supplier.name = name[:255]
    if result.get("snippet"):
        supplier.notes = result["snippet"]
    for key, value in fields.items():
        if value:
            setattr(supplier, key, value)
    return supplier


async def search_position(
    db: Session,
    request_id: int,
    position_id: int,
    user: User,
    *,
    providers: list,
    http: httpx.AsyncClient,
) -> dict:
    """Find suppliers for one position and link them to its request."""
    request = db.get(Request, request_id)
    position = db.get(Position, position_id)
    if not request or not position or position.request_id != request.id:
        raise ResourceNotFoundError("Позиция не найдена")

    with atomic(db):
        soft_transition(request, "status", RequestStatus.SEARCHING)
        soft_transition(position, "search_status", SearchStatus.SEARCHING)

    results = await run_providers(providers, position.name)
    sem = asyncio.Semaphore(FETCH_CONCURRENCY)

    async def _fetch(result: dict) -> ExtractedContacts:
        async with sem:
            return await fetch_contacts(http, result["url"])

    contacts = await asyncio.gather(*(_fetch(r) for r in results))

    saved: list[Supplier] = []
    with atomic(db):
        for result, found in zip(results, contacts):
            if found.empty:
                continue
            supplier = upsert_supplier(db, result, found)
            linked = (
                db.query(RequestSupplier.id)
                .filter(RequestSupplier.request_id == request.id, RequestSupplier.supplier_id == supplier.id)
                .first()
            )
            if linked:
                continue
            relevance = 0.8 if result.get("price") else 0.6
            db.add(RequestSupplier(
                request_id=request.id,
                supplier_id=supplier.id,
                status=RequestSupplierStatus.PENDING.value,
                found_via=found_via_marker(position),
                search_relevance=relevance,
            ))
            db.flush()
            saved.append(supplier)

        soft_transition(position, "search_status", SearchStatus.SUPPLIERS_FOUND)
        audit_service.record(
            db, "SEARCH_SUPPLIERS", "Position", position.id,
            user_id=user.id,
            details={
                "positionName": position.name,
                "resultsFound": len(results),
                "suppliersFound": len(saved),
                "providers": [p.name for p in providers if p.configured],
            },
        )

    logger.info("Search for {!r}: {} results, {} new suppliers", position.name, len(results), len(saved))
    return {
        "position_id": position.id,
        "position_name": position.name,
        "results_found": len(results),
        "suppliers_found": len(saved),
        "suppliers": [{"id": s.id, "name": s.name, "website": s.website, "whatsapp": s.whatsapp} for s in saved],
    }


async def search_all(
    db: Session, request_id: int, user: User, *, providers: list, http: httpx.AsyncClient,
) -> dict:
    request = db.get(Request, request_id)
    if not request:
        raise ResourceNotFoundError("Заявка не найдена")
    results = []
    for position_id in [p.id for p in request.positions]:
        results.append(await search_position(db, request.id, position_id, user, providers=providers, http=http))
    return {
        "positions": results,
        "total_suppliers": sum(r["suppliers_found"] for r in results),
    }
