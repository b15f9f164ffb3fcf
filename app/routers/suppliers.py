"""
routers/suppliers.py — Supplier directory CRUD

Business Rules:
- tax_id (БИН/ИНН) is unique; duplicates are a 409
- Deleting a supplier that is linked to requests only deactivates it

Called by: main.py (router mount)
Depends on: dependencies, models, audit_service
"""

from fastapi import APIRouter, Depends
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import require_purchaser, require_user
from ..exceptions import ConflictError, ResourceNotFoundError
from ..models import RequestSupplier, Supplier, User
from ..schemas.filters import SupplierFilters
from ..schemas.responses import PaginatedEnvelope, ok, page
from ..schemas.suppliers import SupplierCreate, SupplierUpdate
from ..services import audit_service

router = APIRouter(prefix="/api/suppliers", tags=["suppliers"])


def supplier_to_dict(s: Supplier) -> dict:
    return {
        "id": s.id,
        "name": s.name,
        "tax_id": s.tax_id,
        "email": s.email,
        "phone": s.phone,
        "whatsapp": s.whatsapp,
        "website": s.website,
        "address": s.address,
        "contact_person": s.contact_person,
        "tags": s.tags or [],
        "rating": s.rating,
        "contract_start": s.contract_start.isoformat() if s.contract_start else None,
        "contract_end": s.contract_end.isoformat() if s.contract_end else None,
        "is_active": s.is_active,
        "notes": s.notes,
    }


def _get(db: Session, supplier_id: int) -> Supplier:
    supplier = db.get(Supplier, supplier_id)
    if not supplier:
        raise ResourceNotFoundError("Поставщик не найден")
    return supplier


def _check_tax_id(db: Session, tax_id: str | None, exclude_id: int | None = None) -> None:
    if not tax_id:
        return
    q = db.query(Supplier.id).filter(Supplier.tax_id == tax_id)
    if exclude_id:
        q = q.filter(Supplier.id != exclude_id)
    if q.first():
        raise ConflictError(f"Поставщик с БИН {tax_id} уже существует")


@router.get("", response_model=PaginatedEnvelope)
async def list_suppliers(
    filters: SupplierFilters = Depends(),
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    q = filters.apply(db.query(Supplier))
    total = q.with_entities(func.count(Supplier.id)).scalar() or 0
    rows = q.order_by(Supplier.name).offset(filters.offset).limit(filters.limit).all()
    return page([supplier_to_dict(s) for s in rows], total, filters.limit, filters.offset)


@router.get("/{supplier_id}")
async def get_supplier(supplier_id: int, user: User = Depends(require_user), db: Session = Depends(get_db)):
    return ok(supplier_to_dict(_get(db, supplier_id)))


@router.post("", status_code=201)
async def create_supplier(body: SupplierCreate, user: User = Depends(require_purchaser), db: Session = Depends(get_db)):
    _check_tax_id(db, body.tax_id)
    data = body.model_dump(exclude_none=True)
    data.setdefault("tags", [])
    supplier = Supplier(**data)
    db.add(supplier)
    db.flush()
    audit_service.record(db, "CREATE_SUPPLIER", "Supplier", supplier.id, user_id=user.id, details={"name": supplier.name})
    db.commit()
    return ok(supplier_to_dict(supplier))


@router.put("/{supplier_id}")
async def update_supplier(
    supplier_id: int,
    body: SupplierUpdate,
    user: User = Depends(require_purchaser),
    db: Session = Depends(get_db),
):
    supplier = _get(db, supplier_id)
    data = body.model_dump(exclude_none=True)
    _check_tax_id(db, data.get("tax_id"), exclude_id=supplier.id)
    for key, value in data.items():
        setattr(supplier, key, value)
    audit_service.record(db, "UPDATE_SUPPLIER", "Supplier", supplier.id, user_id=user.id, details={"fields": sorted(data)})
    db.commit()
    return ok(supplier_to_dict(supplier))


@router.delete("/{supplier_id}")
async def delete_supplier(supplier_id: int, user: User = Depends(require_purchaser), db: Session = Depends(get_db)):
    supplier = _get(db, supplier_id)
    in_use = db.query(RequestSupplier.id).filter(RequestSupplier.supplier_id == supplier.id).first()
    if in_use:
        supplier.is_active = False
        message = "Поставщик связан с заявками и деактивирован"
    else:
        db.delete(supplier)
        message = "Поставщик удален"
    audit_service.record(db, "DELETE_SUPPLIER", "Supplier", supplier_id, user_id=user.id, details={"deactivated": bool(in_use)})
    db.commit()
    return ok({"id": supplier_id, "deactivated": bool(in_use)}, message=message)
