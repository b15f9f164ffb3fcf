"""
schemas/suppliers.py — Supplier directory bodies

Business Rules:
- Tags are stripped, deduplicated and capped at 20
- Phone and WhatsApp numbers are stored normalized
- Rating is 0..5

Called by: routers/suppliers.py
Depends on: pydantic, utils.normalization
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.utils.normalization import normalize_phone


class SupplierBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tax_id: str | None = Field(None, alias="taxId", max_length=50)
    email: str | None = Field(None, max_length=255)
    phone: str | None = None
    whatsapp: str | None = None
    website: str | None = Field(None, max_length=500)
    address: str | None = None
    contact_person: str | None = Field(None, alias="contactPerson", max_length=255)
    tags: list[str] | None = None
    rating: float | None = Field(None, ge=0, le=5)
    contract_start: datetime | None = Field(None, alias="contractStart")
    contract_end: datetime | None = Field(None, alias="contractEnd")
    is_active: bool | None = Field(None, alias="isActive")
    notes: str | None = None

    @field_validator("phone", "whatsapp")
    @classmethod
    def clean_phone(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        return normalize_phone(v) or v.strip()

    @field_validator("tags")
    @classmethod
    def clean_tags(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return None
        seen: list[str] = []
        for tag in v:
            tag = str(tag).strip()
            if tag and tag not in seen:
                seen.append(tag)
        return seen[:20]

    @field_validator("email")
    @classmethod
    def clean_email(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        if "@" not in v:
            raise ValueError("invalid email")
        return v.strip().lower()


class SupplierCreate(SupplierBase):
    name: str = Field(min_length=1, max_length=255)


class SupplierUpdate(SupplierBase):
    name: str | None = Field(None, min_length=1, max_length=255)
