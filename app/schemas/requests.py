"""
schemas/requests.py — Bodies for request, position and decision endpoints

Field names are snake_case; the camelCase names sent by the web client
(positionId, selectedOfferId, ...) are accepted as aliases. Required ids are
Optional here so a missing one is reported by the service as a 400.

Called by: routers/requests.py
Depends on: pydantic, workflow
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.utils.normalization import normalize_currency
from app.workflow import OfferStatus, RequestStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PositionIn(CamelModel):
    name: str = Field(min_length=1, max_length=500)
    description: str | None = None
    sku: str | None = Field(None, max_length=100)
    quantity: float = Field(gt=0)
    unit: str = Field("шт", max_length=50)


class RequestCreate(CamelModel):
    request_number: str = Field(alias="requestNumber", min_length=1, max_length=100)
    description: str | None = None
    deadline: datetime | None = None
    budget: float | None = Field(None, ge=0)
    currency: str = "KZT"
    priority: int = Field(0, ge=0, le=2)
    executor: str | None = None
    positions: list[PositionIn] = Field(default_factory=list)

    @field_validator("currency")
    @classmethod
    def known_currency(cls, v: str) -> str:
        return normalize_currency(v, "KZT")


class RequestUpdate(CamelModel):
    request_number: str | None = Field(None, alias="requestNumber", max_length=100)
    description: str | None = None
    deadline: datetime | None = None
    budget: float | None = Field(None, ge=0)
    currency: str | None = None
    priority: int | None = Field(None, ge=0, le=2)
    executor: str | None = None


class StatusChange(CamelModel):
    status: RequestStatus


class DeleteConfirm(CamelModel):
    password: str | None = None


class FinalizeIn(CamelModel):
    selected_offer_id: int | None = Field(None, alias="selectedOfferId")
    reason: str | None = None


class SelectOfferIn(CamelModel):
    position_id: int | None = Field(None, alias="positionId")
    offer_id: int | None = Field(None, alias="offerId")
    reason: str | None = None


class PositionDecisionIn(CamelModel):
    chat_id: int | None = Field(None, alias="chatId")
    reason: str | None = None


class ImportFromChatIn(CamelModel):
    message_id: int | None = Field(None, alias="messageId")
    chat_id: int | None = Field(None, alias="chatId")
    company: str | None = None
    total_price: float | None = Field(None, alias="totalPrice", ge=0)
    currency: str | None = None


class OfferCreate(CamelModel):
    position_id: int | None = Field(None, alias="positionId")
    chat_id: int | None = Field(None, alias="chatId")
    supplier_id: int | None = Field(None, alias="supplierId")
    company: str = Field(min_length=1, max_length=255)
    total_price: float = Field(alias="totalPrice", ge=0)
    currency: str = "KZT"
    delivery_terms: str | None = Field(None, alias="deliveryTerms")
    delivery_days: int | None = Field(None, alias="deliveryDays", ge=0)
    payment_terms: str | None = Field(None, alias="paymentTerms")
    validity_date: datetime | None = Field(None, alias="validityDate")
    confidence: float = Field(100, ge=0, le=100)
    needs_manual_review: bool = Field(False, alias="needsManualReview")
    notes: str | None = None


class OfferReview(CamelModel):
    company: str | None = Field(None, max_length=255)
    total_price: float | None = Field(None, alias="totalPrice", ge=0)
    currency: str | None = None
    delivery_terms: str | None = Field(None, alias="deliveryTerms")
    payment_terms: str | None = Field(None, alias="paymentTerms")
    confidence: float | None = Field(None, ge=0, le=100)
    needs_manual_review: bool | None = Field(None, alias="needsManualReview")
    status: OfferStatus | None = None
    notes: str | None = None
