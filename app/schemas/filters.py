"""
schemas/filters.py — Typed query filters for list endpoints

Each model is bound to a route with Depends(), so query parameters are
validated (unknown statuses → 422) and apply() turns them into SQLAlchemy
filters in one place.

Called by: routers/requests.py, routers/chats.py, routers/suppliers.py,
           routers/audit.py
Depends on: models, workflow
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field
from sqlalchemy import String, cast, or_

from app.models import AuditLog, Chat, Request, Supplier
from app.workflow import RequestStatus


class Page(BaseModel):
    limit: int = Field(50, ge=1, le=500)
    offset: int = Field(0, ge=0)


class RequestFilters(Page):
    status: RequestStatus | None = None
    priority: int | None = Field(None, ge=0, le=2)
    q: str | None = Field(None, max_length=200)
    created_from: datetime | None = None
    created_to: datetime | None = None
    include_archived: bool = False

    def apply(self, query):
        if self.status:
            query = query.filter(Request.status == self.status.value)
        elif not self.include_archived:
            query = query.filter(Request.status != RequestStatus.ARCHIVED.value)
        if self.priority is not None:
            query = query.filter(Request.priority == self.priority)
        if self.q:
            pattern = f"%{self.q.strip()}%"
            query = query.filter(or_(Request.request_number.ilike(pattern), Request.description.ilike(pattern)))
        if self.created_from:
            query = query.filter(Request.created_at >= self.created_from)
        if self.created_to:
            query = query.filter(Request.created_at <= self.created_to)
        return query


class ChatFilters(Page):
    request_id: int | None = None
    archived: bool = False
    unread_only: bool = False
    q: str | None = Field(None, max_length=100)

    def apply(self, query):
        if self.request_id is not None:
            query = query.filter(Chat.request_id == self.request_id)
        query = query.filter(Chat.is_archived.is_(self.archived))
        if self.unread_only:
            query = query.filter(Chat.unread_count > 0)
        if self.q:
            pattern = f"%{self.q.strip()}%"
            query = query.filter(or_(Chat.phone_number.ilike(pattern), Chat.contact_name.ilike(pattern)))
        return query


class SupplierFilters(Page):
    q: str | None = Field(None, max_length=200)
    is_active: bool | None = None
    tag: str | None = Field(None, max_length=100)
    has_whatsapp: bool | None = None

    def apply(self, query):
        if self.q:
            pattern = f"%{self.q.strip()}%"
            query = query.filter(or_(
                Supplier.name.ilike(pattern),
                Supplier.tax_id.ilike(pattern),
                Supplier.website.ilike(pattern),
            ))
        if self.is_active is not None:
            query = query.filter(Supplier.is_active.is_(self.is_active))
        if self.tag:
            # JSON list stored as text on both SQLite and PostgreSQL
            query = query.filter(cast(Supplier.tags, String).ilike(f'%"{self.tag}"%'))
        if self.has_whatsapp is True:
            query = query.filter(Supplier.whatsapp.isnot(None), Supplier.whatsapp != "")
        elif self.has_whatsapp is False:
            query = query.filter(or_(Supplier.whatsapp.is_(None), Supplier.whatsapp == ""))
        return query


class AuditFilters(Page):
    action: str | None = Field(None, max_length=100)
    entity: str | None = Field(None, max_length=50)
    entity_id: str | None = None
    user_id: int | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None

    def apply(self, query):
        if self.action:
            query = query.filter(AuditLog.action == self.action)
        if self.entity:
            query = query.filter(AuditLog.entity == self.entity)
        if self.entity_id:
            query = query.filter(AuditLog.entity_id == self.entity_id)
        if self.user_id is not None:
            query = query.filter(AuditLog.user_id == self.user_id)
        if self.date_from:
            query = query.filter(AuditLog.created_at >= self.date_from)
        if self.date_to:
            query = query.filter(AuditLog.created_at <= self.date_to)
        return query
