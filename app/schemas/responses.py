"""
schemas/responses.py — Shared response envelopes

Every JSON endpoint answers {"success": true, "data": ...}; list endpoints
add pagination fields. PaginatedEnvelope is the response_model of the list
endpoints.

Called by: routers/*.py
Depends on: pydantic
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class Envelope(BaseModel):
    success: bool = True
    data: Any = None
    message: str | None = None


class PaginatedEnvelope(Envelope):
    total: int = 0
    limit: int = 50
    offset: int = 0


def ok(data: Any = None, message: str | None = None) -> dict:
    body: dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body


def page(data: list, total: int, limit: int, offset: int) -> dict:
    return {"success": True, "data": data, "total": total, "limit": limit, "offset": offset}
