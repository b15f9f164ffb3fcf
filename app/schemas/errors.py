"""
schemas/errors.py — Structured error response model

Documents the body rendered by the exception handlers in main.py.
"""

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    request_id: str | None = None
    detail: list | dict | None = None
