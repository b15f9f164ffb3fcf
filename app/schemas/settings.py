"""Runtime setting update body."""

from __future__ import annotations

from pydantic import BaseModel, Field


class SettingUpdate(BaseModel):
    value: str = Field(max_length=5000)
