"""Bodies for chat endpoints (camelCase aliases accepted)."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class LinkPositionIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    position_id: int | None = Field(None, alias="positionId")


class LinkRequestIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    request_id: int | None = Field(None, alias="requestId")


class SendMessageIn(BaseModel):
    text: str = Field(min_length=1, max_length=4096)
