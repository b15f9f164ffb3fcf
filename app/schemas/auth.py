"""Login and user management bodies."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator

Role = Literal["admin", "purchaser", "manager", "viewer"]


class LoginIn(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=200)

    @field_validator("email")
    @classmethod
    def lower(cls, v: str) -> str:
        return v.strip().lower()


class UserCreate(LoginIn):
    name: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=8, max_length=200)
    role: Role = "purchaser"
