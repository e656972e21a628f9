"""Request DTOs for the admin API."""
from __future__ import annotations

from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class WebhookCreateDTO(BaseModel):
    name: str = ""
    description: str | None = None
    url: str
    events: list[str] = Field(min_length=1)
    secret: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    rate_limit_per_minute: int = Field(default=60, gt=0)
    is_active: bool = True


class WebhookUpdateDTO(BaseModel):
    name: str | None = None
    description: str | None = None
    url: str | None = None
    events: list[str] | None = Field(default=None, min_length=1)
    headers: dict[str, str] | None = None
    rate_limit_per_minute: int | None = Field(default=None, gt=0)

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude_none=True)


class EventPublishDTO(BaseModel):
    event_type: str = Field(min_length=1)
    event_id: UUID
    payload: dict[str, Any] = Field(default_factory=dict)
