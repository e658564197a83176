from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


RequestStatus = Literal["queue", "active", "review", "done"]
RequestPriority = Literal["low", "normal", "high"]


class RequestCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    priority: RequestPriority = "normal"
    due_date: datetime | None = None
    sla_hours: int | None = Field(default=None, ge=1)
    company_id: UUID | None = None


class RequestUpdate(BaseModel):
    """Status is deliberately absent: status only changes through ``/move``."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    priority: RequestPriority | None = None
    due_date: datetime | None = None
    sla_hours: int | None = Field(default=None, ge=1)


class RequestMove(BaseModel):
    status: RequestStatus


class RequestAssign(BaseModel):
    user_id: UUID | None = None


class RequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: UUID
    title: str
    description: str | None
    status: RequestStatus | str
    priority: RequestPriority | str
    due_date: datetime | None
    sla_hours: int | None
    sla_status: str | None
    completed_at: datetime | None
    assigned_to: UUID | None
    created_by: str
    archived_at: datetime | None
    created_at: datetime
    updated_at: datetime


class RequestListFilters(BaseModel):
    status: RequestStatus | None = None
    priority: RequestPriority | None = None
    company_id: UUID | None = None
    assigned_to: UUID | None = None
    include_archived: bool = False
    limit: int = Field(default=50, ge=1, le=200)
    offset: int = Field(default=0, ge=0)


class CommentCreate(BaseModel):
    content: str = Field(min_length=1)
    is_internal: bool = False


class CommentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    request_id: UUID
    author_id: str
    content: str
    is_internal: bool
    created_at: datetime


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    actor_id: str
    action: str
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="event_metadata")
    correlation_id: str | None
    created_at: datetime
