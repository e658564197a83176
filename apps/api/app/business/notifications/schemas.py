from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


NotificationType = Literal["comment", "status_change", "assignment", "mention", "due_date", "sla_breach"]
DigestFrequency = Literal["daily", "weekly"]


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    type: NotificationType | str
    title: str
    message: str
    link: str | None
    request_id: UUID | None
    company_id: UUID | None
    is_read: bool
    read_at: datetime | None
    created_at: datetime


class MarkReadRequest(BaseModel):
    notification_ids: list[UUID] = Field(default_factory=list)
    all: bool = False

    @model_validator(mode="after")
    def validate_target(self) -> "MarkReadRequest":
        if not self.all and not self.notification_ids:
            raise ValueError("provide notification_ids or set all=true")
        return self


class MarkReadResult(BaseModel):
    updated: int


class PreferencesRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    email_on_comment: bool
    email_on_status_change: bool
    email_on_assignment: bool
    email_on_mention: bool
    email_on_due_date: bool
    email_digest_enabled: bool
    email_digest_frequency: DigestFrequency | str
    push_enabled: bool


class PreferencesUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email_on_comment: bool | None = None
    email_on_status_change: bool | None = None
    email_on_assignment: bool | None = None
    email_on_mention: bool | None = None
    email_on_due_date: bool | None = None
    email_digest_enabled: bool | None = None
    email_digest_frequency: DigestFrequency | None = None
    push_enabled: bool | None = None
