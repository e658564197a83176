from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


CompanyStatus = Literal["active", "paused", "churned"]
PlanTier = Literal["standard", "pro"]
ProfileRole = Literal["admin", "member"]


class CompanyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    status: CompanyStatus = "active"
    plan_tier: PlanTier = "standard"
    max_active_limit: int | None = Field(default=None, ge=1)
    external_customer_id: str | None = Field(default=None, max_length=128)


class CompanyUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=255)
    status: CompanyStatus | None = None
    plan_tier: PlanTier | None = None
    max_active_limit: int | None = Field(default=None, ge=1)


class CompanyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    status: CompanyStatus | str
    plan_tier: PlanTier | str
    max_active_limit: int | None
    effective_active_limit: int = 0
    external_customer_id: str | None
    created_at: datetime
    updated_at: datetime


class CompanyCapacityRead(BaseModel):
    company_id: UUID
    plan_tier: str
    limit: int
    active_count: int
    available: int


class UserProfileCreate(BaseModel):
    email: EmailStr
    full_name: str | None = Field(default=None, max_length=255)
    role: ProfileRole = "member"
    company_id: UUID | None = None


class UserProfileRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    full_name: str | None
    role: ProfileRole | str
    company_id: UUID | None
    created_at: datetime
