from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import get_auth_context
from app.business.companies.schemas import (
    CompanyCapacityRead,
    CompanyCreate,
    CompanyRead,
    CompanyUpdate,
    UserProfileCreate,
    UserProfileRead,
)
from app.business.companies.service import company_service
from app.core.database import get_db
from app.platform.security import AuthContext


router = APIRouter(prefix="/companies", tags=["companies"])
profiles_router = APIRouter(prefix="/profiles", tags=["companies"])


@router.post("", response_model=CompanyRead, status_code=status.HTTP_201_CREATED)
def create_company(
    payload: CompanyCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> CompanyRead:
    return company_service.create_company(db, ctx, payload)


@router.get("", response_model=list[CompanyRead])
def list_companies(
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[CompanyRead]:
    return company_service.list_companies(db, ctx, status_filter=status_filter)


@router.get("/{company_id}", response_model=CompanyRead)
def get_company(
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> CompanyRead:
    return company_service.get_company(db, ctx, company_id)


@router.patch("/{company_id}", response_model=CompanyRead)
def update_company(
    company_id: uuid.UUID,
    payload: CompanyUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> CompanyRead:
    return company_service.update_company(db, ctx, company_id, payload)


@router.get("/{company_id}/capacity", response_model=CompanyCapacityRead)
def get_capacity(
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> CompanyCapacityRead:
    return company_service.get_capacity(db, ctx, company_id)


@router.post("/{company_id}/members", response_model=UserProfileRead, status_code=status.HTTP_201_CREATED)
def add_member(
    company_id: uuid.UUID,
    payload: UserProfileCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> UserProfileRead:
    return company_service.create_profile(db, ctx, payload.model_copy(update={"company_id": company_id}))


@router.get("/{company_id}/members", response_model=list[UserProfileRead])
def list_members(
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[UserProfileRead]:
    return company_service.list_members(db, ctx, company_id)


@profiles_router.post("", response_model=UserProfileRead, status_code=status.HTTP_201_CREATED)
def create_profile(
    payload: UserProfileCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> UserProfileRead:
    return company_service.create_profile(db, ctx, payload)
