from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import get_auth_context
from app.business.requests.schemas import (
    ActivityRead,
    CommentCreate,
    CommentRead,
    RequestAssign,
    RequestCreate,
    RequestListFilters,
    RequestMove,
    RequestPriority,
    RequestRead,
    RequestStatus,
    RequestUpdate,
)
from app.business.requests.service import request_service
from app.core.database import get_db
from app.platform.security import AuthContext


router = APIRouter(prefix="/requests", tags=["requests"])


@router.post("", response_model=RequestRead, status_code=status.HTTP_201_CREATED)
def create_request(
    payload: RequestCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> RequestRead:
    return request_service.create_request(db, ctx, payload)


@router.get("", response_model=list[RequestRead])
def list_requests(
    status_filter: RequestStatus | None = Query(default=None, alias="status"),
    priority: RequestPriority | None = Query(default=None),
    company_id: uuid.UUID | None = Query(default=None),
    assigned_to: uuid.UUID | None = Query(default=None),
    include_archived: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[RequestRead]:
    filters = RequestListFilters(
        status=status_filter,
        priority=priority,
        company_id=company_id,
        assigned_to=assigned_to,
        include_archived=include_archived,
        limit=limit,
        offset=offset,
    )
    return request_service.list_requests(db, ctx, filters)


@router.get("/{request_id}", response_model=RequestRead)
def get_request(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> RequestRead:
    return request_service.get_request(db, ctx, request_id)


@router.patch("/{request_id}", response_model=RequestRead)
def update_request(
    request_id: uuid.UUID,
    payload: RequestUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> RequestRead:
    return request_service.update_request(db, ctx, request_id, payload)


@router.post("/{request_id}/move", response_model=RequestRead)
def move_request(
    request_id: uuid.UUID,
    payload: RequestMove,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> RequestRead:
    return request_service.transition(db, ctx, request_id, payload.status)


@router.post("/{request_id}/assign", response_model=RequestRead)
def assign_request(
    request_id: uuid.UUID,
    payload: RequestAssign,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> RequestRead:
    return request_service.assign(db, ctx, request_id, payload.user_id)


@router.post("/{request_id}/comments", response_model=CommentRead, status_code=status.HTTP_201_CREATED)
def add_comment(
    request_id: uuid.UUID,
    payload: CommentCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> CommentRead:
    return request_service.add_comment(db, ctx, request_id, payload)


@router.get("/{request_id}/comments", response_model=list[CommentRead])
def list_comments(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[CommentRead]:
    return request_service.list_comments(db, ctx, request_id)


@router.post("/{request_id}/archive", response_model=RequestRead)
def archive_request(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> RequestRead:
    return request_service.archive_request(db, ctx, request_id)


@router.get("/{request_id}/activity", response_model=list[ActivityRead])
def list_activity(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[ActivityRead]:
    return request_service.list_activity(db, ctx, request_id)
