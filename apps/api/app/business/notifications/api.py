from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_auth_context, require_authenticated
from app.business.notifications.schemas import (
    MarkReadRequest,
    MarkReadResult,
    NotificationRead,
    PreferencesRead,
    PreferencesUpdate,
)
from app.business.notifications.service import notification_dispatcher
from app.core.database import get_db
from app.platform.security import AuthContext


router = APIRouter(prefix="/notifications", tags=["notifications"], dependencies=[Depends(require_authenticated)])


@router.get("", response_model=list[NotificationRead])
def list_notifications(
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[NotificationRead]:
    return notification_dispatcher.list_notifications(db, ctx.user_id, unread_only=unread_only, limit=limit)


@router.post("/mark-read", response_model=MarkReadResult)
def mark_read(
    payload: MarkReadRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> MarkReadResult:
    ids = None if payload.all else payload.notification_ids
    return MarkReadResult(updated=notification_dispatcher.mark_read(db, ctx.user_id, ids))


@router.get("/preferences", response_model=PreferencesRead)
def get_preferences(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> PreferencesRead:
    return notification_dispatcher.read_preferences(db, ctx.user_id)


@router.put("/preferences", response_model=PreferencesRead)
def update_preferences(
    payload: PreferencesUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> PreferencesRead:
    return notification_dispatcher.update_preferences(db, ctx.user_id, payload)
