from __future__ import annotations

import uuid

from fastapi import Depends, HTTPException, Request, status

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user
from app.platform.security import AuthContext


def _parse_company_id(raw: str | None) -> uuid.UUID | None:
    if not raw:
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        return None


def get_auth_context(request: Request, auth_user: AuthUser = Depends(get_current_user)) -> AuthContext:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return AuthContext(
        user_id=auth_user.sub,
        company_id=_parse_company_id(auth_user.company_id),
        correlation_id=correlation_id or None,
        permissions=[str(role) for role in auth_user.roles],
    )


def require_authenticated(auth_user: AuthUser = Depends(get_current_user)) -> AuthUser:
    if auth_user.sub == "anonymous":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return auth_user
