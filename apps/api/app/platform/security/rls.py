from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import false
from sqlalchemy.sql import Select

from app.platform.security.context import AuthContext


def can_access_company(ctx: AuthContext, company_id: uuid.UUID | None) -> bool:
    if ctx.is_staff:
        return True
    return ctx.company_id is not None and company_id == ctx.company_id


def apply_company_scope(query: Select[Any], model: Any, ctx: AuthContext) -> Select[Any]:
    """Restrict non-staff callers to rows of their own company."""

    if ctx.is_staff or not hasattr(model, "company_id"):
        return query
    if ctx.company_id is None:
        return query.where(false())
    return query.where(model.company_id == ctx.company_id)
