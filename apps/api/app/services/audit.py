from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.models.audit import AuditLog


def write_audit_log(
    db: Session,
    actor_id: str,
    action: str,
    entity_type: str,
    entity_id: str | uuid.UUID,
    *,
    company_id: uuid.UUID | None = None,
    metadata: dict[str, Any] | None = None,
    correlation_id: str | None = None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction; the caller commits."""
    event = AuditLog(
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        company_id=company_id,
        event_metadata=metadata or {},
        correlation_id=correlation_id or get_correlation_id(),
    )
    db.add(event)
    return event


def list_audit_logs(db: Session, entity_type: str, entity_id: str | uuid.UUID, *, limit: int = 100) -> list[AuditLog]:
    return list(
        db.scalars(
            select(AuditLog)
            .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == str(entity_id))
            .order_by(AuditLog.created_at.asc(), AuditLog.id.asc())
            .limit(limit)
        )
    )
