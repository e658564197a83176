from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from app.business.requests.models import Request
from app.business.requests.sla import as_utc


EVENT_TRIGGER_TYPES: dict[str, str] = {
    "requests.status_changed": "status_change",
    "requests.comment_added": "comment_added",
    "requests.assignment_changed": "assignment_change",
    "requests.sla_breached": "sla_breach",
}

TRIGGER_NOTIFICATION_TYPES: dict[str, str] = {
    "status_change": "status_change",
    "comment_added": "comment",
    "assignment_change": "assignment",
    "due_date_approaching": "due_date",
    "sla_breach": "sla_breach",
}


def _optional_uuid(value: Any) -> uuid.UUID | None:
    if value in (None, ""):
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


@dataclass(frozen=True, slots=True)
class WorkflowEvent:
    event_id: str
    event_type: str
    trigger_type: str
    request_id: uuid.UUID
    company_id: uuid.UUID | None = None
    actor_user_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    depth: int = 0
    origin_rule_ids: tuple[str, ...] = ()
    correlation_id: str | None = None

    @classmethod
    def from_envelope(cls, envelope: dict[str, Any]) -> WorkflowEvent | None:
        """Build an event from a published envelope; unsupported or malformed envelopes give None."""
        event_type = str(envelope.get("event_type") or "")
        trigger_type = EVENT_TRIGGER_TYPES.get(event_type)
        event_id = str(envelope.get("event_id") or "").strip()
        request_id = _optional_uuid(envelope.get("request_id"))
        if trigger_type is None or not event_id or request_id is None:
            return None

        payload = envelope.get("payload") if isinstance(envelope.get("payload"), dict) else {}
        meta = envelope.get("meta") if isinstance(envelope.get("meta"), dict) else {}
        try:
            depth = int(meta.get("workflow_depth", 0) or 0)
        except (TypeError, ValueError):
            depth = 0
        origin = meta.get("origin_rule_ids") or []

        return cls(
            event_id=event_id,
            event_type=event_type,
            trigger_type=trigger_type,
            request_id=request_id,
            company_id=_optional_uuid(envelope.get("company_id")),
            actor_user_id=str(envelope.get("actor_user_id") or "").strip() or None,
            payload=dict(payload),
            depth=depth,
            origin_rule_ids=tuple(str(rule_id) for rule_id in origin) if isinstance(origin, list) else (),
            correlation_id=str(envelope.get("correlation_id") or "").strip() or None,
        )

    @classmethod
    def for_due_date(cls, request: Request, now: datetime, correlation_id: str | None = None) -> WorkflowEvent:
        due_date = as_utc(request.due_date) if request.due_date is not None else None
        return cls(
            event_id=f"due_date:{request.id}:{due_date.isoformat() if due_date else 'none'}",
            event_type="requests.due_date_approaching",
            trigger_type="due_date_approaching",
            request_id=request.id,
            company_id=request.company_id,
            actor_user_id="scheduler",
            payload={"due_date": due_date.isoformat() if due_date else None, "checked_at": as_utc(now).isoformat()},
            correlation_id=correlation_id,
        )

    def for_crossing(self, crossing: int) -> WorkflowEvent:
        """Due-date events are keyed per crossing so a re-armed rule records a fresh execution."""
        return replace(self, event_id=f"{self.event_id}:{crossing}")

    def as_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "trigger_type": self.trigger_type,
            "request_id": str(self.request_id),
            "company_id": str(self.company_id) if self.company_id else None,
            "actor_user_id": self.actor_user_id,
            "payload": self.payload,
        }
