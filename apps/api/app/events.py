from __future__ import annotations

import uuid
from typing import Any

from app.context import get_correlation_id, get_workflow_depth, get_workflow_origin_rules
from app.core.events import event_bus

published_events: list[dict[str, Any]] = []


def publish(envelope: dict[str, Any]) -> None:
    envelope.setdefault("event_id", str(uuid.uuid4()))
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    existing_meta = envelope.get("meta")
    meta: dict[str, Any] = existing_meta.copy() if isinstance(existing_meta, dict) else {}
    workflow_depth = get_workflow_depth()
    if workflow_depth is not None and "workflow_depth" not in meta:
        meta["workflow_depth"] = workflow_depth
    origin_rules = get_workflow_origin_rules()
    if origin_rules and "origin_rule_ids" not in meta:
        meta["origin_rule_ids"] = list(origin_rules)
    if meta:
        envelope["meta"] = meta

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)
