from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi.encoders import jsonable_encoder
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.business.companies.repository import CompanyRepository
from app.business.requests.models import Request
from app.business.requests.repository import RequestRepository
from app.business.requests.sla import as_utc
from app.business.workflows.events import WorkflowEvent
from app.business.workflows.executor import ActionExecutor, action_executor
from app.business.workflows.matcher import RuleMatcher, rule_matcher
from app.business.workflows.models import WorkflowExecution, WorkflowRule, WorkflowTriggerMarker
from app.business.workflows.schemas import (
    WorkflowExecutionRead,
    WorkflowRuleCreate,
    WorkflowRuleRead,
    WorkflowRuleUpdate,
    normalize_trigger_conditions,
)
from app.context import reset_correlation_id, set_correlation_id
from app.core.config import get_settings
from app.core.errors import DomainValidationError, NotFoundError, PermissionDeniedError
from app.metrics import observe_workflow_guardrail_block
from app.platform.repository import BaseRepository, Predicate
from app.platform.security import AuthContext
from app.services.audit import write_audit_log


logger = logging.getLogger("app.workflows")

MANAGE_PERMISSION = "workflows.manage"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowRuleRepository(BaseRepository):
    resource = "workflows.rule"
    model = WorkflowRule


class WorkflowExecutionRepository(BaseRepository):
    resource = "workflows.execution"
    model = WorkflowExecution


class WorkflowRuleService:
    entity_type = "workflow_rule"

    def __init__(self) -> None:
        self.repository = WorkflowRuleRepository()
        self.execution_repository = WorkflowExecutionRepository()
        self.company_repository = CompanyRepository()

    def create_rule(self, session: Session, ctx: AuthContext, payload: WorkflowRuleCreate) -> WorkflowRuleRead:
        self._require_manage(ctx)
        if payload.company_id is not None and self.company_repository.get(session, payload.company_id) is None:
            raise NotFoundError("company not found")

        rule = WorkflowRule(
            company_id=payload.company_id,
            name=payload.name.strip(),
            description=payload.description,
            trigger_type=payload.trigger_type,
            trigger_conditions=payload.trigger_conditions,
            actions=payload.actions,
            is_active=payload.is_active,
            created_by=ctx.user_id,
        )
        self.repository.add(session, rule)
        write_audit_log(
            session,
            ctx.user_id,
            "workflow.rule.created",
            self.entity_type,
            rule.id,
            company_id=rule.company_id,
            metadata={"trigger_type": rule.trigger_type, "actions": len(rule.actions)},
            correlation_id=ctx.correlation_id,
        )
        session.commit()
        session.refresh(rule)
        logger.info("workflow.rule_created", extra={"rule_id": str(rule.id), "company_id": str(rule.company_id)})
        return WorkflowRuleRead.model_validate(rule)

    def list_rules(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        company_id: uuid.UUID | None = None,
        trigger_type: str | None = None,
        include_inactive: bool = True,
    ) -> list[WorkflowRuleRead]:
        self._require_manage(ctx)
        predicates = [Predicate("deleted_at", "is_null", True)]
        if company_id is not None:
            predicates.append(Predicate("company_id", "eq", company_id))
        if trigger_type is not None:
            predicates.append(Predicate("trigger_type", "eq", trigger_type))
        if not include_inactive:
            predicates.append(Predicate("is_active", "eq", True))
        rules = self.repository.find(session, predicates, order_by=["created_at"])
        return [WorkflowRuleRead.model_validate(rule) for rule in rules]

    def get_rule(self, session: Session, ctx: AuthContext, rule_id: uuid.UUID) -> WorkflowRuleRead:
        self._require_manage(ctx)
        return WorkflowRuleRead.model_validate(self._load_rule(session, rule_id))

    def update_rule(
        self,
        session: Session,
        ctx: AuthContext,
        rule_id: uuid.UUID,
        payload: WorkflowRuleUpdate,
    ) -> WorkflowRuleRead:
        self._require_manage(ctx)
        rule = self._load_rule(session, rule_id)
        changes = payload.model_dump(exclude_unset=True)
        if "name" in changes and changes["name"] is None:
            raise DomainValidationError("name cannot be empty")
        if "trigger_type" in changes and changes["trigger_type"] is None:
            raise DomainValidationError("trigger_type cannot be empty")
        if "actions" in changes and changes["actions"] is None:
            raise DomainValidationError("actions cannot be empty")
        if "is_active" in changes and changes["is_active"] is None:
            raise DomainValidationError("is_active cannot be empty")
        if "trigger_conditions" in changes and "trigger_type" not in changes:
            try:
                changes["trigger_conditions"] = normalize_trigger_conditions(
                    rule.trigger_type, changes["trigger_conditions"]
                )
            except (ValidationError, ValueError) as exc:
                raise DomainValidationError("invalid trigger_conditions", details={"error": str(exc)}) from exc
        elif "trigger_type" in changes:
            changes["trigger_conditions"] = payload.trigger_conditions

        before = {field_name: getattr(rule, field_name) for field_name in changes}
        self.repository.update(session, rule, changes)
        write_audit_log(
            session,
            ctx.user_id,
            "workflow.rule.updated",
            self.entity_type,
            rule.id,
            company_id=rule.company_id,
            metadata=jsonable_encoder({"before": before, "after": changes}),
            correlation_id=ctx.correlation_id,
        )
        session.commit()
        session.refresh(rule)
        return WorkflowRuleRead.model_validate(rule)

    def delete_rule(self, session: Session, ctx: AuthContext, rule_id: uuid.UUID) -> None:
        """Soft delete: the rule is deactivated and hidden, its executions stay."""
        self._require_manage(ctx)
        rule = self._load_rule(session, rule_id)
        rule.is_active = False
        rule.deleted_at = utcnow()
        write_audit_log(
            session,
            ctx.user_id,
            "workflow.rule.deleted",
            self.entity_type,
            rule.id,
            company_id=rule.company_id,
            correlation_id=ctx.correlation_id,
        )
        session.commit()

    def list_executions(
        self,
        session: Session,
        ctx: AuthContext,
        rule_id: uuid.UUID,
        *,
        limit: int = 50,
    ) -> list[WorkflowExecutionRead]:
        self._require_manage(ctx)
        self._load_rule(session, rule_id)
        rows = self.execution_repository.find(
            session,
            [Predicate("rule_id", "eq", rule_id)],
            order_by=["-created_at"],
            limit=limit,
        )
        return [WorkflowExecutionRead.model_validate(row) for row in rows]

    def _load_rule(self, session: Session, rule_id: uuid.UUID) -> WorkflowRule:
        rule = self.repository.get(session, rule_id)
        if rule is None or rule.deleted_at is not None:
            raise NotFoundError("workflow rule not found")
        return rule

    @staticmethod
    def _require_manage(ctx: AuthContext) -> None:
        if not ctx.has(MANAGE_PERMISSION):
            raise PermissionDeniedError(f"Missing permission: {MANAGE_PERMISSION}")


class WorkflowAutomationService:
    """Reacts to request events and scheduler ticks by running matching rules."""

    def __init__(self, matcher: RuleMatcher | None = None, executor: ActionExecutor | None = None) -> None:
        self.matcher = matcher or rule_matcher
        self.executor = executor or action_executor
        self.request_repository = RequestRepository()

    def handle_event(self, session: Session, envelope: dict[str, Any]) -> list[WorkflowExecution]:
        event = WorkflowEvent.from_envelope(envelope)
        if event is None:
            return []

        settings = get_settings()
        if event.depth >= settings.workflow_max_depth:
            self._block(session, event, settings.workflow_max_depth)
            return []

        request = session.get(Request, event.request_id)
        if request is None:
            return []

        executions: list[WorkflowExecution] = []
        for rule in self.matcher.match(session, event, request, utcnow()):
            execution = self.executor.execute(session, rule, event)
            if execution is not None:
                executions.append(execution)
        return executions

    def run_due_date_tick(self, session: Session, now: datetime | None = None) -> int:
        """Fire due-date rules whose window has been entered; returns the number of rule runs."""
        now = now or utcnow()
        fired = 0
        for request in self.request_repository.list_open_with_due_date(session):
            event = WorkflowEvent.for_due_date(request, now)
            for rule in self.matcher.match(session, event, request, now):
                crossing = self._record_marker(session, rule.id, request, now)
                if self.executor.execute(session, rule, event.for_crossing(crossing)) is not None:
                    fired += 1
        logger.info("workflow.due_date_tick", extra={"count": fired})
        return fired

    def _record_marker(self, session: Session, rule_id: uuid.UUID, request: Request, now: datetime) -> int:
        """Arm the marker for the current due date and return its crossing number."""
        due_date = as_utc(request.due_date)
        marker = session.scalar(
            select(WorkflowTriggerMarker).where(
                WorkflowTriggerMarker.rule_id == rule_id,
                WorkflowTriggerMarker.request_id == request.id,
            )
        )
        if marker is None:
            marker = WorkflowTriggerMarker(rule_id=rule_id, request_id=request.id, crossings=0)
            session.add(marker)
        marker.fired_for_due_date = due_date
        marker.fired_at = now
        marker.crossings = (marker.crossings or 0) + 1
        crossings = marker.crossings
        session.commit()
        return crossings

    def _block(self, session: Session, event: WorkflowEvent, max_depth: int) -> None:
        token = set_correlation_id(event.correlation_id)
        try:
            logger.warning(
                "workflow_guardrail_blocked",
                extra={
                    "reason": "MAX_DEPTH",
                    "event_type": event.event_type,
                    "event_id": event.event_id,
                    "request_id": str(event.request_id),
                    "workflow_depth": event.depth,
                    "max_depth": max_depth,
                },
            )
        finally:
            reset_correlation_id(token)
        observe_workflow_guardrail_block("MAX_DEPTH")
        write_audit_log(
            session,
            event.actor_user_id or "system",
            "workflow.blocked",
            "workflow",
            event.event_id,
            company_id=event.company_id,
            metadata={
                "reason": "MAX_DEPTH",
                "event_type": event.event_type,
                "request_id": str(event.request_id),
                "workflow_depth": event.depth,
                "max_depth": max_depth,
            },
            correlation_id=event.correlation_id,
        )
        session.commit()


workflow_rule_service = WorkflowRuleService()
workflow_automation_service = WorkflowAutomationService()
