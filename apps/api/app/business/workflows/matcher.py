from __future__ import annotations

import logging
from datetime import datetime

from pydantic import ValidationError
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.business.requests.models import Request
from app.business.requests.sla import as_utc
from app.business.workflows.events import WorkflowEvent
from app.business.workflows.models import WorkflowRule, WorkflowTriggerMarker
from app.business.workflows.schemas import (
    AssignmentChangeCondition,
    CommentAddedCondition,
    DueDateApproachingCondition,
    SlaBreachCondition,
    StatusChangeCondition,
    TriggerCondition,
    trigger_condition_adapter,
)


logger = logging.getLogger("app.workflows.matcher")


class RuleMatcher:
    def candidate_rules(self, session: Session, event: WorkflowEvent) -> list[WorkflowRule]:
        query = select(WorkflowRule).where(
            WorkflowRule.is_active.is_(True),
            WorkflowRule.deleted_at.is_(None),
            WorkflowRule.trigger_type == event.trigger_type,
        )
        if event.company_id is not None:
            query = query.where(or_(WorkflowRule.company_id == event.company_id, WorkflowRule.company_id.is_(None)))
        else:
            query = query.where(WorkflowRule.company_id.is_(None))
        rules = session.scalars(query.order_by(WorkflowRule.created_at.asc(), WorkflowRule.id.asc()))
        return [rule for rule in rules if str(rule.id) not in event.origin_rule_ids]

    def match(self, session: Session, event: WorkflowEvent, request: Request, now: datetime) -> list[WorkflowRule]:
        return [
            rule
            for rule in self.candidate_rules(session, event)
            if self.matches(session, rule, event, request, now)
        ]

    def matches(
        self,
        session: Session,
        rule: WorkflowRule,
        event: WorkflowEvent,
        request: Request,
        now: datetime,
    ) -> bool:
        condition = self._parse(rule)
        if condition is None:
            return False

        if isinstance(condition, StatusChangeCondition):
            if condition.from_status is not None and event.payload.get("from_status") != condition.from_status:
                return False
            if condition.to_status is not None and event.payload.get("to_status") != condition.to_status:
                return False
            return True
        if isinstance(condition, CommentAddedCondition):
            return condition.is_internal is None or bool(event.payload.get("is_internal")) == condition.is_internal
        if isinstance(condition, AssignmentChangeCondition):
            return condition.to_user_id is None or event.payload.get("to_user_id") == str(condition.to_user_id)
        if isinstance(condition, SlaBreachCondition):
            return True
        if isinstance(condition, DueDateApproachingCondition):
            return self._due_date_matches(session, rule, request, condition, now)
        return False

    def _due_date_matches(
        self,
        session: Session,
        rule: WorkflowRule,
        request: Request,
        condition: DueDateApproachingCondition,
        now: datetime,
    ) -> bool:
        if request.due_date is None or request.status == "done":
            return False
        due_date = as_utc(request.due_date)
        hours_until_due = (due_date - as_utc(now)).total_seconds() / 3600
        if not 0 <= hours_until_due <= condition.hours_before:
            return False

        marker = session.scalar(
            select(WorkflowTriggerMarker).where(
                WorkflowTriggerMarker.rule_id == rule.id,
                WorkflowTriggerMarker.request_id == request.id,
            )
        )
        return marker is None or as_utc(marker.fired_for_due_date) != due_date

    def _parse(self, rule: WorkflowRule) -> TriggerCondition | None:
        try:
            return trigger_condition_adapter.validate_python({"type": rule.trigger_type, **(rule.trigger_conditions or {})})
        except ValidationError:
            logger.warning("workflow.rule_conditions_invalid", extra={"rule_id": str(rule.id)})
            return None


rule_matcher = RuleMatcher()
