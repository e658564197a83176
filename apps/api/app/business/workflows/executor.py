"""Runs a matched rule's actions against its request.

Every action commits on its own. A failing action rolls back only its own writes and never
undoes the transition that raised the event.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from fastapi.encoders import jsonable_encoder
from opentelemetry import trace
from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.business.companies.models import Company
from app.business.notifications.service import EmailContent, Recipient
from app.business.requests.models import Request
from app.business.requests.service import RequestService, request_service
from app.business.workflows.events import TRIGGER_NOTIFICATION_TYPES, WorkflowEvent
from app.business.workflows.models import WorkflowExecution, WorkflowRule
from app.business.workflows.schemas import (
    AssignAction,
    ChangePriorityAction,
    ChangeStatusAction,
    NotifyAction,
    SendEmailAction,
    WebhookAction,
    WorkflowAction,
    workflow_action_list_adapter,
)
from app.business.workflows.webhook import WebhookClient
from app.context import (
    push_workflow_origin_rule,
    reset_workflow_depth,
    reset_workflow_origin_rules,
    set_workflow_depth,
)
from app.core.config import get_settings
from app.core.errors import ActionExecutionError, DomainError
from app.metrics import observe_workflow_execution
from app.otel import set_span_attributes
from app.platform.security import AuthContext


logger = logging.getLogger("app.workflows.executor")
tracer = trace.get_tracer("app.workflows.executor")

_TEMPLATE_RE = re.compile(r"\{(\w+)\}")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def render_template(template: str, values: dict[str, Any]) -> str:
    """Replace ``{name}`` placeholders; unknown names are left untouched."""

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        value = values.get(key)
        return match.group(0) if value is None else str(value)

    return _TEMPLATE_RE.sub(_replace, template)


class ActionSkipped(Exception):
    """Raised by an action that had nothing to do."""


@dataclass(slots=True)
class ActionResult:
    index: int
    type: str
    status: str
    error: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ExecutionSummary:
    status: str
    error: str | None
    results: list[ActionResult]

    @classmethod
    def from_results(cls, results: list[ActionResult]) -> ExecutionSummary:
        attempted = [result for result in results if result.status != "skipped"]
        if not attempted:
            return cls(status="skipped", error=None, results=results)
        failed = next((result for result in attempted if result.status == "failed"), None)
        if failed is not None:
            return cls(status="failed", error=failed.error, results=results)
        return cls(status="success", error=None, results=results)


class ActionExecutor:
    def __init__(self, requests: RequestService | None = None, webhook_client: WebhookClient | None = None) -> None:
        self.requests = requests or request_service
        self.webhook_client = webhook_client or WebhookClient()

    def execute(self, session: Session, rule: WorkflowRule, event: WorkflowEvent) -> WorkflowExecution | None:
        if self.already_executed(session, rule.id, event.event_id):
            logger.info("workflow.execution_duplicate", extra={"rule_id": str(rule.id), "event_id": event.event_id})
            return None
        settings = get_settings()
        started = time.perf_counter()
        rule_id = rule.id
        with tracer.start_as_current_span("workflows.rule.execute") as span:
            set_span_attributes(
                span,
                rule_id=str(rule_id),
                event_id=event.event_id,
                trigger_type=event.trigger_type,
                request_id=str(event.request_id),
            )
            ctx = AuthContext.system(f"workflow:{rule_id}", correlation_id=event.correlation_id)
            depth_token = set_workflow_depth(event.depth + 1)
            origin_token = push_workflow_origin_rule(str(rule_id))
            try:
                summary = self._run_actions(session, ctx, rule, event, settings.workflow_max_actions)
            finally:
                reset_workflow_origin_rules(origin_token)
                reset_workflow_depth(depth_token)

            duration = time.perf_counter() - started
            execution = WorkflowExecution(
                rule_id=rule_id,
                event_id=event.event_id,
                request_id=event.request_id,
                trigger_type=event.trigger_type,
                status=summary.status,
                error=summary.error,
                action_results=jsonable_encoder([asdict(result) for result in summary.results]),
                duration_ms=int(duration * 1000),
                correlation_id=event.correlation_id,
            )
            session.add(execution)
            session.execute(
                update(WorkflowRule)
                .where(WorkflowRule.id == rule_id)
                .values(execution_count=WorkflowRule.execution_count + 1, last_executed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.info(
                    "workflow.execution_duplicate",
                    extra={"rule_id": str(rule_id), "event_id": event.event_id},
                )
                return None

            set_span_attributes(span, status=summary.status)
            observe_workflow_execution(event.trigger_type, summary.status, duration)
            logger.info(
                "workflow.executed",
                extra={
                    "rule_id": str(rule_id),
                    "execution_id": str(execution.id),
                    "event_id": event.event_id,
                    "event_type": event.event_type,
                    "status": summary.status,
                    "error": summary.error,
                    "duration_ms": execution.duration_ms,
                },
            )
            session.refresh(rule)
            return execution

    @staticmethod
    def already_executed(session: Session, rule_id: uuid.UUID, event_id: str) -> bool:
        existing = session.scalar(
            select(WorkflowExecution.id).where(
                WorkflowExecution.rule_id == rule_id,
                WorkflowExecution.event_id == event_id,
            )
        )
        return existing is not None

    def _run_actions(
        self,
        session: Session,
        ctx: AuthContext,
        rule: WorkflowRule,
        event: WorkflowEvent,
        max_actions: int,
    ) -> ExecutionSummary:
        try:
            actions = workflow_action_list_adapter.validate_python(rule.actions or [])
        except ValidationError as exc:
            error = f"invalid actions: {exc.error_count()} error(s)"
            return ExecutionSummary(status="failed", error=error, results=[])

        rule_id = rule.id
        rule_name = rule.name
        results: list[ActionResult] = []
        for index, action in enumerate(actions):
            if index >= max_actions:
                results.append(ActionResult(index=index, type=action.type, status="skipped", error="max actions exceeded"))
                continue
            results.append(self._run_action(session, ctx, rule_id, rule_name, event, action, index))
        return ExecutionSummary.from_results(results)

    def _run_action(
        self,
        session: Session,
        ctx: AuthContext,
        rule_id: uuid.UUID,
        rule_name: str,
        event: WorkflowEvent,
        action: WorkflowAction,
        index: int,
    ) -> ActionResult:
        try:
            detail = self._dispatch(session, ctx, rule_id, rule_name, event, action)
            session.commit()
            return ActionResult(index=index, type=action.type, status="success", detail=detail)
        except ActionSkipped as exc:
            session.rollback()
            return ActionResult(index=index, type=action.type, status="skipped", error=str(exc))
        except DomainError as exc:
            session.rollback()
            return ActionResult(index=index, type=action.type, status="failed", error=exc.message)
        except Exception as exc:
            session.rollback()
            logger.exception("workflow.action_crashed", extra={"event_id": event.event_id, "reason": action.type})
            return ActionResult(index=index, type=action.type, status="failed", error=str(exc) or type(exc).__name__)

    def _dispatch(
        self,
        session: Session,
        ctx: AuthContext,
        rule_id: uuid.UUID,
        rule_name: str,
        event: WorkflowEvent,
        action: WorkflowAction,
    ) -> dict[str, Any]:
        request = self.requests.load_for_system(session, event.request_id)
        if isinstance(action, NotifyAction):
            return self._notify(session, rule_name, event, request, action)
        if isinstance(action, AssignAction):
            if request.assigned_to == action.user_id:
                raise ActionSkipped("already assigned")
            self.requests.assign(session, ctx, request.id, action.user_id)
            return {"assigned_to": str(action.user_id) if action.user_id else None}
        if isinstance(action, ChangeStatusAction):
            if request.status == action.status:
                raise ActionSkipped(f"already {action.status}")
            previous = request.status
            self.requests.transition(session, ctx, request.id, action.status)
            return {"from_status": previous, "to_status": action.status}
        if isinstance(action, ChangePriorityAction):
            if request.priority == action.priority:
                raise ActionSkipped(f"already {action.priority}")
            self.requests.change_priority(session, ctx, request.id, action.priority)
            return {"priority": action.priority}
        if isinstance(action, SendEmailAction):
            return self._send_email(session, rule_name, event, request, action)
        if isinstance(action, WebhookAction):
            return self._webhook(rule_id, event, request, action)
        raise ActionExecutionError(f"unsupported action '{action.type}'")

    def _notify(
        self,
        session: Session,
        rule_name: str,
        event: WorkflowEvent,
        request: Request,
        action: NotifyAction,
    ) -> dict[str, Any]:
        values = self._template_values(session, event, request)
        title = render_template(action.title or f"Workflow: {rule_name}", values)
        message = render_template(action.message, values)
        results = self.requests.notify(
            session,
            request,
            TRIGGER_NOTIFICATION_TYPES[event.trigger_type],
            title,
            message,
            email=False,
            extra_ids=action.recipient_user_ids,
        )
        if not results:
            raise ActionSkipped("no recipients")
        return {"notified": len(results)}

    def _send_email(
        self,
        session: Session,
        rule_name: str,
        event: WorkflowEvent,
        request: Request,
        action: SendEmailAction,
    ) -> dict[str, Any]:
        values = self._template_values(session, event, request)
        subject = render_template(action.subject or "[Pipeline] Update on {request_title}", values)
        message = render_template(action.message or "{request_title} is now {status}.", values)
        recipients = [
            profile
            for profile in self.requests.recipients_for(session, request, action.recipient_user_ids)
            if profile.email
        ]
        if not recipients:
            raise ActionSkipped("no recipients")

        link = f"{get_settings().app_base_url.rstrip('/')}/requests/{request.id}"
        content = EmailContent.render(subject, f"Workflow: {rule_name}", message, link)
        outcomes: dict[str, int] = {}
        for profile in recipients:
            result = self.requests.dispatcher.dispatch(
                session,
                Recipient.from_profile(profile),
                TRIGGER_NOTIFICATION_TYPES[event.trigger_type],
                subject,
                message,
                link=link,
                request_id=request.id,
                company_id=request.company_id,
                email=content,
            )
            outcomes[result.outcome] = outcomes.get(result.outcome, 0) + 1
        session.commit()

        failed = outcomes.get("failed", 0)
        if failed:
            raise ActionExecutionError(f"{failed} of {len(recipients)} emails failed", details=outcomes)
        return {"outcomes": outcomes}

    def _webhook(self, rule_id: uuid.UUID, event: WorkflowEvent, request: Request, action: WebhookAction) -> dict[str, Any]:
        payload = {
            "event": event.as_dict(),
            "rule_id": str(rule_id),
            "request": jsonable_encoder(self.requests.to_read(request)),
        }
        response = self.webhook_client.post(str(action.url), payload, secret=action.secret, headers=action.headers)
        return {"status_code": response.status_code}

    def _template_values(self, session: Session, event: WorkflowEvent, request: Request) -> dict[str, Any]:
        company = session.get(Company, request.company_id)
        return {
            "request_title": request.title,
            "request_id": str(request.id),
            "status": request.status,
            "priority": request.priority,
            "from_status": event.payload.get("from_status"),
            "to_status": event.payload.get("to_status"),
            "company_name": company.name if company else None,
        }


action_executor = ActionExecutor()
