from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi.encoders import jsonable_encoder
from opentelemetry import trace
from sqlalchemy.orm import Session

from app.business.companies.models import Company, UserProfile
from app.business.companies.repository import CompanyRepository, UserProfileRepository
from app.business.notifications.service import (
    DispatchResult,
    EmailContent,
    NotificationDispatcher,
    Recipient,
    notification_dispatcher,
)
from app.business.requests.admission import AdmissionController, admission_controller, company_locks
from app.business.requests.models import Request, RequestComment
from app.business.requests.repository import RequestCommentRepository, RequestRepository
from app.business.requests.schemas import (
    ActivityRead,
    CommentCreate,
    CommentRead,
    RequestCreate,
    RequestListFilters,
    RequestRead,
    RequestUpdate,
)
from app.business.requests.sla import calculate_sla_status, derive_due_date
from app.core.config import get_settings
from app.core.errors import DomainValidationError, InvalidTransitionError, NotFoundError, PermissionDeniedError
from app.events import publish
from app.metrics import observe_request_transition
from app.otel import set_span_attributes
from app.platform.repository import Predicate
from app.platform.security import AuthContext, can_access_company
from app.services.audit import list_audit_logs, write_audit_log


logger = logging.getLogger("app.requests")
tracer = trace.get_tracer("app.requests.service")

VALID_REQUEST_TRANSITIONS: dict[str, set[str]] = {
    "queue": {"active", "done"},
    "active": {"review", "queue"},
    "review": {"done", "active"},
    "done": {"queue"},
}
ACTIVATE_PERMISSION = "requests.activate"
CLIENT_TRANSITIONS = {("review", "done")}
CLIENT_EDITABLE_FIELDS = {"title", "description"}

MENTION_RE = re.compile(r"@([A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,})")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _assert_transition(current: str, target: str) -> None:
    if target not in VALID_REQUEST_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(current, target)


class RequestService:
    entity_type = "request"

    def __init__(
        self,
        admission: AdmissionController | None = None,
        dispatcher: NotificationDispatcher | None = None,
    ) -> None:
        self.repository = RequestRepository()
        self.comment_repository = RequestCommentRepository()
        self.company_repository = CompanyRepository()
        self.profile_repository = UserProfileRepository()
        self.admission = admission or admission_controller
        self.dispatcher = dispatcher or notification_dispatcher

    def create_request(self, session: Session, ctx: AuthContext, payload: RequestCreate) -> RequestRead:
        company = self._resolve_target_company(session, ctx, payload.company_id)
        if not ctx.is_staff and company.status != "active":
            raise PermissionDeniedError("company is not active")

        now = utcnow()
        due_date = payload.due_date or derive_due_date(now, payload.sla_hours)
        request = Request(
            company_id=company.id,
            title=payload.title.strip(),
            description=payload.description,
            status="queue",
            priority=payload.priority,
            due_date=due_date,
            sla_hours=payload.sla_hours,
            created_by=ctx.user_id,
            created_at=now,
            updated_at=now,
        )
        request.sla_status = calculate_sla_status(now, payload.sla_hours, due_date, None, now)
        self.repository.add(session, request)
        write_audit_log(
            session,
            ctx.user_id,
            "request.created",
            self.entity_type,
            request.id,
            company_id=company.id,
            metadata={"title": request.title, "priority": request.priority},
            correlation_id=ctx.correlation_id,
        )
        session.commit()
        session.refresh(request)

        logger.info("request.created", extra={"request_id": str(request.id), "company_id": str(company.id)})
        publish(self._event("requests.created", request, ctx, {"priority": request.priority}))
        return self.to_read(request)

    def list_requests(self, session: Session, ctx: AuthContext, filters: RequestListFilters) -> list[RequestRead]:
        predicates: list[Predicate] = []
        if filters.status is not None:
            predicates.append(Predicate("status", "eq", filters.status))
        if filters.priority is not None:
            predicates.append(Predicate("priority", "eq", filters.priority))
        if filters.company_id is not None:
            predicates.append(Predicate("company_id", "eq", filters.company_id))
        if filters.assigned_to is not None:
            predicates.append(Predicate("assigned_to", "eq", filters.assigned_to))
        if not filters.include_archived:
            predicates.append(Predicate("archived_at", "is_null", True))

        rows = self.repository.find(
            session,
            predicates,
            ctx=ctx,
            order_by=["-created_at"],
            limit=filters.limit,
            offset=filters.offset,
        )
        now = utcnow()
        return [self.to_read(row, now) for row in rows]

    def get_request(self, session: Session, ctx: AuthContext, request_id: uuid.UUID) -> RequestRead:
        return self.to_read(self._load_request(session, ctx, request_id))

    def update_request(
        self,
        session: Session,
        ctx: AuthContext,
        request_id: uuid.UUID,
        payload: RequestUpdate,
    ) -> RequestRead:
        request = self._load_request(session, ctx, request_id)
        changes = payload.model_dump(exclude_unset=True)
        if not changes:
            return self.to_read(request)
        if "title" in changes and changes["title"] is None:
            raise DomainValidationError("title cannot be empty")
        if "priority" in changes and changes["priority"] is None:
            raise DomainValidationError("priority cannot be empty")
        if not ctx.is_staff and set(changes) - CLIENT_EDITABLE_FIELDS:
            raise PermissionDeniedError("only title and description can be edited")
        if changes.get("sla_hours") is not None and "due_date" not in changes:
            changes["due_date"] = derive_due_date(request.created_at, changes["sla_hours"])

        before = {field_name: getattr(request, field_name) for field_name in changes}
        now = utcnow()
        try:
            self.repository.update(session, request, changes)
            request.sla_status = calculate_sla_status(
                request.created_at, request.sla_hours, request.due_date, request.completed_at, now
            )
            write_audit_log(
                session,
                ctx.user_id,
                "request.updated",
                self.entity_type,
                request.id,
                company_id=request.company_id,
                metadata=jsonable_encoder({"before": before, "after": changes}),
                correlation_id=ctx.correlation_id,
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        session.refresh(request)
        return self.to_read(request, now)

    def change_priority(self, session: Session, ctx: AuthContext, request_id: uuid.UUID, priority: str) -> RequestRead:
        if priority not in {"low", "normal", "high"}:
            raise DomainValidationError(f"unknown priority '{priority}'")
        if not ctx.is_staff:
            raise PermissionDeniedError("only staff can change priority")
        request = self._load_request(session, ctx, request_id)
        if request.priority == priority:
            return self.to_read(request)

        previous = request.priority
        request.priority = priority
        write_audit_log(
            session,
            ctx.user_id,
            "request.priority_changed",
            self.entity_type,
            request.id,
            company_id=request.company_id,
            metadata={"from": previous, "to": priority},
            correlation_id=ctx.correlation_id,
        )
        session.commit()
        session.refresh(request)
        return self.to_read(request)

    def transition(self, session: Session, ctx: AuthContext, request_id: uuid.UUID, target: str) -> RequestRead:
        """Move a request through the status table.

        The admission check and the status write happen in one transaction while both the
        in-process company lock and the company row lock are held. Events go out after commit.
        """
        with tracer.start_as_current_span("requests.transition") as span:
            request = self._load_request(session, ctx, request_id)
            current = request.status
            set_span_attributes(span, request_id=str(request.id), from_status=current, to_status=target)
            _assert_transition(current, target)
            self._check_transition_permission(ctx, current, target)

            company_id = request.company_id
            with company_locks.hold(company_id):
                try:
                    company = self.company_repository.get(session, company_id, for_update=True)
                    request = self.repository.get(session, request_id, for_update=True)
                    if company is None or request is None:
                        raise NotFoundError("request not found")
                    current = request.status
                    _assert_transition(current, target)
                    self._check_transition_permission(ctx, current, target)
                    if target == "active":
                        self.admission.ensure_can_activate(session, company)

                    now = utcnow()
                    request.status = target
                    request.completed_at = now if target == "done" else None
                    request.updated_at = now
                    request.sla_status = calculate_sla_status(
                        request.created_at, request.sla_hours, request.due_date, request.completed_at, now
                    )
                    write_audit_log(
                        session,
                        ctx.user_id,
                        "request.status_changed",
                        self.entity_type,
                        request.id,
                        company_id=company_id,
                        metadata={"from": current, "to": target},
                        correlation_id=ctx.correlation_id,
                    )
                    session.commit()
                except Exception:
                    session.rollback()
                    raise

            session.refresh(request)
            observe_request_transition(current, target)
            logger.info(
                "request.status_changed",
                extra={
                    "request_id": str(request.id),
                    "company_id": str(company_id),
                    "from_status": current,
                    "to_status": target,
                },
            )

            title = f"Request moved to {target}"
            self.notify(
                session,
                request,
                "status_change",
                title,
                f'"{request.title}" moved from {current} to {target}.',
                exclude_user_id=ctx.user_id,
            )
            session.commit()

            publish(
                self._event(
                    "requests.status_changed",
                    request,
                    ctx,
                    {"from_status": current, "to_status": target},
                )
            )
            return self.to_read(request)

    def assign(
        self,
        session: Session,
        ctx: AuthContext,
        request_id: uuid.UUID,
        user_id: uuid.UUID | None,
    ) -> RequestRead:
        if not ctx.is_staff:
            raise PermissionDeniedError("only staff can assign requests")
        request = self._load_request(session, ctx, request_id)
        if user_id is not None:
            assignee = self.profile_repository.get(session, user_id)
            if assignee is None:
                raise NotFoundError("assignee not found")
            if assignee.role != "admin":
                raise DomainValidationError("requests can only be assigned to admins")
        if request.assigned_to == user_id:
            return self.to_read(request)

        previous = request.assigned_to
        request.assigned_to = user_id
        write_audit_log(
            session,
            ctx.user_id,
            "request.assigned",
            self.entity_type,
            request.id,
            company_id=request.company_id,
            metadata={"from": str(previous) if previous else None, "to": str(user_id) if user_id else None},
            correlation_id=ctx.correlation_id,
        )
        session.commit()
        session.refresh(request)

        if user_id is not None and str(user_id) != ctx.user_id:
            assignee = self.profile_repository.get(session, user_id)
            link = self._link(request)
            title = "You were assigned a request"
            message = f'You are now responsible for "{request.title}".'
            self.dispatcher.dispatch(
                session,
                Recipient.from_profile(assignee),
                "assignment",
                title,
                message,
                link=link,
                request_id=request.id,
                company_id=request.company_id,
                email=EmailContent.render(f"[Pipeline] {title}", title, message, link),
            )
            session.commit()

        publish(
            self._event(
                "requests.assignment_changed",
                request,
                ctx,
                {
                    "from_user_id": str(previous) if previous else None,
                    "to_user_id": str(user_id) if user_id else None,
                },
            )
        )
        return self.to_read(request)

    def add_comment(
        self,
        session: Session,
        ctx: AuthContext,
        request_id: uuid.UUID,
        payload: CommentCreate,
    ) -> CommentRead:
        request = self._load_request(session, ctx, request_id)
        is_internal = payload.is_internal
        if not ctx.is_staff:
            company = self.company_repository.get(session, request.company_id)
            if company is None or company.status != "active":
                raise PermissionDeniedError("company is not active")
            is_internal = False

        comment = RequestComment(
            request_id=request.id,
            author_id=ctx.user_id,
            content=payload.content,
            is_internal=is_internal,
        )
        self.comment_repository.add(session, comment)
        write_audit_log(
            session,
            ctx.user_id,
            "request.comment_added",
            self.entity_type,
            request.id,
            company_id=request.company_id,
            metadata={"comment_id": str(comment.id), "is_internal": is_internal},
            correlation_id=ctx.correlation_id,
        )
        session.commit()
        session.refresh(comment)

        mentioned = self._mentioned_profiles(session, request, comment)
        mentioned_ids = {profile.id for profile in mentioned}
        snippet = comment.content if len(comment.content) <= 140 else f"{comment.content[:137]}..."
        self.notify(
            session,
            request,
            "comment",
            f"New comment on {request.title}",
            snippet,
            exclude_user_id=ctx.user_id,
            staff_only=is_internal,
            skip_ids=mentioned_ids,
        )
        link = self._link(request)
        for profile in mentioned:
            if str(profile.id) == ctx.user_id:
                continue
            title = f"You were mentioned on {request.title}"
            self.dispatcher.dispatch(
                session,
                Recipient.from_profile(profile),
                "mention",
                title,
                snippet,
                link=link,
                request_id=request.id,
                company_id=request.company_id,
                email=EmailContent.render(f"[Pipeline] {title}", title, snippet, link),
            )
        session.commit()

        publish(
            self._event(
                "requests.comment_added",
                request,
                ctx,
                {"comment_id": str(comment.id), "author_id": ctx.user_id, "is_internal": is_internal},
            )
        )
        return CommentRead.model_validate(comment)

    def list_comments(self, session: Session, ctx: AuthContext, request_id: uuid.UUID) -> list[CommentRead]:
        request = self._load_request(session, ctx, request_id)
        rows = self.comment_repository.list_for_request(session, request.id, include_internal=ctx.is_staff)
        return [CommentRead.model_validate(row) for row in rows]

    def archive_request(self, session: Session, ctx: AuthContext, request_id: uuid.UUID) -> RequestRead:
        if not ctx.is_staff:
            raise PermissionDeniedError("only staff can archive requests")
        request = self._load_request(session, ctx, request_id)
        if request.status != "done":
            raise DomainValidationError("only completed requests can be archived")
        if request.archived_at is None:
            self._archive(session, request, ctx.user_id, ctx.correlation_id)
            session.commit()
            session.refresh(request)
        return self.to_read(request)

    def archive_completed(self, session: Session, now: datetime | None = None, days: int | None = None) -> int:
        now = now or utcnow()
        days = get_settings().archive_after_days if days is None else days
        rows = self.repository.list_archivable(session, now - timedelta(days=days))
        for request in rows:
            self._archive(session, request, "system", None, now=now)
        session.commit()
        logger.info("request.archived_completed", extra={"count": len(rows)})
        return len(rows)

    def list_activity(self, session: Session, ctx: AuthContext, request_id: uuid.UUID) -> list[ActivityRead]:
        request = self._load_request(session, ctx, request_id)
        return [ActivityRead.model_validate(row) for row in list_audit_logs(session, self.entity_type, request.id)]

    def refresh_sla_statuses(self, session: Session, now: datetime | None = None) -> int:
        """Recompute stored SLA snapshots; newly breached requests notify and raise an event."""
        now = now or utcnow()
        changed = 0
        newly_breached: list[tuple[Request, str | None]] = []
        for request in self.repository.list_open_with_due_date(session):
            status_value = calculate_sla_status(
                request.created_at, request.sla_hours, request.due_date, request.completed_at, now
            )
            if status_value == request.sla_status:
                continue
            previous = request.sla_status
            request.sla_status = status_value
            changed += 1
            if status_value == "breached":
                newly_breached.append((request, previous))
        session.commit()

        system_ctx = AuthContext.system("sla-monitor")
        for request, previous in newly_breached:
            logger.info(
                "request.sla_breached",
                extra={"request_id": str(request.id), "company_id": str(request.company_id)},
            )
            self.notify(
                session,
                request,
                "sla_breach",
                f"SLA breached: {request.title}",
                f'"{request.title}" is past its due date.',
            )
            session.commit()
            publish(self._event("requests.sla_breached", request, system_ctx, {"previous_sla_status": previous}))
        return changed

    def notify(
        self,
        session: Session,
        request: Request,
        notification_type: str,
        title: str,
        message: str,
        *,
        email: bool = True,
        exclude_user_id: str | None = None,
        staff_only: bool = False,
        extra_ids: Iterable[uuid.UUID] = (),
        skip_ids: Iterable[uuid.UUID] = (),
    ) -> list[DispatchResult]:
        """Dispatch to the assignee, the company's admins and ``extra_ids``; the caller commits."""
        skipped = set(skip_ids)
        link = self._link(request)
        content = EmailContent.render(f"[Pipeline] {title}", title, message, link) if email else None
        results: list[DispatchResult] = []
        for profile in self.recipients_for(session, request, extra_ids):
            if profile.id in skipped or str(profile.id) == exclude_user_id:
                continue
            if staff_only and profile.company_id is not None:
                continue
            results.append(
                self.dispatcher.dispatch(
                    session,
                    Recipient.from_profile(profile),
                    notification_type,
                    title,
                    message,
                    link=link,
                    request_id=request.id,
                    company_id=request.company_id,
                    email=content,
                )
            )
        return results

    def recipients_for(
        self,
        session: Session,
        request: Request,
        extra_ids: Iterable[uuid.UUID] = (),
    ) -> list[UserProfile]:
        return self.profile_repository.find_request_recipients(
            session, request.company_id, request.assigned_to, extra_ids
        )

    def load_for_system(self, session: Session, request_id: uuid.UUID) -> Request:
        request = self.repository.get(session, request_id)
        if request is None:
            raise NotFoundError("request not found")
        return request

    def _archive(
        self,
        session: Session,
        request: Request,
        actor_id: str,
        correlation_id: str | None,
        *,
        now: datetime | None = None,
    ) -> None:
        request.archived_at = now or utcnow()
        write_audit_log(
            session,
            actor_id,
            "request.archived",
            self.entity_type,
            request.id,
            company_id=request.company_id,
            correlation_id=correlation_id,
        )

    def _resolve_target_company(self, session: Session, ctx: AuthContext, requested: uuid.UUID | None) -> Company:
        if ctx.is_staff:
            company_id = requested or ctx.company_id
            if company_id is None:
                raise DomainValidationError("company_id is required")
        else:
            if ctx.company_id is None:
                raise PermissionDeniedError("caller is not attached to a company")
            if requested is not None and requested != ctx.company_id:
                raise PermissionDeniedError("cannot create requests for another company")
            company_id = ctx.company_id

        company = self.company_repository.get(session, company_id)
        if company is None or not can_access_company(ctx, company.id):
            raise NotFoundError("company not found")
        return company

    def _load_request(self, session: Session, ctx: AuthContext, request_id: uuid.UUID) -> Request:
        request = self.repository.get(session, request_id, ctx)
        if request is None:
            raise NotFoundError("request not found")
        return request

    @staticmethod
    def _check_transition_permission(ctx: AuthContext, current: str, target: str) -> None:
        if not ctx.is_staff and (current, target) not in CLIENT_TRANSITIONS:
            raise PermissionDeniedError("clients can only approve requests in review")
        if target == "active" and not ctx.has(ACTIVATE_PERMISSION):
            raise PermissionDeniedError(f"Missing permission: {ACTIVATE_PERMISSION}")

    def _mentioned_profiles(self, session: Session, request: Request, comment: RequestComment) -> list[UserProfile]:
        emails = MENTION_RE.findall(comment.content)
        if not emails:
            return []
        profiles = self.profile_repository.find_by_emails(session, emails, company_id=request.company_id)
        if comment.is_internal:
            profiles = [profile for profile in profiles if profile.company_id is None]
        return profiles

    @staticmethod
    def _link(request: Request) -> str:
        return f"{get_settings().app_base_url.rstrip('/')}/requests/{request.id}"

    @staticmethod
    def _event(event_type: str, request: Request, ctx: AuthContext, payload: dict[str, Any]) -> dict[str, Any]:
        return {
            "event_type": event_type,
            "request_id": str(request.id),
            "company_id": str(request.company_id),
            "actor_user_id": ctx.user_id,
            "payload": payload,
            "correlation_id": ctx.correlation_id,
            "occurred_at": utcnow().isoformat(),
        }

    @staticmethod
    def to_read(request: Request, now: datetime | None = None) -> RequestRead:
        read = RequestRead.model_validate(request)
        read.sla_status = calculate_sla_status(
            request.created_at, request.sla_hours, request.due_date, request.completed_at, now or utcnow()
        )
        return read


request_service = RequestService()
