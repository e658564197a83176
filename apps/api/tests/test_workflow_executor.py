from __future__ import annotations

import json
import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.business.companies.models import Company, UserProfile
from app.business.notifications.email import EmailMessage, RecordingEmailClient
from app.business.notifications.models import EmailDigestItem, Notification
from app.business.notifications.schemas import PreferencesUpdate
from app.business.notifications.service import NotificationDispatcher
from app.business.requests.admission import company_locks
from app.business.requests.models import Request
from app.business.requests.service import RequestService
from app.business.workflows.events import WorkflowEvent
from app.business.workflows.executor import ActionExecutor, render_template
from app.business.workflows.models import WorkflowExecution, WorkflowRule, WorkflowTriggerMarker
from app.business.workflows.service import WorkflowAutomationService
from app.business.workflows.webhook import SIGNATURE_HEADER, TIMESTAMP_HEADER, WebhookClient, verify_signature
from app.core.config import get_settings
from app.core.database import Base
from app.core.errors import DeliveryError
from app.core.events import InProcessEventBus
from app.platform.security import AuthContext


STAFF = AuthContext(user_id="staff-1", permissions=["requests.manage", "requests.activate"], correlation_id="wf-corr")


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def bus(monkeypatch: pytest.MonkeyPatch) -> InProcessEventBus:
    bus = InProcessEventBus()
    monkeypatch.setattr("app.events.event_bus", bus)
    return bus


@pytest.fixture(autouse=True)
def setup_env(bus: InProcessEventBus) -> Generator[None, None, None]:
    get_settings.cache_clear()
    company_locks.reset()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    company_locks.reset()
    events.published_events.clear()


@pytest.fixture()
def webhook_calls() -> list[httpx.Request]:
    return []


@pytest.fixture()
def webhook_status() -> dict[str, int]:
    return {"code": 200}


@pytest.fixture()
def requests_service() -> RequestService:
    return RequestService(dispatcher=NotificationDispatcher(email_client=RecordingEmailClient()))


@pytest.fixture()
def automation(
    requests_service: RequestService,
    webhook_calls: list[httpx.Request],
    webhook_status: dict[str, int],
) -> WorkflowAutomationService:
    def handler(request: httpx.Request) -> httpx.Response:
        webhook_calls.append(request)
        return httpx.Response(webhook_status["code"], json={"ok": webhook_status["code"] < 300})

    executor = ActionExecutor(
        requests=requests_service,
        webhook_client=WebhookClient(timeout=2.0, transport=httpx.MockTransport(handler)),
    )
    return WorkflowAutomationService(executor=executor)


@pytest.fixture()
def wired(
    bus: InProcessEventBus,
    db_session: Session,
    automation: WorkflowAutomationService,
) -> WorkflowAutomationService:
    def on_event(event) -> None:  # type: ignore[no-untyped-def]
        automation.handle_event(db_session, event.payload)

    for event_name in (
        "requests.status_changed",
        "requests.comment_added",
        "requests.assignment_changed",
        "requests.sla_breached",
    ):
        bus.subscribe(event_name, on_event)
    return automation


@pytest.fixture()
def company(db_session: Session) -> Company:
    company = Company(name="Acme Studio", plan_tier="pro")
    db_session.add(company)
    db_session.commit()
    return company


@pytest.fixture()
def admin(db_session: Session, company: Company) -> UserProfile:
    profile = UserProfile(email="owner@acme.io", role="admin", company_id=company.id)
    db_session.add(profile)
    db_session.commit()
    return profile


def _request(session: Session, company: Company, status: str = "queue", **values: object) -> Request:
    request = Request(company_id=company.id, title="Landing page", status=status, created_by="staff-1", **values)
    session.add(request)
    session.commit()
    return request


def _rule(session: Session, trigger_type: str, conditions: dict, actions: list[dict], **values: object) -> WorkflowRule:
    rule = WorkflowRule(
        name=str(values.pop("name", "rule")),
        trigger_type=trigger_type,
        trigger_conditions={"type": trigger_type, **conditions},
        actions=actions,
        created_by="staff-1",
        **values,
    )
    session.add(rule)
    session.commit()
    return rule


def _executions(session: Session, rule: WorkflowRule) -> list[WorkflowExecution]:
    return list(session.scalars(select(WorkflowExecution).where(WorkflowExecution.rule_id == rule.id)))


def test_render_template_keeps_unknown_placeholders() -> None:
    rendered = render_template("{request_title} is {status} ({unknown})", {"request_title": "Logo", "status": "done"})

    assert rendered == "Logo is done ({unknown})"


def test_status_change_rule_updates_priority(
    db_session: Session,
    company: Company,
    requests_service: RequestService,
    wired: WorkflowAutomationService,
) -> None:
    rule = _rule(db_session, "status_change", {"to_status": "active"}, [{"type": "change_priority", "priority": "high"}])
    request = _request(db_session, company)

    requests_service.transition(db_session, STAFF, request.id, "active")

    db_session.refresh(request)
    assert request.priority == "high"
    (execution,) = _executions(db_session, rule)
    assert execution.status == "success"
    assert execution.correlation_id == "wf-corr"
    assert execution.action_results[0]["detail"] == {"priority": "high"}
    db_session.refresh(rule)
    assert rule.execution_count == 1
    assert rule.last_executed_at is not None


def test_notify_action_renders_template(
    db_session: Session,
    company: Company,
    admin: UserProfile,
    requests_service: RequestService,
    wired: WorkflowAutomationService,
) -> None:
    _rule(
        db_session,
        "status_change",
        {"to_status": "review"},
        [{"type": "notify", "title": "Ready: {request_title}", "message": "{company_name} moved it to {to_status}"}],
    )
    request = _request(db_session, company, "active")

    requests_service.transition(db_session, STAFF, request.id, "review")

    notes = db_session.scalars(
        select(Notification).where(Notification.user_id == str(admin.id), Notification.title.like("Ready:%"))
    ).all()
    assert len(notes) == 1
    assert notes[0].title == "Ready: Landing page"
    assert notes[0].message == "Acme Studio moved it to review"
    assert notes[0].type == "status_change"


def test_webhook_is_signed_and_carries_rule(
    db_session: Session,
    company: Company,
    requests_service: RequestService,
    wired: WorkflowAutomationService,
    webhook_calls: list[httpx.Request],
) -> None:
    rule = _rule(
        db_session,
        "status_change",
        {"to_status": "done"},
        [{"type": "webhook", "url": "https://hooks.example.com/pipeline", "secret": "s3cret", "headers": {"X-Env": "test"}}],
    )
    request = _request(db_session, company, "review")

    requests_service.transition(db_session, STAFF, request.id, "done")

    (call,) = webhook_calls
    body = call.content
    assert verify_signature("s3cret", call.headers[TIMESTAMP_HEADER], body, call.headers[SIGNATURE_HEADER])
    assert call.headers["X-Env"] == "test"
    payload = json.loads(body)
    assert payload["rule_id"] == str(rule.id)
    assert payload["event"]["event_type"] == "requests.status_changed"
    assert payload["request"]["status"] == "done"
    assert _executions(db_session, rule)[0].status == "success"


def test_failed_action_keeps_transition_and_later_actions(
    db_session: Session,
    company: Company,
    requests_service: RequestService,
    wired: WorkflowAutomationService,
    webhook_status: dict[str, int],
) -> None:
    webhook_status["code"] = 500
    rule = _rule(
        db_session,
        "status_change",
        {"to_status": "active"},
        [
            {"type": "webhook", "url": "https://hooks.example.com/fail"},
            {"type": "change_priority", "priority": "low"},
        ],
    )
    request = _request(db_session, company)

    moved = requests_service.transition(db_session, STAFF, request.id, "active")

    assert moved.status == "active"
    db_session.refresh(request)
    assert request.status == "active"
    assert request.priority == "low"
    (execution,) = _executions(db_session, rule)
    assert execution.status == "failed"
    assert execution.error == "webhook returned 500"
    assert [result["status"] for result in execution.action_results] == ["failed", "success"]


def test_webhook_timeout_is_recorded(
    db_session: Session,
    company: Company,
    requests_service: RequestService,
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    executor = ActionExecutor(
        requests=requests_service,
        webhook_client=WebhookClient(timeout=0.5, transport=httpx.MockTransport(handler)),
    )
    rule = _rule(db_session, "sla_breach", {}, [{"type": "webhook", "url": "https://hooks.example.com/slow"}])
    request = _request(db_session, company, "active")
    event = WorkflowEvent(
        event_id="evt-timeout",
        event_type="requests.sla_breached",
        trigger_type="sla_breach",
        request_id=request.id,
        company_id=company.id,
    )

    execution = executor.execute(db_session, rule, event)

    assert execution is not None
    assert execution.status == "failed"
    assert execution.error == "webhook timed out after 0.5s"


def test_actions_beyond_cap_are_skipped(
    monkeypatch: pytest.MonkeyPatch,
    db_session: Session,
    company: Company,
    automation: WorkflowAutomationService,
) -> None:
    monkeypatch.setenv("WORKFLOW_MAX_ACTIONS", "1")
    get_settings.cache_clear()
    rule = _rule(
        db_session,
        "sla_breach",
        {},
        [{"type": "change_priority", "priority": "high"}, {"type": "change_status", "status": "done"}],
    )
    request = _request(db_session, company, "active")
    event = WorkflowEvent(
        event_id="evt-cap",
        event_type="requests.sla_breached",
        trigger_type="sla_breach",
        request_id=request.id,
        company_id=company.id,
    )

    execution = automation.executor.execute(db_session, rule, event)

    assert execution is not None
    assert execution.status == "success"
    assert execution.action_results[1] == {
        "index": 1,
        "type": "change_status",
        "status": "skipped",
        "error": "max actions exceeded",
        "detail": {},
    }
    db_session.refresh(request)
    assert request.status == "active"


def test_noop_actions_are_skipped(
    db_session: Session,
    company: Company,
    automation: WorkflowAutomationService,
) -> None:
    rule = _rule(db_session, "sla_breach", {}, [{"type": "change_priority", "priority": "normal"}])
    request = _request(db_session, company, "active")
    event = WorkflowEvent(
        event_id="evt-noop",
        event_type="requests.sla_breached",
        trigger_type="sla_breach",
        request_id=request.id,
        company_id=company.id,
    )

    execution = automation.executor.execute(db_session, rule, event)

    assert execution is not None
    assert execution.status == "skipped"


def test_same_event_runs_a_rule_once(
    db_session: Session,
    company: Company,
    automation: WorkflowAutomationService,
) -> None:
    rule = _rule(db_session, "status_change", {}, [{"type": "change_priority", "priority": "high"}])
    request = _request(db_session, company, "active")
    envelope = {
        "event_id": "evt-dup",
        "event_type": "requests.status_changed",
        "request_id": str(request.id),
        "company_id": str(company.id),
        "payload": {"from_status": "queue", "to_status": "active"},
    }

    first = automation.handle_event(db_session, envelope)
    second = automation.handle_event(db_session, envelope)

    assert len(first) == 1
    assert second == []
    assert len(_executions(db_session, rule)) == 1


def test_workflow_transition_does_not_cascade(
    db_session: Session,
    company: Company,
    requests_service: RequestService,
    wired: WorkflowAutomationService,
) -> None:
    start = _rule(
        db_session,
        "status_change",
        {"to_status": "active"},
        [{"type": "change_status", "status": "review"}],
        name="auto review",
    )
    follow_up = _rule(
        db_session,
        "status_change",
        {"to_status": "review"},
        [{"type": "change_priority", "priority": "high"}],
        name="escalate review",
    )
    request = _request(db_session, company)

    requests_service.transition(db_session, STAFF, request.id, "active")

    db_session.refresh(request)
    assert request.status == "review"
    assert request.priority == "normal"
    assert len(_executions(db_session, start)) == 1
    assert _executions(db_session, follow_up) == []
    nested = [envelope for envelope in events.published_events if envelope["payload"].get("to_status") == "review"]
    assert nested[0]["meta"]["workflow_depth"] == 1
    assert nested[0]["meta"]["origin_rule_ids"] == [str(start.id)]


def test_due_date_tick_fires_once_per_due_date(
    db_session: Session,
    company: Company,
    admin: UserProfile,
    automation: WorkflowAutomationService,
) -> None:
    now = datetime(2026, 5, 4, 12, 0, tzinfo=timezone.utc)
    rule = _rule(
        db_session,
        "due_date_approaching",
        {"hours_before": 24},
        [{"type": "notify", "message": "{request_title} is due soon"}],
    )
    request = _request(db_session, company, "active", due_date=now + timedelta(hours=6))

    assert automation.run_due_date_tick(db_session, now) == 1
    assert automation.run_due_date_tick(db_session, now + timedelta(hours=1)) == 0

    request.due_date = now + timedelta(hours=12)
    db_session.commit()
    assert automation.run_due_date_tick(db_session, now + timedelta(hours=2)) == 1

    executions = _executions(db_session, rule)
    assert len(executions) == 2
    assert {execution.event_id for execution in executions} == {
        f"due_date:{request.id}:{(now + timedelta(hours=6)).isoformat()}:1",
        f"due_date:{request.id}:{(now + timedelta(hours=12)).isoformat()}:2",
    }
    marker = db_session.scalar(select(WorkflowTriggerMarker).where(WorkflowTriggerMarker.rule_id == rule.id))
    assert marker is not None
    due_notes = db_session.scalars(select(Notification).where(Notification.type == "due_date")).all()
    assert [note.user_id for note in due_notes] == [str(admin.id), str(admin.id)]


def test_rule_for_another_company_is_ignored(
    db_session: Session,
    company: Company,
    automation: WorkflowAutomationService,
) -> None:
    other = Company(name="Other Co")
    db_session.add(other)
    db_session.commit()
    rule = _rule(
        db_session,
        "status_change",
        {},
        [{"type": "change_priority", "priority": "high"}],
        company_id=other.id,
    )
    request = _request(db_session, company, "active")

    executions = automation.handle_event(
        db_session,
        {
            "event_id": str(uuid.uuid4()),
            "event_type": "requests.status_changed",
            "request_id": str(request.id),
            "company_id": str(company.id),
            "payload": {"from_status": "queue", "to_status": "active"},
        },
    )

    assert executions == []
    assert _executions(db_session, rule) == []


def test_due_date_reverted_to_earlier_value_records_each_crossing(
    db_session: Session,
    company: Company,
    admin: UserProfile,
    automation: WorkflowAutomationService,
) -> None:
    now = datetime(2026, 5, 4, 12, 0, tzinfo=timezone.utc)
    first_due = now + timedelta(hours=6)
    rule = _rule(
        db_session,
        "due_date_approaching",
        {"hours_before": 24},
        [{"type": "notify", "message": "{request_title} is due soon"}],
    )
    request = _request(db_session, company, "active", due_date=first_due)

    assert automation.run_due_date_tick(db_session, now) == 1
    request.due_date = now + timedelta(hours=12)
    db_session.commit()
    assert automation.run_due_date_tick(db_session, now + timedelta(hours=1)) == 1
    request.due_date = first_due
    db_session.commit()
    assert automation.run_due_date_tick(db_session, now + timedelta(hours=2)) == 1

    executions = _executions(db_session, rule)
    assert sorted(execution.event_id for execution in executions) == sorted(
        [
            f"due_date:{request.id}:{first_due.isoformat()}:1",
            f"due_date:{request.id}:{(now + timedelta(hours=12)).isoformat()}:2",
            f"due_date:{request.id}:{first_due.isoformat()}:3",
        ]
    )
    db_session.refresh(rule)
    assert rule.execution_count == 3
    due_notes = db_session.scalars(select(Notification).where(Notification.type == "due_date")).all()
    assert len(due_notes) == 3


def test_repeated_event_runs_no_actions(
    db_session: Session,
    company: Company,
    admin: UserProfile,
    automation: WorkflowAutomationService,
) -> None:
    rule = _rule(db_session, "sla_breach", {}, [{"type": "notify", "message": "{request_title} breached"}])
    request = _request(db_session, company, "active")
    event = WorkflowEvent(
        event_id="evt-repeat",
        event_type="requests.sla_breached",
        trigger_type="sla_breach",
        request_id=request.id,
        company_id=company.id,
    )

    assert automation.executor.execute(db_session, rule, event) is not None
    assert automation.executor.execute(db_session, rule, event) is None

    assert len(_executions(db_session, rule)) == 1
    assert len(db_session.scalars(select(Notification)).all()) == 1


def _status_event(request: Request, company: Company) -> WorkflowEvent:
    return WorkflowEvent(
        event_id=str(uuid.uuid4()),
        event_type="requests.status_changed",
        trigger_type="status_change",
        request_id=request.id,
        company_id=company.id,
        payload={"from_status": "queue", "to_status": "active"},
    )


SEND_EMAIL = [{"type": "send_email", "message": "{request_title} is now {status}."}]


def test_send_email_respects_disabled_preference(
    db_session: Session,
    company: Company,
    admin: UserProfile,
    requests_service: RequestService,
    automation: WorkflowAutomationService,
) -> None:
    requests_service.dispatcher.update_preferences(
        db_session, str(admin.id), PreferencesUpdate(email_on_status_change=False)
    )
    rule = _rule(db_session, "status_change", {}, SEND_EMAIL)
    request = _request(db_session, company, "active")

    execution = automation.executor.execute(db_session, rule, _status_event(request, company))

    assert execution is not None
    assert execution.status == "success"
    assert execution.action_results[0]["detail"] == {"outcomes": {"suppressed": 1}}
    assert requests_service.dispatcher.email_client.sent == []
    (note,) = db_session.scalars(select(Notification).where(Notification.user_id == str(admin.id))).all()
    assert note.title == "[Pipeline] Update on Landing page"
    assert note.message == "Landing page is now active."


def test_send_email_defers_for_digest_users(
    db_session: Session,
    company: Company,
    admin: UserProfile,
    requests_service: RequestService,
    automation: WorkflowAutomationService,
) -> None:
    requests_service.dispatcher.update_preferences(
        db_session, str(admin.id), PreferencesUpdate(email_digest_enabled=True)
    )
    rule = _rule(db_session, "status_change", {}, SEND_EMAIL)
    request = _request(db_session, company, "active")

    execution = automation.executor.execute(db_session, rule, _status_event(request, company))

    assert execution is not None
    assert execution.action_results[0]["detail"] == {"outcomes": {"deferred": 1}}
    assert requests_service.dispatcher.email_client.sent == []
    (item,) = db_session.scalars(select(EmailDigestItem)).all()
    assert item.user_id == str(admin.id)
    assert item.sent_at is None


class FailingEmailClient:
    def send(self, message: EmailMessage) -> None:
        raise DeliveryError("email provider returned 503")


def test_send_email_delivery_failure_keeps_transition(
    bus: InProcessEventBus,
    db_session: Session,
    company: Company,
    admin: UserProfile,
) -> None:
    failing = RequestService(dispatcher=NotificationDispatcher(email_client=FailingEmailClient()))
    automation = WorkflowAutomationService(executor=ActionExecutor(requests=failing))
    bus.subscribe("requests.status_changed", lambda event: automation.handle_event(db_session, event.payload))
    rule = _rule(db_session, "status_change", {"to_status": "active"}, SEND_EMAIL)
    request = _request(db_session, company)

    moved = failing.transition(db_session, STAFF, request.id, "active")

    assert moved.status == "active"
    db_session.refresh(request)
    assert request.status == "active"
    (execution,) = _executions(db_session, rule)
    assert execution.status == "failed"
    assert execution.error == "1 of 1 emails failed"
    assert execution.action_results[0]["status"] == "failed"
