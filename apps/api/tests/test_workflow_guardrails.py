from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.business.notifications.email import RecordingEmailClient
from app.business.notifications.service import notification_dispatcher
from app.business.requests.admission import company_locks
from app.business.workflows.models import WorkflowExecution
from app.business.workflows.service import WorkflowAutomationService
from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.models.audit import AuditLog


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


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("AUTO_RUN_WORKFLOW_JOBS", "true")
    monkeypatch.setenv("WORKFLOW_MAX_DEPTH", "1")
    monkeypatch.setattr(notification_dispatcher, "email_client", RecordingEmailClient())
    get_settings.cache_clear()
    company_locks.reset()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    company_locks.reset()
    events.published_events.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    actors = {
        "admin": AuthUser(
            sub="admin-1",
            roles=["requests.manage", "requests.activate", "companies.manage", "workflows.manage"],
        ),
        "coordinator": AuthUser(sub="coordinator-1", roles=["requests.manage", "requests.activate"]),
    }
    state = {"current": "admin"}

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _create_rule(test_client: TestClient, body: dict[str, object]) -> dict[str, object]:
    response = test_client.post("/api/workflows", json=body)
    assert response.status_code == 201
    return response.json()


def _create_request(test_client: TestClient) -> dict[str, object]:
    company = test_client.post("/api/companies", json={"name": "Guardrail Co", "plan_tier": "pro"})
    assert company.status_code == 201
    request = test_client.post(
        "/api/requests",
        json={"title": "Guardrail request", "company_id": company.json()["id"]},
        headers={"X-Correlation-Id": "wf-guardrails-corr"},
    )
    assert request.status_code == 201
    return request.json()


def _rule_chain(test_client: TestClient) -> tuple[dict[str, object], dict[str, object]]:
    start = _create_rule(
        test_client,
        {
            "name": "Auto review",
            "trigger_type": "status_change",
            "trigger_conditions": {"to_status": "active"},
            "actions": [{"type": "change_status", "status": "review"}],
        },
    )
    follow_up = _create_rule(
        test_client,
        {
            "name": "Escalate review",
            "trigger_type": "status_change",
            "trigger_conditions": {"from_status": "active", "to_status": "review"},
            "actions": [{"type": "change_priority", "priority": "high"}],
        },
    )
    return start, follow_up


def test_guardrail_max_depth_blocks_nested_rules(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    test_client, set_actor = client
    caplog.set_level(logging.INFO)
    start, follow_up = _rule_chain(test_client)
    request = _create_request(test_client)

    set_actor("coordinator")
    moved = test_client.post(
        f"/api/requests/{request['id']}/move",
        json={"status": "active"},
        headers={"X-Correlation-Id": "wf-guardrails-corr"},
    )
    assert moved.status_code == 200

    current = test_client.get(f"/api/requests/{request['id']}").json()
    assert current["status"] == "review"
    assert current["priority"] == "normal"

    executed_rules = {str(row.rule_id) for row in db_session.scalars(select(WorkflowExecution))}
    assert executed_rules == {start["id"]}
    assert follow_up["id"] not in executed_rules

    blocked = db_session.scalar(select(AuditLog).where(AuditLog.action == "workflow.blocked"))
    assert blocked is not None
    assert blocked.event_metadata["reason"] == "MAX_DEPTH"
    assert blocked.event_metadata["workflow_depth"] == 1
    assert blocked.correlation_id == "wf-guardrails-corr"

    assert any(
        record.getMessage() == "workflow_guardrail_blocked"
        and getattr(record, "reason", None) == "MAX_DEPTH"
        and getattr(record, "correlation_id", None) == "wf-guardrails-corr"
        for record in caplog.records
    )


def test_deeper_limit_lets_follow_up_rule_run(
    monkeypatch: pytest.MonkeyPatch,
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    monkeypatch.setenv("WORKFLOW_MAX_DEPTH", "2")
    get_settings.cache_clear()
    test_client, _ = client
    start, follow_up = _rule_chain(test_client)
    request = _create_request(test_client)

    moved = test_client.post(f"/api/requests/{request['id']}/move", json={"status": "active"})
    assert moved.status_code == 200

    current = test_client.get(f"/api/requests/{request['id']}").json()
    assert current["status"] == "review"
    assert current["priority"] == "high"
    executed_rules = {str(row.rule_id) for row in db_session.scalars(select(WorkflowExecution))}
    assert executed_rules == {start["id"], follow_up["id"]}


def test_rule_never_retriggers_itself(
    monkeypatch: pytest.MonkeyPatch,
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    monkeypatch.setenv("WORKFLOW_MAX_DEPTH", "5")
    get_settings.cache_clear()
    test_client, _ = client
    bounce = _create_rule(
        test_client,
        {
            "name": "Bounce",
            "trigger_type": "status_change",
            "trigger_conditions": {},
            "actions": [{"type": "change_priority", "priority": "high"}, {"type": "change_status", "status": "review"}],
        },
    )
    request = _create_request(test_client)

    moved = test_client.post(f"/api/requests/{request['id']}/move", json={"status": "active"})
    assert moved.status_code == 200

    executions = db_session.scalars(select(WorkflowExecution)).all()
    assert [str(row.rule_id) for row in executions] == [bounce["id"]]


def test_blocked_envelope_is_audited_without_running(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    _rule_chain(test_client)
    request = _create_request(test_client)

    executions = WorkflowAutomationService().handle_event(
        db_session,
        {
            "event_id": str(uuid.uuid4()),
            "event_type": "requests.status_changed",
            "request_id": request["id"],
            "company_id": request["company_id"],
            "actor_user_id": "admin-1",
            "payload": {"from_status": "queue", "to_status": "active"},
            "correlation_id": "wf-guardrails-manual",
            "meta": {"workflow_depth": get_settings().workflow_max_depth},
        },
    )

    assert executions == []
    assert db_session.scalars(select(WorkflowExecution)).all() == []
    blocked = db_session.scalar(select(AuditLog).where(AuditLog.action == "workflow.blocked"))
    assert blocked is not None
    assert blocked.correlation_id == "wf-guardrails-manual"
