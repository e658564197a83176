from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.business.notifications.email import RecordingEmailClient
from app.business.notifications.service import notification_dispatcher
from app.business.requests.admission import company_locks
from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app


STAFF_ROLES = ["requests.manage", "requests.activate", "companies.manage"]


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
def mailbox() -> RecordingEmailClient:
    return RecordingEmailClient()


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch, mailbox: RecordingEmailClient) -> Generator[None, None, None]:
    monkeypatch.setattr(notification_dispatcher, "email_client", mailbox)
    get_settings.cache_clear()
    company_locks.reset()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    company_locks.reset()
    events.published_events.clear()


@pytest.fixture()
def actor() -> AuthUser:
    return AuthUser(sub="staff-1", roles=list(STAFF_ROLES))


@pytest.fixture()
def client(db_session: Session, actor: AuthUser) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return actor

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[auth_get_current_user] = override_auth_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _seed(client: TestClient) -> tuple[dict, dict, dict]:
    company = client.post("/api/companies", json={"name": "Acme Studio"}).json()
    owner = client.post(
        f"/api/companies/{company['id']}/members",
        json={"email": "owner@acme.io", "full_name": "Olivia Owner", "role": "admin"},
    )
    assert owner.status_code == 201
    request = client.post("/api/requests", json={"title": "Brand refresh", "company_id": company["id"]}).json()
    return company, owner.json(), request


def _act_as(actor: AuthUser, profile: dict) -> None:
    actor.sub = profile["id"]
    actor.roles = []
    actor.company_id = profile["company_id"]


def test_comment_reaches_company_admin_inbox(
    client: TestClient,
    actor: AuthUser,
    mailbox: RecordingEmailClient,
) -> None:
    _, owner, request = _seed(client)

    comment = client.post(f"/api/requests/{request['id']}/comments", json={"content": "First draft is up"})
    assert comment.status_code == 201
    assert [message.to for message in mailbox.sent] == ["owner@acme.io"]

    _act_as(actor, owner)
    inbox = client.get("/api/notifications")
    assert inbox.status_code == 200
    (notification,) = inbox.json()
    assert notification["type"] == "comment"
    assert notification["message"] == "First draft is up"
    assert notification["request_id"] == request["id"]
    assert notification["is_read"] is False

    marked = client.post("/api/notifications/mark-read", json={"notification_ids": [notification["id"]]})
    assert marked.status_code == 200
    assert marked.json() == {"updated": 1}
    assert client.get("/api/notifications", params={"unread_only": True}).json() == []


def test_mark_all_read(client: TestClient, actor: AuthUser) -> None:
    _, owner, request = _seed(client)
    client.post(f"/api/requests/{request['id']}/comments", json={"content": "One"})
    client.post(f"/api/requests/{request['id']}/comments", json={"content": "Two"})

    _act_as(actor, owner)
    marked = client.post("/api/notifications/mark-read", json={"all": True})

    assert marked.json() == {"updated": 2}
    assert client.get("/api/notifications", params={"unread_only": True}).json() == []


def test_mark_read_requires_a_target(client: TestClient) -> None:
    response = client.post("/api/notifications/mark-read", json={})

    assert response.status_code == 422


def test_preferences_round_trip_and_suppress_email(
    client: TestClient,
    actor: AuthUser,
    mailbox: RecordingEmailClient,
) -> None:
    _, owner, request = _seed(client)
    _act_as(actor, owner)

    defaults = client.get("/api/notifications/preferences")
    assert defaults.status_code == 200
    assert defaults.json()["email_on_comment"] is True
    assert defaults.json()["user_id"] == owner["id"]

    updated = client.put("/api/notifications/preferences", json={"email_on_comment": False})
    assert updated.status_code == 200
    assert updated.json()["email_on_comment"] is False
    assert updated.json()["email_on_status_change"] is True

    actor.sub = "staff-1"
    actor.roles = list(STAFF_ROLES)
    actor.company_id = None
    client.post(f"/api/requests/{request['id']}/comments", json={"content": "Quiet please"})

    assert mailbox.sent == []
    _act_as(actor, owner)
    assert len(client.get("/api/notifications").json()) == 1


def test_preferences_reject_unknown_fields(client: TestClient) -> None:
    response = client.put("/api/notifications/preferences", json={"email_on_birthday": True})

    assert response.status_code == 422


def test_anonymous_caller_is_rejected(client: TestClient, actor: AuthUser) -> None:
    actor.sub = "anonymous"
    actor.roles = ["guest"]

    assert client.get("/api/notifications").status_code == 401
