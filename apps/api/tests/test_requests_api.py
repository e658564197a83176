from __future__ import annotations

import uuid
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


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setattr(notification_dispatcher, "email_client", RecordingEmailClient())
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


def _act_as_client(actor: AuthUser, company_id: str, sub: str = "client-1") -> None:
    actor.sub = sub
    actor.roles = []
    actor.company_id = company_id


def _create_company(client: TestClient, name: str = "Acme Studio", **extra: object) -> dict:
    response = client.post("/api/companies", json={"name": name, **extra})
    assert response.status_code == 201
    return response.json()


def _create_request(client: TestClient, company_id: str, title: str = "Brand refresh", **extra: object) -> dict:
    response = client.post("/api/requests", json={"title": title, "company_id": company_id, **extra})
    assert response.status_code == 201
    return response.json()


def test_create_and_read_request(client: TestClient) -> None:
    company = _create_company(client)

    created = _create_request(client, company["id"], sla_hours=48, priority="high")
    assert created["status"] == "queue"
    assert created["priority"] == "high"
    assert created["sla_status"] == "on_track"
    assert created["due_date"] is not None

    fetched = client.get(f"/api/requests/{created['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["title"] == "Brand refresh"


def test_company_reports_effective_limit(client: TestClient) -> None:
    company = _create_company(client, plan_tier="pro")
    assert company["effective_active_limit"] == 2

    capacity = client.get(f"/api/companies/{company['id']}/capacity")
    assert capacity.status_code == 200
    assert capacity.json() == {
        "company_id": company["id"],
        "plan_tier": "pro",
        "limit": 2,
        "active_count": 0,
        "available": 2,
    }


def test_move_enforces_limit_with_error_envelope(client: TestClient) -> None:
    company = _create_company(client)
    first = _create_request(client, company["id"], title="First")
    second = _create_request(client, company["id"], title="Second")

    moved = client.post(f"/api/requests/{first['id']}/move", json={"status": "active"})
    assert moved.status_code == 200
    assert moved.json()["status"] == "active"

    denied = client.post(f"/api/requests/{second['id']}/move", json={"status": "active"})
    assert denied.status_code == 409
    body = denied.json()
    assert body["code"] == "LIMIT_EXCEEDED"
    assert body["details"] == {"active_count": 1, "limit": 1}

    assert client.get(f"/api/requests/{second['id']}").json()["status"] == "queue"


def test_invalid_transition_is_conflict(client: TestClient) -> None:
    company = _create_company(client)
    created = _create_request(client, company["id"])

    response = client.post(f"/api/requests/{created['id']}/move", json={"status": "review"})

    assert response.status_code == 409
    assert response.json()["code"] == "INVALID_TRANSITION"
    assert response.json()["details"] == {"from_status": "queue", "to_status": "review"}


def test_unknown_status_is_validation_error(client: TestClient) -> None:
    company = _create_company(client)
    created = _create_request(client, company["id"])

    response = client.post(f"/api/requests/{created['id']}/move", json={"status": "archived"})

    assert response.status_code == 422


def test_patch_cannot_change_status(client: TestClient) -> None:
    company = _create_company(client)
    created = _create_request(client, company["id"])

    response = client.patch(f"/api/requests/{created['id']}", json={"status": "done"})
    assert response.status_code == 422

    renamed = client.patch(f"/api/requests/{created['id']}", json={"title": "Brand refresh v2"})
    assert renamed.status_code == 200
    assert renamed.json()["title"] == "Brand refresh v2"
    assert renamed.json()["status"] == "queue"


def test_client_is_scoped_to_own_company(client: TestClient, actor: AuthUser) -> None:
    mine = _create_company(client, "Mine")
    theirs = _create_company(client, "Theirs")
    their_request = _create_request(client, theirs["id"], title="Private")

    _act_as_client(actor, mine["id"])
    created = client.post("/api/requests", json={"title": "Client ask"})
    assert created.status_code == 201
    assert created.json()["company_id"] == mine["id"]

    assert client.get(f"/api/requests/{their_request['id']}").status_code == 404
    listed = client.get("/api/requests")
    assert [row["title"] for row in listed.json()] == ["Client ask"]

    forbidden = client.post("/api/requests", json={"title": "Other", "company_id": theirs["id"]})
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "FORBIDDEN"


def test_client_approves_review(client: TestClient, actor: AuthUser) -> None:
    company = _create_company(client)
    created = _create_request(client, company["id"])
    for target in ("active", "review"):
        assert client.post(f"/api/requests/{created['id']}/move", json={"status": target}).status_code == 200

    _act_as_client(actor, company["id"])
    assert client.post(f"/api/requests/{created['id']}/move", json={"status": "active"}).status_code == 403

    approved = client.post(f"/api/requests/{created['id']}/move", json={"status": "done"})
    assert approved.status_code == 200
    assert approved.json()["completed_at"] is not None


def test_list_filters_by_status(client: TestClient) -> None:
    company = _create_company(client, plan_tier="pro")
    first = _create_request(client, company["id"], title="First")
    _create_request(client, company["id"], title="Second")
    client.post(f"/api/requests/{first['id']}/move", json={"status": "active"})

    active = client.get("/api/requests", params={"status": "active"})

    assert active.status_code == 200
    assert [row["title"] for row in active.json()] == ["First"]


def test_comments_assign_and_activity(client: TestClient, actor: AuthUser) -> None:
    company = _create_company(client)
    created = _create_request(client, company["id"])
    designer = client.post("/api/profiles", json={"email": "dana@agency.io", "role": "admin"})
    assert designer.status_code == 201

    assigned = client.post(f"/api/requests/{created['id']}/assign", json={"user_id": designer.json()["id"]})
    assert assigned.status_code == 200
    assert assigned.json()["assigned_to"] == designer.json()["id"]

    internal = client.post(
        f"/api/requests/{created['id']}/comments",
        json={"content": "Needs another pass", "is_internal": True},
    )
    assert internal.status_code == 201
    public = client.post(f"/api/requests/{created['id']}/comments", json={"content": "Draft attached"})
    assert public.status_code == 201

    activity = client.get(f"/api/requests/{created['id']}/activity")
    assert activity.status_code == 200
    actions = [entry["action"] for entry in activity.json()]
    assert actions == ["request.created", "request.assigned", "request.comment_added", "request.comment_added"]

    _act_as_client(actor, company["id"])
    visible = client.get(f"/api/requests/{created['id']}/comments")
    assert [comment["content"] for comment in visible.json()] == ["Draft attached"]


def test_archive_requires_completed_request(client: TestClient) -> None:
    company = _create_company(client)
    created = _create_request(client, company["id"])

    early = client.post(f"/api/requests/{created['id']}/archive")
    assert early.status_code == 422

    client.post(f"/api/requests/{created['id']}/move", json={"status": "done"})
    archived = client.post(f"/api/requests/{created['id']}/archive")
    assert archived.status_code == 200
    assert archived.json()["archived_at"] is not None

    assert client.get("/api/requests").json() == []
    assert len(client.get("/api/requests", params={"include_archived": True}).json()) == 1


def test_missing_request_is_not_found(client: TestClient) -> None:
    response = client.get(f"/api/requests/{uuid.uuid4()}")

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"
