from __future__ import annotations

import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesdesk import audit, events
from salesdesk.core.config import get_settings
from salesdesk.core.database import Base, get_db
from salesdesk.crm.api import get_current_user
from salesdesk.crm.service import ActorUser
from salesdesk.main import app
from salesdesk.middleware.rate_limit import reset_rate_limiter


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
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "user1": ("user-1", "org-1", "SALES"),
        "user2": ("user-2", "org-1", "SALES"),
        "admin": ("admin-1", "org-1", "ADMIN"),
    }
    state = {"current": "user1"}

    def override_get_current_user(request: Request) -> ActorUser:
        user_id, organization_id, role = actors[state["current"]]
        return ActorUser(
            user_id=user_id,
            organization_id=organization_id,
            role=role,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _create_client(client: TestClient, **overrides: object) -> dict:
    payload: dict[str, object] = {
        "name": "Umbrella S.A.",
        "company": "Umbrella",
        "email": "compras@umbrella.com.gt",
        "nit": "4455667-8",
        "sector": "Privado",
    }
    payload.update(overrides)
    response = client.post("/api/clients", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_and_get_client(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    created = _create_client(test_client)

    assert created["sector"] == "Private"
    assert created["assigned_advisor_id"] == "user-1"
    assert created["organization_id"] == "org-1"

    fetched = test_client.get(f"/api/clients/{created['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["nit"] == "4455667-8"
    assert any(item["event_type"] == "crm.client.created" for item in events.published_events)


def test_blank_optional_fields_are_stored_as_null(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    created = _create_client(test_client, nit="  ", email="", phone=" ")

    assert created["nit"] is None
    assert created["email"] is None
    assert created["phone"] is None


def test_duplicate_nit_in_same_organization_conflicts(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    _create_client(test_client)

    response = test_client.post("/api/clients", json={"name": "Copycat", "nit": "4455667-8"})

    assert response.status_code == 409
    assert response.json()["code"] == "conflict"
    assert response.json()["details"] == {"field": "nit"}


def test_invalid_sector_is_rejected(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    response = test_client.post("/api/clients", json={"name": "Bad Sector", "sector": "Municipal"})

    assert response.status_code == 400
    assert any(item["field"] == "sector" for item in response.json()["details"])


def test_update_client_bumps_row_version(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    created = _create_client(test_client)

    updated = test_client.put(
        f"/api/clients/{created['id']}",
        json={"phone": "+502 5555 0000", "sector": "Government", "row_version": created["row_version"]},
    )
    assert updated.status_code == 200
    assert updated.json()["phone"] == "+502 5555 0000"
    assert updated.json()["sector"] == "Government"
    assert updated.json()["row_version"] == created["row_version"] + 1

    stale = test_client.put(
        f"/api/clients/{created['id']}",
        json={"phone": "+502 1111 1111", "row_version": created["row_version"]},
    )
    assert stale.status_code == 409


def test_clients_are_scoped_to_assigned_advisor(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    created = _create_client(test_client)

    set_actor("user2")
    assert test_client.get("/api/clients").json() == []
    assert test_client.get(f"/api/clients/{created['id']}").status_code == 404

    set_actor("admin")
    assert [item["id"] for item in test_client.get("/api/clients").json()] == [created["id"]]


def test_sales_user_cannot_reassign_client(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    created = _create_client(test_client)

    response = test_client.put(f"/api/clients/{created['id']}", json={"assigned_advisor_id": "user-2"})

    assert response.status_code == 403


def test_delete_client_hides_it(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    created = _create_client(test_client)

    deleted = test_client.delete(f"/api/clients/{created['id']}")
    assert deleted.status_code == 204

    assert test_client.get(f"/api/clients/{created['id']}").status_code == 404
    assert test_client.get("/api/clients").json() == []
    assert test_client.delete(f"/api/clients/{uuid.uuid4()}").status_code == 404
