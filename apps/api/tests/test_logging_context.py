from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesdesk.core.config import get_settings
from salesdesk.core.database import Base, get_db
from salesdesk.crm.api import get_current_user as crm_get_current_user
from salesdesk.crm.service import ActorUser
from salesdesk.logging import JsonLogFormatter
from salesdesk.middleware.rate_limit import reset_rate_limiter
from salesdesk.main import app


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
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            organization_id="org-1",
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    deal_id = uuid.uuid4()
    response = client.get(f"/api/deals/{deal_id}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [
        record for record in caplog.records if record.name == "salesdesk.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/deals/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_stage_change_logs_carry_deal_context(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    deal = client.post(
        "/api/deals",
        json={"title": "Log Deal", "client": {"name": "Log Client"}, "amount": 300},
        headers={"X-Correlation-Id": "abc-456"},
    )
    assert deal.status_code == 201

    moved = client.patch(
        f"/api/deals/{deal.json()['id']}/stage",
        json={"stage": "Ganada", "reason": "Firmado"},
        headers={"X-Correlation-Id": "abc-456"},
    )
    assert moved.status_code == 200

    stage_records = [record for record in caplog.records if record.name == "salesdesk.crm"]
    assert any(
        record.getMessage() == "deal.stage_changed"
        and getattr(record, "deal_id", None) == deal.json()["id"]
        and getattr(record, "from_stage", None) == "CONTACTED"
        and getattr(record, "to_stage", None) == "CLOSED_WON"
        and getattr(record, "correlation_id", None) == "abc-456"
        for record in stage_records
    )


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "salesdesk.crm",
            "levelname": "INFO",
            "msg": "deal.created",
            "deal_id": "d-1",
            "stage": "CONTACTED",
            "secret_token": "should-not-leak",
            "correlation_id": "corr-fmt",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "deal.created"
    assert payload["correlation_id"] == "corr-fmt"
    assert payload["fields"] == {"deal_id": "d-1", "stage": "CONTACTED"}


def test_request_logs_name_the_pipeline_operation(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    deal = client.post("/api/deals", json={"title": "Op Deal", "client": {"name": "Op Client"}, "amount": 100})
    assert deal.status_code == 201
    moved = client.patch(f"/api/deals/{deal.json()['id']}/stage", json={"stage": "Propuesta"})
    assert moved.status_code == 200

    records = [
        record for record in caplog.records if record.name == "salesdesk.request" and record.getMessage() == "http.request"
    ]
    assert any(
        getattr(record, "operation", None) == "deal.change_stage"
        and getattr(record, "route_group", None) == "deals"
        and getattr(record, "deal_id", None) == deal.json()["id"]
        and getattr(record, "path", None) == "/api/deals/{id}/stage"
        for record in records
    )
    assert any(getattr(record, "operation", None) == "deal.create" for record in records)
