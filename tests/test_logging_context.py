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

from pmo.core.database import Base, get_db
from pmo.crm.api import get_current_user as crm_get_current_user
from pmo.crm.service import ActorUser
from pmo.logging import JsonLogFormatter
from pmo.main import app


ALL_PERMISSIONS = {
    "crm.leads.create",
    "crm.leads.read",
    "crm.leads.convert",
}


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
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            tenant_id=getattr(request.state, "tenant_id", None),
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_lead(client: TestClient, correlation_id: str, **overrides: object) -> dict:
    payload: dict[str, object] = {
        "email": "log@acme.com",
        "company": "Log Co",
        "service_interest": "audit",
        "owner_user_id": str(uuid.uuid4()),
    }
    payload.update(overrides)
    response = client.post(
        "/api/crm/leads",
        json=payload,
        headers={"X-Correlation-Id": correlation_id, "X-Tenant-Id": "tenant-log"},
    )
    assert response.status_code == 201
    return response.json()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    lead_id = uuid.uuid4()
    response = client.get(f"/api/crm/leads/{lead_id}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "pmo.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/leads/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_conversion_logs_carry_ids_tenant_and_correlation(
    client: TestClient,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    lead = _create_lead(client, "abc-456")

    response = client.post(
        f"/api/crm/leads/{lead['id']}/convert",
        json={"create_client": True, "create_opportunity": True},
        headers={"X-Correlation-Id": "abc-456", "X-Tenant-Id": "tenant-log"},
    )
    assert response.status_code == 200
    body = response.json()

    records = [record for record in caplog.records if record.name == "pmo.crm.conversion"]
    converted = [record for record in records if record.getMessage() == "lead.converted"]
    assert len(converted) == 1
    record = converted[0]
    assert getattr(record, "correlation_id", None) == "abc-456"
    assert getattr(record, "tenant_id", None) == "tenant-log"
    assert getattr(record, "lead_id", None) == lead["id"]
    assert getattr(record, "opportunity_id", None) == body["opportunity_id"]
    assert getattr(record, "outcome", None) == "converted"


def test_rejected_conversion_is_logged_as_warning(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    lead = _create_lead(client, "abc-789", owner_user_id=None)

    response = client.post(
        f"/api/crm/leads/{lead['id']}/convert",
        json={"create_opportunity": True},
        headers={"X-Correlation-Id": "abc-789", "X-Tenant-Id": "tenant-log"},
    )
    assert response.status_code == 422

    rejected = [
        record
        for record in caplog.records
        if record.name == "pmo.crm.conversion" and record.getMessage() == "lead.conversion_rejected"
    ]
    assert rejected
    assert rejected[0].levelno == logging.WARNING
    assert getattr(rejected[0], "outcome", None) == "missing_owner"
    assert getattr(rejected[0], "correlation_id", None) == "abc-789"


def test_json_formatter_emits_context_and_whitelisted_fields() -> None:
    record = logging.getLogger("pmo.test").makeRecord(
        "pmo.test",
        logging.INFO,
        __file__,
        1,
        "lead.converted",
        (),
        None,
        extra={"lead_id": "lead-1", "outcome": "converted", "secret": "hidden"},
    )
    record.correlation_id = "corr-json"
    record.tenant_id = "tenant-json"

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "lead.converted"
    assert payload["level"] == "INFO"
    assert payload["correlation_id"] == "corr-json"
    assert payload["tenant_id"] == "tenant-json"
    assert payload["fields"] == {"lead_id": "lead-1", "outcome": "converted"}
