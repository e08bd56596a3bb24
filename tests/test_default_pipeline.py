from __future__ import annotations

import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pmo.core.config import get_settings
from pmo.core.database import Base, get_db
from pmo.crm.api import get_current_user
from pmo.crm.models import CRMLead, CRMPipeline, CRMPipelineStage
from pmo.crm.service import ActorUser, PipelineService
from pmo.main import app


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
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "tenant-a": ActorUser(
            user_id="user-1",
            tenant_id="tenant-a",
            permissions={"crm.pipelines.read", "crm.leads.convert"},
            correlation_id="corr-pipeline-read",
        ),
        "tenant-b": ActorUser(
            user_id="user-2",
            tenant_id="tenant-b",
            permissions={"crm.pipelines.read"},
            correlation_id="corr-pipeline-read",
        ),
        "reader-without-permission": ActorUser(
            user_id="user-3",
            tenant_id="tenant-a",
            permissions=set(),
            correlation_id="corr-pipeline-read",
        ),
    }
    state = {"current": "tenant-a"}

    def override_get_current_user() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def test_ensure_default_pipeline_creates_then_reuses(db_session: Session) -> None:
    service = PipelineService()

    created, was_created = service.ensure_default_pipeline(db_session, "tenant-a")
    db_session.commit()
    reused, was_created_again = service.ensure_default_pipeline(db_session, "tenant-a")

    assert was_created is True
    assert was_created_again is False
    assert reused.id == created.id
    assert created.name == get_settings().default_pipeline_name
    assert created.description == "Default sales pipeline"
    assert [stage.name for stage in reused.stages] == [
        "New Lead",
        "Qualified",
        "Proposal",
        "Negotiation",
        "Closed Won",
        "Closed Lost",
    ]
    assert db_session.scalar(select(func.count()).select_from(CRMPipelineStage)) == 6


def test_default_pipelines_are_per_tenant(db_session: Session) -> None:
    service = PipelineService()

    first, _ = service.ensure_default_pipeline(db_session, "tenant-a")
    second, _ = service.ensure_default_pipeline(db_session, "tenant-b")
    db_session.commit()

    assert first.id != second.id
    assert db_session.scalar(select(func.count()).select_from(CRMPipeline)) == 2


def test_second_default_pipeline_for_tenant_violates_unique_index(db_session: Session) -> None:
    db_session.add(CRMPipeline(tenant_id="tenant-a", name="Winner", is_default=True))
    db_session.commit()

    db_session.add(CRMPipeline(tenant_id="tenant-a", name="Loser", is_default=True))
    with pytest.raises(IntegrityError):
        db_session.flush()
    db_session.rollback()

    db_session.add(CRMPipeline(tenant_id="tenant-a", name="Secondary", is_default=False))
    db_session.commit()
    assert db_session.scalar(select(func.count()).select_from(CRMPipeline)) == 2


def test_default_pipeline_endpoint_is_404_until_bootstrapped(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, set_actor = client

    missing = test_client.get("/api/crm/pipelines/default")
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"

    lead = CRMLead(
        tenant_id="tenant-a",
        email="pipeline@acme.com",
        company="Acme",
        source="REFERRAL",
        owner_user_id=uuid.uuid4(),
    )
    db_session.add(lead)
    db_session.commit()

    converted = test_client.post(f"/api/crm/leads/{lead.id}/convert", json={"create_opportunity": True})
    assert converted.status_code == 200

    response = test_client.get("/api/crm/pipelines/default")
    assert response.status_code == 200
    body = response.json()
    assert body["tenant_id"] == "tenant-a"
    assert body["is_default"] is True
    assert [(stage["name"], stage["probability"]) for stage in body["stages"]] == [
        ("New Lead", 10),
        ("Qualified", 30),
        ("Proposal", 50),
        ("Negotiation", 75),
        ("Closed Won", 100),
        ("Closed Lost", 0),
    ]

    set_actor("tenant-b")
    assert test_client.get("/api/crm/pipelines/default").status_code == 404


def test_default_pipeline_endpoint_requires_permission(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("reader-without-permission")

    response = test_client.get("/api/crm/pipelines/default")

    assert response.status_code == 403
    assert response.json()["code"] == "crm_pipeline_get_failed"
    assert response.json()["message"] == "Missing permission: crm.pipelines.read"
