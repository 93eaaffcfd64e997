from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from eventcrm.core.config import get_settings
from eventcrm.core.database import Base, get_db
from eventcrm.crm.models import CRMActivity
from eventcrm.main import app


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_generates_correlation_id_when_missing(client: TestClient) -> None:
    response = client.get(f"/api/crm/workspaces/{uuid.uuid4()}")
    assert response.status_code == 404

    correlation_id = response.headers.get("x-correlation-id")
    assert correlation_id
    uuid.UUID(correlation_id)
    assert response.json()["correlation_id"] == correlation_id


def test_respects_provided_correlation_id(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "corr-123"})
    assert response.status_code == 200
    assert response.headers.get("x-correlation-id") == "corr-123"

    missing = client.get(f"/api/crm/workspaces/{uuid.uuid4()}", headers={"X-Correlation-Id": "corr-404"})
    assert missing.json()["correlation_id"] == "corr-404"


def test_actor_header_becomes_activity_actor(client: TestClient, db_session: Session) -> None:
    headers = {"X-Correlation-Id": "corr-actor", "X-Actor-User-Id": "rep-7"}
    workspace = client.post("/api/crm/workspaces", json={"name": "Corr"}, headers=headers)
    assert workspace.status_code == 201

    created = client.post(
        f"/api/crm/workspaces/{workspace.json()['id']}/contacts",
        json={"first_name": "Grace"},
        headers=headers,
    )
    assert created.status_code == 201
    assert created.headers.get("x-correlation-id") == "corr-actor"

    activity = db_session.scalar(select(CRMActivity))
    assert activity is not None
    assert activity.actor_user_id == "rep-7"
