from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from eventcrm.core.config import get_settings
from eventcrm.core.database import Base, get_db
from eventcrm.crm.automation import AutomationConfig, AutomationEngine
from eventcrm.main import app
from eventcrm.otel import setup_inmemory_otel


HEADERS = {"x-actor-user-id": "user-1"}


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    try:
        yield SessionLocal
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("eventcrm-api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/crm/workspaces",
        json={"name": "Traced"},
        headers={**HEADERS, "X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)
    assert any(span.attributes.get("actor_user_id") == "user-1" for span in spans)


def test_automation_spans_carry_workflow_and_activity(
    client: TestClient,
    session_factory: sessionmaker[Session],
    span_exporter: InMemorySpanExporter,
) -> None:
    workspace_id = client.post("/api/crm/workspaces", json={"name": "Traced"}, headers=HEADERS).json()["id"]
    base = f"/api/crm/workspaces/{workspace_id}"
    workflow = client.post(
        f"{base}/workflows",
        json={
            "name": "Traced workflow",
            "trigger_types": ["contact_created"],
            "steps": [{"action_type": "send_internal_notification", "config": {"message": "new lead"}}],
        },
        headers=HEADERS,
    ).json()
    assert client.post(f"{base}/workflows/{workflow['id']}/enable", headers=HEADERS).status_code == 200
    contact = client.post(f"{base}/contacts", json={"first_name": "Span"}, headers=HEADERS)
    assert contact.status_code == 201
    trigger_id = contact.json()["activities"][0]["id"]

    AutomationEngine(session_factory, AutomationConfig(initial_lookback_ms=60_000)).tick()

    spans = span_exporter.get_finished_spans()
    assert any(span.name == "automation.tick" and span.attributes.get("processed") == 1 for span in spans)
    assert any(
        span.name == "automation.execute_workflow"
        and span.attributes.get("workflow_id") == workflow["id"]
        and span.attributes.get("activity_id") == trigger_id
        for span in spans
    )
