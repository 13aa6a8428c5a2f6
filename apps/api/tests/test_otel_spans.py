from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.otel import setup_inmemory_otel


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
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> AuthUser:
        return AuthUser(sub="user-1", roles=["user"], tenant_id="tenant-otel")

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_quote(client: TestClient) -> dict:
    company = client.post("/api/crm/companies", json={"name": "OTel Company"})
    assert company.status_code == 201
    quote = client.post(
        "/api/sales/quotes",
        json={"company_id": company.json()["id"], "lines": [{"name": "Trace", "quantity": "3", "unit_price": "100"}]},
    )
    assert quote.status_code == 201
    return quote.json()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/crm/companies",
        json={"name": "Span Company"},
        headers={"X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_workflow_span_contains_tenant_and_outcome(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    quote = _create_quote(client)

    converted = client.post(
        f"/api/sales/quotes/{quote['id']}/convert-to-order",
        headers={"X-Correlation-Id": "otel-workflow-1"},
    )
    assert converted.status_code == 201

    spans = span_exporter.get_finished_spans()
    workflow_spans = [span for span in spans if span.name == "sales.workflow.quote_to_order"]
    assert workflow_spans
    assert any(
        span.attributes.get("tenant_id") == "tenant-otel"
        and span.attributes.get("quote_id") == quote["id"]
        and span.attributes.get("order_id") == converted.json()["id"]
        and span.attributes.get("correlation_id") == "otel-workflow-1"
        and span.attributes.get("sales.outcome") == "success"
        for span in workflow_spans
    )


def test_rejected_workflow_span_is_marked(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    quote = _create_quote(client)
    assert client.post(f"/api/sales/quotes/{quote['id']}/reject").status_code == 200
    span_exporter.clear()

    refused = client.post(f"/api/sales/quotes/{quote['id']}/convert-to-order")
    assert refused.status_code == 409

    spans = span_exporter.get_finished_spans()
    assert any(
        span.name == "sales.workflow.quote_to_order" and span.attributes.get("sales.outcome") == "rejected"
        for span in spans
    )
