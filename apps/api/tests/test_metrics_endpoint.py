from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app


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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def roles() -> list[str]:
    return ["user", "system.metrics.read"]


@pytest.fixture()
def client(db_session: Session, roles: list[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=roles, tenant_id="tenant-metrics")

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_conversion_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    company = client.post("/api/crm/companies", json={"name": "Metrics Company"})
    assert company.status_code == 201
    quote = client.post(
        "/api/sales/quotes",
        json={"company_id": company.json()["id"], "lines": [{"name": "Seat", "quantity": "2", "unit_price": "50"}]},
    )
    assert quote.status_code == 201

    converted = client.post(f"/api/sales/quotes/{quote.json()['id']}/convert-to-order")
    assert converted.status_code == 201

    invoiced = client.post(f"/api/sales/orders/{converted.json()['id']}/invoice")
    assert invoiced.status_code == 201

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "sales_conversions_total" in body
    assert "sales_conversion_duration_seconds" in body
    assert "sales_invoiced_amount_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/sales/quotes/{id}/convert-to-order"' in body
    assert 'kind="quote_to_order"' in body
    assert 'kind="order_to_invoice"' in body
    assert 'outcome="success"' in body


def test_rejected_conversion_is_counted(client: TestClient) -> None:
    company = client.post("/api/crm/companies", json={"name": "Metrics Company"})
    order = client.post(
        "/api/sales/orders",
        json={"company_id": company.json()["id"], "lines": [{"name": "Seat", "quantity": "1", "unit_price": "10"}]},
    )
    assert order.status_code == 201

    rejected = client.post(f"/api/sales/orders/{order.json()['id']}/invoice", json={"partial": {"amount": "50"}})
    assert rejected.status_code == 400

    body = client.get("/metrics").text
    assert 'sales_conversions_total{kind="order_to_invoice",outcome="rejected"}' in body


def test_metrics_endpoint_returns_404_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    assert client.get("/metrics").status_code == 404


@pytest.mark.parametrize("roles", [["user"]])
def test_metrics_endpoint_requires_permission(client: TestClient) -> None:
    response = client.get("/metrics")
    assert response.status_code == 403
