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

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.logging import JsonLogFormatter
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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> AuthUser:
        return AuthUser(sub="user-1", roles=["user"], tenant_id="tenant-a")

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_order(client: TestClient, unit_price: str = "300") -> dict:
    company = client.post("/api/crm/companies", json={"name": "Log Company"})
    assert company.status_code == 201
    order = client.post(
        "/api/sales/orders",
        json={"company_id": company.json()["id"], "lines": [{"name": "Log", "quantity": "1", "unit_price": unit_price}]},
    )
    assert order.status_code == 201
    return order.json()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    path = f"/api/sales/orders/{uuid.uuid4()}"
    response = client.get(path, headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/sales/orders/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_workflow_logs_carry_tenant_and_correlation_id(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    order = _create_order(client)

    response = client.post(f"/api/sales/orders/{order['id']}/invoice", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 201

    workflow_records = [record for record in caplog.records if record.name == "app.sales.workflow"]
    assert any(
        record.getMessage() == "sales.order.invoiced"
        and getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "tenant_id", None) == "tenant-a"
        and getattr(record, "order_id", None) == order["id"]
        and getattr(record, "document_number", None) == response.json()["invoice_number"]
        for record in workflow_records
    )


def test_rejected_workflow_is_logged_as_warning(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    order = _create_order(client)

    response = client.post(f"/api/sales/orders/{order['id']}/invoice", json={"partial": {"amount": "999"}})
    assert response.status_code == 400

    rejected = [record for record in caplog.records if record.getMessage() == "sales.workflow.rejected"]
    assert rejected
    assert rejected[-1].levelno == logging.WARNING
    assert getattr(rejected[-1], "operation", None) == "order_to_invoice"
    assert getattr(rejected[-1], "status_code", None) == 400


def test_json_formatter_keeps_whitelisted_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "app.sales.workflow",
            "levelno": logging.INFO,
            "levelname": "INFO",
            "msg": "sales.order.invoiced",
            "correlation_id": "corr-1",
            "tenant_id": "tenant-a",
            "order_id": "order-1",
            "amount": "10.00",
            "secret": "do-not-log",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "sales.order.invoiced"
    assert payload["correlation_id"] == "corr-1"
    assert payload["tenant_id"] == "tenant-a"
    assert payload["fields"] == {"order_id": "order-1", "amount": "10.00"}
