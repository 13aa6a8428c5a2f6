from __future__ import annotations

import re
from decimal import Decimal

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

sales_conversions_total = Counter(
    "sales_conversions_total",
    "Total sales document conversions by kind and outcome",
    ["kind", "outcome"],
)

sales_conversion_duration_seconds = Histogram(
    "sales_conversion_duration_seconds",
    "Sales document conversion duration in seconds",
    ["kind"],
)

sales_invoiced_amount_total = Counter(
    "sales_invoiced_amount_total",
    "Total amount allocated from orders and quotes to invoices",
    ["kind"],
)

sales_allocation_conflicts_total = Counter(
    "sales_allocation_conflicts_total",
    "Order ledger writes rejected because of a concurrent update",
)

tenant_scope_denied_total = Counter(
    "tenant_scope_denied_total",
    "Total reads/writes rejected by tenant scoping",
    ["resource", "operation"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_conversion(kind: str, outcome: str, duration: float) -> None:
    sales_conversions_total.labels(kind=kind, outcome=outcome).inc()
    sales_conversion_duration_seconds.labels(kind=kind).observe(duration)


def observe_invoiced_amount(kind: str, amount: Decimal) -> None:
    if amount > 0:
        sales_invoiced_amount_total.labels(kind=kind).inc(float(amount))


def observe_allocation_conflict() -> None:
    sales_allocation_conflicts_total.inc()


def observe_tenant_scope_denied(resource: str, operation: str) -> None:
    tenant_scope_denied_total.labels(resource=resource, operation=operation).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
