from __future__ import annotations

from typing import Any

from sqlalchemy.sql import Select

from app import audit
from app.metrics import observe_tenant_scope_denied
from app.platform.security.context import AuthContext
from app.platform.security.errors import MissingTenantError, TenantScopeError


def require_tenant(resource: str, ctx: AuthContext) -> str:
    if not ctx.tenant_id:
        observe_tenant_scope_denied(resource=resource, operation="missing")
        raise MissingTenantError(resource)
    return ctx.tenant_id


def apply_tenant_filter(query: Select[Any], resource: str, ctx: AuthContext) -> Select[Any]:
    """Restrict every entity in ``query`` that exposes ``tenant_id`` to the caller's tenant."""

    tenant_id = require_tenant(resource, ctx)
    for description in query.column_descriptions:
        model = description.get("entity")
        if model is None:
            continue
        if hasattr(model, "tenant_id"):
            query = query.where(getattr(model, "tenant_id") == tenant_id)
    return query


def validate_tenant_write(
    resource: str,
    payload: dict[str, Any],
    ctx: AuthContext,
    *,
    action: str = "write",
) -> None:
    tenant_id = require_tenant(resource, ctx)
    target = payload.get("tenant_id")
    if target is None or str(target) == tenant_id:
        return

    observe_tenant_scope_denied(resource=resource, operation=action)
    audit.record(
        actor_user_id=ctx.user_id,
        entity_type="security.tenant",
        entity_id="scope",
        action="tenant.denied",
        before=None,
        after={
            "resource": resource,
            "action": action,
            "target_tenant_id": str(target),
            "user_id": ctx.user_id,
        },
        correlation_id=ctx.correlation_id,
        tenant_id=tenant_id,
    )
    raise TenantScopeError(resource, str(target))
