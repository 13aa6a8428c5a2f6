from __future__ import annotations

from fastapi import Depends, Header, Request

from app.context import get_correlation_id
from app.core.auth import AuthUser
from app.core.rbac import require_authenticated_user
from app.platform.security.context import AuthContext


def get_auth_context(
    request: Request,
    auth_user: AuthUser = Depends(require_authenticated_user),
    tenant_id_header: str | None = Header(default=None, alias="x-tenant-id"),
) -> AuthContext:
    """Build the service-layer caller context for a request.

    Anonymous callers are rejected with 401 before any tenant is resolved.
    The token's ``tenant_id`` claim wins over the ``x-tenant-id`` header.
    """

    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    roles = [str(item) for item in auth_user.roles]

    return AuthContext(
        user_id=auth_user.sub,
        tenant_id=auth_user.tenant_id or tenant_id_header,
        correlation_id=correlation_id,
        roles=roles,
    )
