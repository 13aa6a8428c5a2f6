from __future__ import annotations

from typing import Any

from sqlalchemy.sql import Select

from app.platform.security.context import AuthContext
from app.platform.security.rls import apply_tenant_filter, require_tenant, validate_tenant_write


class BaseRepository:
    resource = ""

    def apply_scope_query(self, query: Select[Any], ctx: AuthContext) -> Select[Any]:
        return apply_tenant_filter(query, self.resource, ctx)

    def tenant_id(self, ctx: AuthContext) -> str:
        return require_tenant(self.resource, ctx)

    def validate_write_security(self, payload: dict[str, Any], ctx: AuthContext, *, action: str = "write") -> None:
        validate_tenant_write(self.resource, payload, ctx, action=action)
