from app.platform.security.context import AuthContext
from app.platform.security.dependencies import get_auth_context
from app.platform.security.errors import AuthorizationError, MissingTenantError, TenantScopeError
from app.platform.security.repository import BaseRepository
from app.platform.security.rls import apply_tenant_filter, require_tenant, validate_tenant_write

__all__ = [
    "AuthContext",
    "AuthorizationError",
    "MissingTenantError",
    "TenantScopeError",
    "BaseRepository",
    "apply_tenant_filter",
    "get_auth_context",
    "require_tenant",
    "validate_tenant_write",
]
