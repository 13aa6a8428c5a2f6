from app.platform.security import (
    AuthContext,
    AuthorizationError,
    BaseRepository,
    MissingTenantError,
    TenantScopeError,
    apply_tenant_filter,
    get_auth_context,
    require_tenant,
    validate_tenant_write,
)

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
