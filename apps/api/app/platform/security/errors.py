from __future__ import annotations


class AuthorizationError(Exception):
    """Base authorization error for tenant scope enforcement failures."""


class TenantScopeError(AuthorizationError):
    """Raised when a payload targets a tenant other than the caller's."""

    def __init__(self, resource: str, tenant_id: str | None) -> None:
        self.resource = resource
        self.tenant_id = tenant_id
        super().__init__(f"Out-of-scope tenant for resource '{resource}'")


class MissingTenantError(AuthorizationError):
    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Tenant context is required for resource '{resource}'")
