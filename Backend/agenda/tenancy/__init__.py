"""
Multi-tenancy package.

Modules:
    context: TenantContext resolution from the URL slug
    queries: Tenant-scoped query helpers
"""

from .context import (
    TenantContext,
    context_for_barbershop,
    resolve_tenant_from_slug,
    require_tenant_context,
)

from .queries import (
    scoped_select,
    require_owned,
    get_service_by_id,
    list_services,
    list_professionals_for_service,
    professional_offers_service,
    get_client_by_id,
)

__all__ = [
    # Context
    "TenantContext",
    "context_for_barbershop",
    "resolve_tenant_from_slug",
    "require_tenant_context",
    # Query helpers
    "scoped_select",
    "require_owned",
    "get_service_by_id",
    "list_services",
    "list_professionals_for_service",
    "professional_offers_service",
    "get_client_by_id",
]
